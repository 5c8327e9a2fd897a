"""identmail configuration package.

What:
  Provide the import surface for runtime configuration loading and the
  pydantic models describing ``config.yaml``.

Why:
  Callers go through the validated models instead of reading YAML themselves,
  so defaults (IDLE timeout, look-back window, correlation header) are applied
  in exactly one place.
"""

from .loader import (
    ConfigLoadError,
    RuntimeConfigError,
    get_runtime_config,
    load_runtime_config,
    reset_runtime_config,
)
from .schema import AttachmentSettings, ImapSettings, RegistrationSettings, RuntimeConfig

__all__ = [
    "ConfigLoadError",
    "RuntimeConfigError",
    "get_runtime_config",
    "load_runtime_config",
    "reset_runtime_config",
    "AttachmentSettings",
    "ImapSettings",
    "RegistrationSettings",
    "RuntimeConfig",
]
