"""Locate, parse, validate and cache the identmail runtime configuration.

What:
  Resolve ``config.yaml`` from an explicit path, the ``IDENTMAIL_CONFIG_PATH``
  environment variable or well-known default locations, parse it with PyYAML
  and validate it against :class:`~identmail.config.schema.RuntimeConfig`.

Why:
  The IMAP client, the watcher and the attachment extractor all fall back to
  configured defaults (mailbox, IDLE timeout, look-back window, correlation
  header, download directory). A single cached, validated object keeps those
  defaults consistent across threads.

How:
  Candidate paths are tried in precedence order; the first existing file is
  parsed (JSON documents load too since JSON is a YAML subset) and cached
  together with its path. :func:`get_runtime_config` falls back to the schema
  defaults when no file exists, so library callers need no file on disk.
  :func:`reset_runtime_config` clears the cache.

Interfaces:
  :func:`load_runtime_config`, :func:`get_runtime_config`,
  :func:`reset_runtime_config`, :class:`ConfigLoadError`,
  :class:`RuntimeConfigError`.

Invariants:
  - Payloads pass strict pydantic validation (unknown keys are rejected)
    before they are cached or returned.
  - Filesystem and parse failures surface as :class:`RuntimeConfigError` with
    the offending path in the message.
"""
from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Iterable, Optional, Tuple

import yaml
from pydantic import ValidationError as _PydanticValidationError

from .schema import RuntimeConfig


class ConfigLoadError(Exception):
    """Base error for configuration parsing or validation failures."""


class RuntimeConfigError(ConfigLoadError):
    """Raised when ``config.yaml`` cannot be located, read or validated."""


_CONFIG_ENV = "IDENTMAIL_CONFIG_PATH"
_DEFAULT_LOCATIONS: Tuple[Path, ...] = (
    Path("config.yaml"),
    Path("~/.config/identmail/config.yaml"),
    Path("/etc/identmail/config.yaml"),
)
_RUNTIME_CACHE: Optional[Tuple[Path, RuntimeConfig]] = None
_CACHE_LOCK = threading.Lock()


def _candidate_paths(path: Optional[Path]) -> Iterable[Path]:
    """Yield configuration locations from most to least specific, deduplicated."""

    seen: set[Path] = set()
    candidates = []
    if path is not None:
        candidates.append(path)
    env_path = os.environ.get(_CONFIG_ENV)
    if env_path:
        candidates.append(Path(env_path))
    candidates.extend(_DEFAULT_LOCATIONS)
    for candidate in candidates:
        expanded = candidate.expanduser()
        if expanded not in seen:
            seen.add(expanded)
            yield expanded


def _parse_config_payload(text: str, source: Path) -> dict[str, Any]:
    """Parse configuration text into a mapping.

    Raises:
      RuntimeConfigError: If the text is not valid YAML or its top level is not
        a mapping.
    """

    try:
        payload = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise RuntimeConfigError(f"Invalid YAML in {source}: {exc}") from exc
    if not isinstance(payload, dict):
        raise RuntimeConfigError(f"{source} must contain a mapping at the top-level")
    return payload


def _load_runtime_from_path(path: Path) -> RuntimeConfig:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise RuntimeConfigError(f"Configuration file missing: {path}") from exc
    except OSError as exc:  # pragma: no cover - filesystem surface
        raise RuntimeConfigError(f"Unable to read configuration file {path}: {exc}") from exc
    payload = _parse_config_payload(text, path)
    try:
        return RuntimeConfig.model_validate(payload)
    except _PydanticValidationError as exc:
        raise RuntimeConfigError(f"Invalid configuration in {path}: {exc}") from exc


def load_runtime_config(
    path: Optional[Path | str] = None,
    *,
    reload: bool = False,
    missing_ok: bool = False,
) -> RuntimeConfig:
    """Resolve, parse, and cache the runtime configuration.

    What:
      Return the validated :class:`RuntimeConfig`, loading it on first use.

    Why:
      Components read defaults on hot paths (every :class:`ImapConfig` and
      every watcher); caching avoids repeated disk IO while ``reload`` lets
      tests and long-running hosts pick up edits deterministically.

    How:
      Serve the cache when it matches the request, otherwise walk the
      candidate paths and cache the first file that exists.

    Args:
      path: Optional explicit location of ``config.yaml``.
      reload: When ``True`` bypass the cache.
      missing_ok: When ``True`` return the schema defaults instead of raising
        if no candidate file exists. Defaults are not cached.

    Returns:
      The validated runtime configuration.

    Raises:
      RuntimeConfigError: If no candidate exists (unless ``missing_ok``) or the
        first existing one is invalid.
    """

    global _RUNTIME_CACHE

    requested_path = Path(path).expanduser() if isinstance(path, (str, Path)) else None
    with _CACHE_LOCK:
        if not reload and _RUNTIME_CACHE is not None:
            cached_path, cached_config = _RUNTIME_CACHE
            if requested_path is None or cached_path == requested_path:
                return cached_config

        searched: list[str] = []
        for candidate in _candidate_paths(requested_path):
            if not candidate.exists():
                searched.append(str(candidate))
                continue
            config = _load_runtime_from_path(candidate)
            _RUNTIME_CACHE = (candidate, config)
            return config

    if missing_ok:
        return RuntimeConfig()
    raise RuntimeConfigError(
        f"Unable to locate config.yaml (searched: {', '.join(searched) or '<none>'})"
    )


def get_runtime_config() -> RuntimeConfig:
    """Return the cached runtime configuration, or the defaults when no file exists."""

    return load_runtime_config(missing_ok=True)


def reset_runtime_config() -> None:
    """Forget the cached configuration so the next access reloads from disk."""

    global _RUNTIME_CACHE
    with _CACHE_LOCK:
        _RUNTIME_CACHE = None
