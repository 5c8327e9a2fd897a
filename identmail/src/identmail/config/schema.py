"""Pydantic models describing the identmail runtime configuration."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


# RFC 2177 asks clients to re-issue IDLE at least every 29 minutes.
MAX_IDLE_TIMEOUT = 29 * 60


class ImapSettings(BaseModel):
    """Server level IMAP defaults used when an :class:`ImapConfig` omits them."""

    model_config = ConfigDict(extra="forbid")

    default_mailbox: str = "INBOX"
    idle_timeout: int = Field(default=300, gt=0, le=MAX_IDLE_TIMEOUT)


class RegistrationSettings(BaseModel):
    """Parameters of the registration mail watch."""

    model_config = ConfigDict(extra="forbid")

    header: str = "X-Identity-Registration"
    lookback_seconds: int = Field(default=300, gt=0)
    settle_seconds: float = Field(default=0.5, ge=0)

    @field_validator("header")
    @classmethod
    def _validate_header(cls, value: str) -> str:
        name = value.strip()
        if not name or ":" in name or any(ch.isspace() for ch in name):
            raise ValueError("header must be a single RFC 5322 field name")
        return name


class AttachmentSettings(BaseModel):
    """Where extracted attachments are written for external viewers."""

    model_config = ConfigDict(extra="forbid")

    download_dir: str = "~/Downloads"


class RuntimeConfig(BaseModel):
    """Root configuration loaded from ``config.yaml``."""

    model_config = ConfigDict(extra="forbid")

    version: int = 1
    imap: ImapSettings = Field(default_factory=ImapSettings)
    registration: RegistrationSettings = Field(default_factory=RegistrationSettings)
    attachments: AttachmentSettings = Field(default_factory=AttachmentSettings)

    @field_validator("version")
    @classmethod
    def _validate_version(cls, value: int) -> int:
        if value != 1:
            raise ValueError("config.yaml version must be 1")
        return value
