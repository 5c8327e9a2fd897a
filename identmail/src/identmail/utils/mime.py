"""MIME parsing helpers for stored messages and IMAP header fetches.

What:
  Turn raw RFC822 payloads (full messages or header-only fetches) into
  :class:`email.message.EmailMessage` objects, and derive filesystem-safe
  attachment filenames.

Why:
  Both the attachment resolver and the mailbox watcher read structure that was
  authored by arbitrary mail clients. Parsing everything through the same
  policy keeps header folding, charset decoding and defect handling identical
  on both paths.

How:
  Use :class:`~email.parser.BytesParser` with :data:`email.policy.default`;
  header-only payloads are parsed with ``headersonly=True`` so no body is
  materialised for messages that only need a header check.

Interfaces:
  :func:`parse_message`, :func:`parse_headers`, :func:`safe_filename`.
"""
from __future__ import annotations

import re
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from typing import Optional


MAX_FILENAME_LENGTH = 255
_UNSAFE_FILENAME = re.compile(r"[^\w.\- ]+")


def parse_message(raw: bytes) -> EmailMessage:
    """Parse a complete RFC822 payload.

    Args:
      raw: Message bytes as stored locally or fetched with ``BODY[]``.

    Returns:
      The parsed :class:`EmailMessage`.
    """

    message = BytesParser(policy=policy.default).parsebytes(raw)
    if not isinstance(message, EmailMessage):  # pragma: no cover - policy guarantees it
        raise TypeError("parser did not produce an EmailMessage")
    return message


def parse_headers(raw: bytes) -> EmailMessage:
    """Parse a header block (``BODY.PEEK[HEADER]``) without touching any body."""

    return BytesParser(policy=policy.default).parsebytes(raw, headersonly=True)


def safe_filename(name: Optional[str], fallback: str = "attachment") -> str:
    """Reduce ``name`` to a single path component safe to write to disk.

    Directory separators and control characters are dropped, leading dots are
    stripped so the result can never be hidden or relative, and the length is
    capped at :data:`MAX_FILENAME_LENGTH`.
    """

    if not name:
        return fallback
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE_FILENAME.sub("_", base).strip().lstrip(".")
    if not cleaned:
        return fallback
    return cleaned[:MAX_FILENAME_LENGTH]
