"""Stored message and attachment metadata records.

What:
  Immutable value types for a locally persisted email and for the metadata of
  one of its attachments.

Why:
  The persistence layer is owned by the host application; this package only
  needs a stable shape to read from. Keeping the raw RFC822 bytes lets the
  content tree be rebuilt on demand instead of caching parsed objects.

How:
  Frozen dataclasses. :meth:`StoredMessage.to_email_message` parses the raw
  bytes through :func:`identmail.utils.mime.parse_message` every call so no
  mutable parsed state is shared between threads.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from email.errors import MessageError
from email.message import EmailMessage
from typing import Optional, Tuple

from ..core.errors import ExtractionError, FailureKind
from ..utils.mime import parse_message


MimePath = Tuple[int, ...]


@dataclass(frozen=True)
class StoredMessage:
    """A persisted email, convertible into a navigable content tree.

    Attributes:
      raw: Complete RFC822 bytes.
      message_id: ``Message-ID`` header value if known.
      folder: Mailbox the message was synchronised from.
      uid: IMAP UID in ``folder``.
      received_at: Server INTERNALDATE.
    """

    raw: bytes
    message_id: Optional[str] = None
    folder: Optional[str] = None
    uid: Optional[int] = None
    received_at: Optional[datetime] = None

    def to_email_message(self) -> EmailMessage:
        """Parse :attr:`raw` into a fresh :class:`EmailMessage`.

        Raises:
          ExtractionError: With kind ``CONVERSION`` when the bytes cannot be
            parsed.
        """

        try:
            return parse_message(self.raw)
        except (MessageError, ValueError, TypeError, UnicodeError) as exc:
            raise ExtractionError(
                "Exception extracting mime message from stored message",
                FailureKind.CONVERSION,
                exc,
            ) from exc


@dataclass(frozen=True)
class MessageAttachment:
    """Metadata for one attachment of a :class:`StoredMessage`.

    ``mime_path`` holds one zero-based child index per container level, from
    the message root down to the attachment part.
    """

    filename: Optional[str]
    content_type: str
    mime_path: MimePath
    size: int = 0
