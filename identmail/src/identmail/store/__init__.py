"""Value types exchanged with the host application's message store."""

from .messages import MessageAttachment, MimePath, StoredMessage

__all__ = ["MessageAttachment", "MimePath", "StoredMessage"]
