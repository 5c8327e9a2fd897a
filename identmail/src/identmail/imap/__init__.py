"""Facade for the IMAP integration layer.

What:
  Surface :class:`ImapConfig`, the :class:`MailboxClient` context manager and
  the folder/message views used by the registration watch.

Invariants & Safety:
  - Message access is UID based.
  - Listeners subscribed to a folder run on its event-delivery thread, never
    on the connection thread.
"""

from .client import ImapConfig, MailboxClient, MailboxFolder, MailboxMessage
from .events import EventDispatcher

__all__ = ["EventDispatcher", "ImapConfig", "MailboxClient", "MailboxFolder", "MailboxMessage"]
