"""
Module: identmail.__init__

What:
  Package root for identmail, the mail side of an out-of-band identity
  registration flow: it watches a mailbox for the registration mail carrying a
  request id and pulls attachments out of stored messages by MIME path.

Why:
  Hosts integrate through a handful of stable subpackages; listing them here
  keeps private helpers out of the public namespace.

How:
  Provide an explicit ``__all__`` enumerating the public subpackages.

Interfaces:
  - config: Runtime configuration loader and pydantic schema.
  - core: Attachment resolution, correlation matching and the mailbox watcher.
  - imap: ``imapclient`` wrapper with IDLE waits and arrival events.
  - store: Value types shared with the host's message store.
  - utils: Structured logging and MIME helpers.
"""

__all__ = [
    "config",
    "core",
    "imap",
    "store",
    "utils",
]
