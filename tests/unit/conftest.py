"""Pytest fixtures for unit tests requiring IMAP fakes.

What:
  Make ``tests/unit`` importable and expose fixtures that route
  ``identmail.imap.client.IMAPClient`` to a :class:`FakeImapBackend`.

Why:
  The mailbox layer and the watcher construct their own ``IMAPClient``; tests
  swap the constructor so no network access happens and so they can push
  mail into the backend while a watch is running.

Interfaces:
  :func:`backend`, :func:`imap_config`, :func:`imap_client` (pytest fixtures).

Invariants & Safety:
  - Each test receives a fresh backend instance.
"""

import sys
from pathlib import Path

import pytest

from identmail.imap.client import ImapConfig, MailboxClient

UNIT_DIR = Path(__file__).resolve().parent
if str(UNIT_DIR) not in sys.path:
    sys.path.insert(0, str(UNIT_DIR))

from fakes import FakeImapBackend


@pytest.fixture
def backend(monkeypatch: pytest.MonkeyPatch) -> FakeImapBackend:
    """Return a fake backend that every new ``IMAPClient`` resolves to."""

    fake = FakeImapBackend()
    monkeypatch.setattr("identmail.imap.client.IMAPClient", lambda host, port, ssl: fake)
    return fake


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(host="imap.example.org", username="user@example.org", password="secret")


@pytest.fixture
def imap_client(backend: FakeImapBackend, imap_config: ImapConfig):
    """Yield ``(MailboxClient, FakeImapBackend)`` inside the client's context.

    What:
      Opens the context-managed :class:`MailboxClient` so the login/logout
      flow mirrors production.

    Why:
      Tests assert on backend state (selected folder, calls) while invoking
      high-level client methods; exposing both keeps assertions explicit.
    """

    with MailboxClient(imap_config) as client:
        yield client, backend
