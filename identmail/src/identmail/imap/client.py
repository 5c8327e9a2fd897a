"""Stateful IMAP client used by the registration mail watch.

What:
  Wrap the third-party ``imapclient`` library with configuration defaults,
  folder name normalisation, UID-first message access, IMAP IDLE waits and
  new-message notification delivery.

Why:
  The watch needs a small, predictable mailbox surface: count and index the
  messages present at open time, block until the server reports activity,
  learn which messages arrived, and close the folder without expunging.
  Centralising that here keeps protocol details (IDLE framing, INTERNALDATE
  time zones, CLOSE vs UNSELECT) out of the watcher's state machine.

How:
  :class:`MailboxClient` owns one ``IMAPClient`` connection for the lifetime
  of a ``with`` block. :meth:`MailboxClient.open_folder` selects a folder and
  returns a :class:`MailboxFolder`, which snapshots the folder's UIDs, tracks
  the highest UID seen, and after every IDLE wake searches for UIDs above it.
  New messages are handed to an :class:`~identmail.imap.events.EventDispatcher`
  so listeners run off the connection thread.

Interfaces:
  :class:`ImapConfig`, :class:`MailboxClient`, :class:`MailboxFolder`,
  :class:`MailboxMessage`.

Invariants & Safety:
  - All message access is UID based; sequence numbers are never sent to the
    server. ``message_at`` indexes the UID snapshot taken at open time.
  - Only the thread that opened the folder talks to the server; listeners
    receive messages whose headers were already fetched.
  - ``close(expunge=False)`` never removes messages: it uses UNSELECT, or
    EXAMINE followed by CLOSE on servers without UNSELECT.
  - Connection and login failures surface as
    :class:`~identmail.core.errors.ExtractionError` with kind ``CONNECTION``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from functools import cached_property
from typing import Any, Dict, List, Optional, Sequence

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError

from ..config.loader import get_runtime_config
from ..core.errors import ExtractionError, FailureKind
from ..store.messages import StoredMessage
from ..utils.logging import JsonLogger, get_logger
from ..utils.mime import parse_headers
from .events import EventDispatcher, Listener


PROTOCOL_FAULTS = (IMAPClientError, OSError)

_HEADER_KEYS = (b"BODY[HEADER]", b"BODY.PEEK[HEADER]")
_BODY_KEYS = (b"BODY[]", b"BODY.PEEK[]", b"RFC822")


@dataclass
class ImapConfig:
    """Connection parameters for the watched mailbox.

    ``folder`` and ``idle_timeout`` default to ``imap.default_mailbox`` and
    ``imap.idle_timeout`` from the runtime configuration when left unset.
    """

    host: str
    username: str
    password: str
    port: int = 993
    ssl: bool = True
    folder: Optional[str] = None
    idle_timeout: Optional[int] = None

    def __post_init__(self) -> None:
        if self.folder is not None and self.idle_timeout is not None:
            return
        settings = get_runtime_config().imap
        if self.folder is None:
            self.folder = settings.default_mailbox
        if self.idle_timeout is None:
            self.idle_timeout = settings.idle_timeout


@dataclass(frozen=True)
class MailboxMessage:
    """Header-level view of a message in an open folder.

    Attributes:
      uid: IMAP UID.
      received_at: Server INTERNALDATE, always timezone-aware when present.
      header_bytes: Raw header block as returned by ``BODY.PEEK[HEADER]``.
    """

    uid: int
    received_at: Optional[datetime]
    header_bytes: bytes

    @cached_property
    def headers(self) -> EmailMessage:
        return parse_headers(self.header_bytes)

    def header(self, name: str) -> List[str]:
        """Return every value of header ``name`` in order (possibly empty)."""

        return [str(value) for value in self.headers.get_all(name, [])]


class MailboxClient:
    """Context manager owning one authenticated IMAP connection.

    What:
      Connects and logs in on ``__enter__`` and logs out on ``__exit__``,
      including when the block raised.

    Why:
      The watch must release the server session on every exit path (match,
      failure, cancellation) so abandoned watches do not hold IDLE slots.

    How:
      Instantiates ``IMAPClient`` with ``normalise_times`` disabled so
      INTERNALDATE values keep their server offsets, then delegates folder
      work to :class:`MailboxFolder`.
    """

    def __init__(self, config: ImapConfig, *, logger: Optional[JsonLogger] = None):
        self._config = config
        self._logger = logger or get_logger("imap")
        self._client: Optional[IMAPClient] = None
        self._delimiter: str = "/"
        self._folder: Optional[MailboxFolder] = None

    def __enter__(self) -> "MailboxClient":
        """Open the connection and authenticate.

        Raises:
          ExtractionError: With kind ``CONNECTION`` if the server cannot be
            reached or rejects the credentials.
        """

        try:
            client = IMAPClient(self._config.host, port=self._config.port, ssl=self._config.ssl)
        except PROTOCOL_FAULTS as exc:
            raise ExtractionError(
                f"Unable to connect to {self._config.host}:{self._config.port}",
                FailureKind.CONNECTION,
                exc,
            ) from exc
        client.normalise_times = False
        try:
            client.login(self._config.username, self._config.password)
        except PROTOCOL_FAULTS as exc:
            self._safe_logout(client)
            raise ExtractionError(
                f"Unable to log in to {self._config.host} as {self._config.username}",
                FailureKind.CONNECTION,
                exc,
            ) from exc
        self._client = client
        self._logger.info("imap connected", host=self._config.host, username=self._config.username)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._client is None:
            return
        try:
            if self._folder is not None:
                self._folder.release()
            self._safe_logout(self._client)
        finally:
            self._client = None
            self._folder = None

    def _safe_logout(self, client: IMAPClient) -> None:
        try:
            client.logout()
        except PROTOCOL_FAULTS as exc:
            self._logger.warning("imap logout failed", host=self._config.host, error=repr(exc))

    @property
    def client(self) -> IMAPClient:
        if self._client is None:
            raise RuntimeError("IMAP client not connected")
        return self._client

    def open_folder(self, name: Optional[str] = None, *, readonly: bool = False) -> "MailboxFolder":
        """Select ``name`` (default: the configured folder) and return it.

        Raises:
          ExtractionError: With kind ``CONNECTION`` if listing or selecting
            the folder fails.
        """

        folder_name = name or self._config.folder
        if folder_name is None:
            raise RuntimeError("Default mailbox not configured")
        try:
            self._refresh_delimiter()
            normalized = self._normalize_path(folder_name)
            self.client.select_folder(normalized, readonly=readonly)
            folder = MailboxFolder(
                self,
                normalized,
                readonly=readonly,
                idle_timeout=self._config.idle_timeout or get_runtime_config().imap.idle_timeout,
                logger=self._logger,
            )
        except PROTOCOL_FAULTS as exc:
            raise ExtractionError(
                f"Unable to open folder {folder_name}", FailureKind.CONNECTION, exc
            ) from exc
        self._folder = folder
        return folder

    def _refresh_delimiter(self) -> None:
        for _flags, delimiter, _name in self.client.list_folders():
            if delimiter:
                decoded = delimiter.decode() if isinstance(delimiter, bytes) else str(delimiter)
                if decoded:
                    self._delimiter = decoded
                    return

    def _normalize_path(self, *parts: str) -> str:
        """Join ``parts`` with the server delimiter, accepting ``/`` or ``.`` input."""

        delimiter = self._delimiter or "/"
        segments: List[str] = []
        for part in parts:
            candidate = part.replace("/", delimiter).replace(".", delimiter)
            segments.extend(chunk.strip() for chunk in candidate.split(delimiter) if chunk.strip())
        return delimiter.join(segments)


class MailboxFolder:
    """A selected folder with UID-first access, IDLE waits and arrival events.

    Message indices accepted by :meth:`message_at` are 1-based positions in
    the UID list captured when the folder was opened (oldest first), extended
    as arrivals are observed.
    """

    def __init__(
        self,
        owner: MailboxClient,
        name: str,
        *,
        readonly: bool,
        idle_timeout: int,
        logger: JsonLogger,
    ) -> None:
        self._owner = owner
        self._name = name
        self._readonly = readonly
        self._idle_timeout = idle_timeout
        self._logger = logger
        self._uids: List[int] = sorted(int(uid) for uid in owner.client.search(["ALL"]))
        self._highest_uid = self._uids[-1] if self._uids else 0
        self._dispatcher = EventDispatcher(name=f"imap-events:{name}", logger=logger)
        self._open = True

    @property
    def name(self) -> str:
        return self._name

    @property
    def _imap(self) -> IMAPClient:
        return self._owner.client

    def message_count(self) -> int:
        return len(self._uids)

    def message_at(self, index: int) -> MailboxMessage:
        """Return the message at 1-based ``index`` (``message_count()`` is newest).

        Raises:
          IndexError: If ``index`` is outside ``1 .. message_count()``.
          LookupError: If the server no longer has the message.
        """

        if not 1 <= index <= len(self._uids):
            raise IndexError(f"message index {index} outside 1..{len(self._uids)}")
        uid = self._uids[index - 1]
        messages = self._fetch_headers([uid])
        if not messages:
            raise LookupError(f"message uid {uid} vanished from {self._name}")
        return messages[0]

    def subscribe(self, listener: Listener) -> None:
        """Register ``listener`` for batches of newly arrived messages."""

        self._dispatcher.subscribe(listener)

    def idle_wait(self, timeout: Optional[float] = None) -> List[MailboxMessage]:
        """Block in IMAP IDLE until the server pushes an event or ``timeout`` lapses.

        What:
          Returns the messages that arrived since the previous check, after
          queueing them for delivery to subscribed listeners.

        How:
          Arrivals already on the server are collected first and returned
          without idling, so messages that landed while the caller was busy
          are never stuck behind a full IDLE timeout. Otherwise IDLE is entered,
          ``idle_check`` blocks, IDLE is terminated, and the UID range above
          the highest known UID is searched.

        Args:
          timeout: Seconds to wait; defaults to the configured IDLE timeout.
        """

        arrivals = self._collect_arrivals()
        if not arrivals:
            wait = self._idle_timeout if timeout is None else timeout
            self._imap.idle()
            try:
                responses = self._imap.idle_check(timeout=wait)
            finally:
                self._imap.idle_done()
            self._logger.debug("imap idle wake", folder=self._name, responses=len(responses))
            arrivals = self._collect_arrivals()
        self._dispatcher.dispatch(arrivals)
        return arrivals

    def fetch_message(self, uid: int) -> StoredMessage:
        """Download the complete message ``uid`` without setting ``\\Seen``.

        Raises:
          LookupError: If the server no longer has the message.
        """

        data = self._imap.fetch([uid], [b"INTERNALDATE", b"BODY.PEEK[]"])
        item = data.get(uid)
        raw = _first(item, *_BODY_KEYS) if item else None
        if raw is None:
            raise LookupError(f"message uid {uid} vanished from {self._name}")
        headers = parse_headers(bytes(raw))
        return StoredMessage(
            raw=bytes(raw),
            message_id=str(headers["Message-ID"]) if headers["Message-ID"] else None,
            folder=self._name,
            uid=uid,
            received_at=_as_aware(_first(item, b"INTERNALDATE")),
        )

    def close(self, expunge: bool = False) -> None:
        """Leave the folder; with ``expunge=False`` deleted messages are kept."""

        if not self._open:
            return
        self._open = False
        try:
            if expunge and not self._readonly:
                self._imap.close_folder()
            elif self._imap.has_capability("UNSELECT"):
                self._imap.unselect_folder()
            else:
                self._imap.select_folder(self._name, readonly=True)
                self._imap.close_folder()
        finally:
            self._dispatcher.close()

    def release(self) -> None:
        """Stop event delivery without talking to the server."""

        self._open = False
        self._dispatcher.close()

    def _collect_arrivals(self) -> List[MailboxMessage]:
        found = self._imap.search(["UID", f"{self._highest_uid + 1}:*"])
        # "n:*" always matches the newest message, even when its UID is below n.
        uids = sorted(int(uid) for uid in found if int(uid) > self._highest_uid)
        if not uids:
            return []
        messages = self._fetch_headers(uids)
        self._uids.extend(uids)
        self._highest_uid = uids[-1]
        self._logger.info("imap messages arrived", folder=self._name, count=len(messages))
        return messages

    def _fetch_headers(self, uids: Sequence[int]) -> List[MailboxMessage]:
        data = self._imap.fetch(list(uids), [b"INTERNALDATE", b"BODY.PEEK[HEADER]"])
        messages: List[MailboxMessage] = []
        for uid in uids:
            item = data.get(uid)
            if item is None:
                continue
            header_bytes = _first(item, *_HEADER_KEYS) or b""
            messages.append(
                MailboxMessage(
                    uid=uid,
                    received_at=_as_aware(_first(item, b"INTERNALDATE")),
                    header_bytes=bytes(header_bytes),
                )
            )
        return messages


def _first(data: Optional[Dict[bytes, Any]], *keys: bytes) -> Any:
    if not data:
        return None
    for key in keys:
        if key in data:
            return data[key]
    return None


def _as_aware(value: Any) -> Optional[datetime]:
    """Return ``value`` as an aware datetime; naive values are taken as local time."""

    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.astimezone()
    return value
