"""Watch a live mailbox for the registration mail carrying a request id.

What:
  :class:`CorrelatedMessageWatcher` connects to the mailbox, scans recently
  received messages newest first, and otherwise idles until a new message
  with a matching correlation header arrives. It returns that message as a
  :class:`~identmail.store.messages.StoredMessage`.

Why:
  Out-of-band registration proves mailbox ownership by mailing a token back to
  the address being registered. The mail may already have arrived by the time
  the watch starts, may arrive while the initial scan runs, or may arrive
  later; the request id it must carry may itself only become known after the
  watch started.

How:
  State machine ``CONNECTING -> SCANNING -> WAITING -> DONE``. The folder's
  event-delivery thread evaluates arrivals and records a match in a
  :class:`~identmail.core.correlation.MatchResult`; the control thread checks
  that cell after every IDLE wake. Both threads share one
  :class:`~identmail.core.correlation.CorrelationToken`.

Interfaces:
  :class:`WatchState`, :class:`CorrelatedMessageWatcher`.

Invariants & Safety:
  - The scan stops at the first message older than the look-back window;
    older messages cannot answer a request made just now.
  - Exhausting the folder during the scan also proceeds to ``WAITING``.
  - The connection is logged out on every exit path, and threads blocked on
    the request id are released when the watch fails or is cancelled.
  - Protocol failures surface as ``ExtractionError(kind=CONNECTION)``;
    per-message evaluation faults are logged and skipped.
"""
from __future__ import annotations

import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Sequence

from ..config.loader import get_runtime_config
from ..imap.client import PROTOCOL_FAULTS, ImapConfig, MailboxClient, MailboxFolder, MailboxMessage
from ..store.messages import StoredMessage
from ..utils.logging import JsonLogger, get_logger
from .correlation import CorrelationToken, MatchResult, matches_token
from .errors import ExtractionError, FailureKind, WatchCancelled


Clock = Callable[[], datetime]


class WatchState(Enum):
    PENDING = "pending"
    CONNECTING = "connecting"
    SCANNING = "scanning"
    WAITING = "waiting"
    DONE = "done"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CorrelatedMessageWatcher:
    """Produce the one message whose correlation header carries the request id.

    What:
      Single-use task; call :meth:`run` (or the instance) directly on a worker
      thread, or use :meth:`start` to get a :class:`~concurrent.futures.Future`.

    Why:
      The registration workflow starts the watch before it knows the request
      id, then calls :meth:`set_correlation_token` once the server answered.

    How:
      :meth:`run` owns the IMAP connection; :meth:`_on_messages_added` runs on
      the folder's event thread and only touches the token and the result
      cell.

    Args:
      config: Mailbox connection parameters.
      header_name: Correlation header; defaults to
        ``registration.header`` from the runtime configuration.
      lookback: Look-back window for the initial scan; defaults to
        ``registration.lookback_seconds``.
      settle: Seconds to wait for the listener after a wake that saw
        arrivals; defaults to ``registration.settle_seconds``.
      token: Shared token, created unset when omitted.
      clock: Source of "now" for the look-back cutoff.
      client_factory: Builds the :class:`MailboxClient` context manager.
      logger: Structured logger; defaults to the ``watcher`` component.
    """

    def __init__(
        self,
        config: ImapConfig,
        *,
        header_name: Optional[str] = None,
        lookback: Optional[timedelta] = None,
        settle: Optional[float] = None,
        token: Optional[CorrelationToken] = None,
        clock: Clock = _utcnow,
        client_factory: Callable[..., MailboxClient] = MailboxClient,
        logger: Optional[JsonLogger] = None,
    ) -> None:
        if header_name is None or lookback is None or settle is None:
            settings = get_runtime_config().registration
            header_name = header_name or settings.header
            if lookback is None:
                lookback = timedelta(seconds=settings.lookback_seconds)
            if settle is None:
                settle = settings.settle_seconds
        self._config = config
        self._header_name = header_name
        self._lookback = lookback
        self._settle = settle
        self._token = token or CorrelationToken()
        self._clock = clock
        self._client_factory = client_factory
        self._logger = logger or get_logger("watcher")
        self._result = MatchResult()
        self._cancelled = threading.Event()
        self._state = WatchState.PENDING
        self._state_lock = threading.Lock()

    @property
    def state(self) -> WatchState:
        with self._state_lock:
            return self._state

    @property
    def token(self) -> CorrelationToken:
        return self._token

    def set_correlation_token(self, value: int) -> None:
        """Supply the request id; wakes every evaluation waiting for it."""

        self._token.set(value)
        self._logger.info("correlation token set", state=self.state.value)

    def cancel(self) -> None:
        """Abandon the watch.

        Threads waiting for the request id are released at once; the control
        loop notices at its next IDLE wake and the task fails with
        :class:`WatchCancelled`.
        """

        self._cancelled.set()
        self._token.cancel()
        self._logger.info("registration watch cancelled", state=self.state.value)

    def start(self, executor: Optional[Executor] = None) -> "Future[StoredMessage]":
        """Run the watch asynchronously and return its future."""

        if executor is not None:
            return executor.submit(self.run)
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="registration-watch")
        try:
            return pool.submit(self.run)
        finally:
            pool.shutdown(wait=False)

    def __call__(self) -> StoredMessage:
        return self.run()

    def run(self) -> StoredMessage:
        """Execute the state machine and return the matched message.

        Raises:
          ExtractionError: ``CONNECTION`` when the mailbox cannot be reached
            or the connection fails mid-watch.
          WatchCancelled: When :meth:`cancel` was called.
        """

        with self._state_lock:
            if self._state is not WatchState.PENDING:
                raise RuntimeError("a watcher can only run once")
        self._transition(WatchState.CONNECTING)
        try:
            with self._client_factory(self._config, logger=self._logger) as client:
                try:
                    folder = self._open(client)
                    match = self._scan(folder) or self._wait(folder)
                    stored = self._fetch(folder, match)
                    folder.close(expunge=False)
                except Exception:
                    self._token.cancel()
                    raise
        except ExtractionError as exc:
            self._fail(exc)
            raise
        except PROTOCOL_FAULTS as exc:
            error = ExtractionError(
                "Mailbox connection failed during registration watch", FailureKind.CONNECTION, exc
            )
            self._fail(error)
            raise error from exc
        self._transition(WatchState.DONE, uid=stored.uid)
        return stored

    def _open(self, client: MailboxClient) -> MailboxFolder:
        folder = client.open_folder(self._config.folder, readonly=False)
        folder.subscribe(self._on_messages_added)
        return folder

    def _scan(self, folder: MailboxFolder) -> Optional[MailboxMessage]:
        self._transition(WatchState.SCANNING, messages=folder.message_count())
        cutoff = self._clock() - self._lookback
        for index in range(folder.message_count(), 0, -1):
            self._check_cancelled()
            try:
                candidate = folder.message_at(index)
            except LookupError as exc:
                self._logger.warning("skipping unavailable message", index=index, error=str(exc))
                continue
            if candidate.received_at is None or candidate.received_at < cutoff:
                self._logger.info(
                    "scan reached look-back limit",
                    uid=candidate.uid,
                    received_at=candidate.received_at,
                )
                return None
            if self._matches(candidate):
                self._logger.info("registration mail found by scan", uid=candidate.uid)
                return candidate
        self._logger.info("scan exhausted folder", folder=folder.name)
        return None

    def _wait(self, folder: MailboxFolder) -> MailboxMessage:
        """Idle until a listener has offered a match.

        After a wake with arrivals the loop waits ``settle`` seconds for the
        listener, and the result is checked again before each IDLE. A
        listener that only finishes while IDLE is in progress (typically one
        blocked on a late request id) is picked up at the next wake, so DONE
        can lag the match by up to one ``idle_timeout``.
        """

        self._transition(WatchState.WAITING)
        while True:
            self._check_cancelled()
            match = self._result.peek()
            if match is not None:
                return match
            arrivals = folder.idle_wait()
            self._check_cancelled()
            match = self._result.wait(self._settle if arrivals else 0)
            if match is not None:
                return match

    def _fetch(self, folder: MailboxFolder, match: MailboxMessage) -> StoredMessage:
        try:
            return folder.fetch_message(match.uid)
        except LookupError as exc:
            raise ExtractionError(
                f"Matched message uid {match.uid} is no longer available",
                FailureKind.STREAM_ACQUISITION,
                exc,
            ) from exc

    def _on_messages_added(self, messages: Sequence[MailboxMessage]) -> None:
        for message in messages:
            try:
                matched = self._matches(message)
            except WatchCancelled:
                return
            if matched:
                if self._result.offer(message):
                    self._logger.info("registration mail arrived", uid=message.uid)
                return

    def _matches(self, message: MailboxMessage) -> bool:
        return matches_token(message, self._token, self._header_name, logger=self._logger)

    def _check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise WatchCancelled()

    def _transition(self, state: WatchState, **context: object) -> None:
        with self._state_lock:
            self._state = state
        self._logger.info("registration watch state", state=state.value, **context)

    def _fail(self, error: ExtractionError) -> None:
        self._transition(WatchState.FAILED, kind=error.kind.value, reason=error.message)
