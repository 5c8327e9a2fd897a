"""Correlation token, match predicate and result hand-off for the registration watch.

What:
  - :class:`CorrelationToken`: the unsigned 64-bit request id an awaited mail
    must carry, settable after the watch has started.
  - :func:`matches_token`: decides whether a candidate message carries the
    token in its correlation header.
  - :class:`MatchResult`: single-assignment cell passing the matched message
    from the event-delivery thread to the watcher's control loop.

Why:
  The registration request id is only known once the server has answered the
  registration call, which usually happens after the mailbox watch is already
  scanning or idling. Candidates evaluated before then must wait for the id
  rather than being discarded, or a fast server reply would be lost.

How:
  The token lives behind one :class:`threading.Condition`; :meth:`set`
  assigns and calls ``notify_all`` under the lock and waiters use
  ``wait_for`` so they re-check the value after every wake. The header format
  is ``<hex request id>:<opaque suffix>``.

Interfaces:
  :class:`CorrelationToken`, :class:`MatchResult`, :class:`HeaderSource`,
  :func:`read_correlation_header`, :func:`parse_request_id`,
  :func:`matches_token`.

Invariants & Safety:
  - A token value of ``0`` means unset; only ``1 .. 2**64 - 1`` can be set.
  - Header read or parse faults yield "no match" and a warning log line, so a
    malformed candidate never aborts the watch.
  - :meth:`CorrelationToken.cancel` releases every waiter with
    :class:`WatchCancelled`.
"""
from __future__ import annotations

import re
import threading
from email.errors import MessageError
from typing import Any, List, Optional, Protocol, Tuple

from imapclient.exceptions import IMAPClientError

from ..utils.logging import JsonLogger, get_logger
from .errors import WatchCancelled


UNSET = 0
UINT64_MAX = 2**64 - 1
DEFAULT_HEADER = "X-Identity-Registration"

_HEX_DIGITS = re.compile(r"[0-9A-Fa-f]+")
_HEADER_FAULTS = (MessageError, ValueError, LookupError, TypeError, UnicodeError, IMAPClientError, OSError)

_logger = get_logger("correlation")


class HeaderSource(Protocol):
    """Anything exposing every value of a named header, in order."""

    def header(self, name: str) -> List[str]:
        ...


class CorrelationToken:
    """Request id awaited by the watch, shared between threads."""

    def __init__(self, value: int = UNSET) -> None:
        self._condition = threading.Condition()
        self._value = UNSET
        self._cancelled = False
        if value != UNSET:
            self.set(value)

    @property
    def value(self) -> int:
        with self._condition:
            return self._value

    def set(self, value: int) -> None:
        """Assign the request id and wake every thread blocked on it.

        Raises:
          ValueError: If ``value`` is not in ``1 .. 2**64 - 1``.
        """

        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"request id must be an int, got {type(value).__name__}")
        if not UNSET < value <= UINT64_MAX:
            raise ValueError("request id must be a non-zero unsigned 64-bit integer")
        with self._condition:
            self._value = value
            self._condition.notify_all()

    def cancel(self) -> None:
        with self._condition:
            self._cancelled = True
            self._condition.notify_all()

    def wait_until_set(self, timeout: Optional[float] = None) -> int:
        """Block until the token is set and return it.

        Raises:
          WatchCancelled: If :meth:`cancel` was called.
          TimeoutError: If ``timeout`` elapsed first.
        """

        with self._condition:
            ready = self._condition.wait_for(
                lambda: self._value != UNSET or self._cancelled, timeout
            )
            if self._cancelled:
                raise WatchCancelled("watch cancelled while waiting for the request id")
            if not ready:
                raise TimeoutError("request id was not set in time")
            return self._value


class MatchResult:
    """Thread-safe cell assigned at most once with the matched message."""

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._value: Optional[Any] = None

    def offer(self, value: Any) -> bool:
        """Store ``value`` unless a value is already present; report success."""

        with self._condition:
            if self._value is not None:
                return False
            self._value = value
            self._condition.notify_all()
            return True

    def peek(self) -> Optional[Any]:
        with self._condition:
            return self._value

    def wait(self, timeout: Optional[float]) -> Optional[Any]:
        """Return the value, waiting up to ``timeout`` seconds for it to appear."""

        with self._condition:
            self._condition.wait_for(lambda: self._value is not None, timeout)
            return self._value


def read_correlation_header(message: HeaderSource, header_name: str) -> Optional[Tuple[str, str]]:
    """Return ``(request_id_hex, suffix)`` or ``None`` when the header is unusable.

    The header must occur exactly once and split on ``:`` into exactly two
    parts.
    """

    values = message.header(header_name)
    if len(values) != 1:
        return None
    parts = str(values[0]).strip().split(":")
    if len(parts) != 2:
        return None
    return parts[0], parts[1]


def parse_request_id(text: str) -> int:
    """Parse ``text`` as an unsigned 64-bit hexadecimal integer.

    Unlike :func:`int`, signs, ``0x`` prefixes, underscores and surrounding
    whitespace are rejected.

    Raises:
      ValueError: If ``text`` is not a hex number in the unsigned 64-bit range.
    """

    if not _HEX_DIGITS.fullmatch(text):
        raise ValueError(f"not a hexadecimal request id: {text!r}")
    value = int(text, 16)
    if value > UINT64_MAX:
        raise ValueError(f"request id exceeds 64 bits: {text!r}")
    return value


def matches_token(
    message: HeaderSource,
    token: CorrelationToken,
    header_name: str = DEFAULT_HEADER,
    *,
    logger: Optional[JsonLogger] = None,
) -> bool:
    """Check whether ``message`` carries ``token`` in its correlation header.

    What:
      Reads the single correlation header, waits for the token to be set, and
      compares the parsed request id with it.

    Why:
      Both the backward scan and the new-mail listener call this; either may
      run before the registration response supplied the request id.

    How:
      Structural checks (occurrence count, two-part split) run first so
      messages without the header never block. Only well-formed candidates
      wait on :meth:`CorrelationToken.wait_until_set`.

    Args:
      message: Candidate exposing :meth:`HeaderSource.header`.
      token: Shared request id.
      header_name: Correlation header field name.
      logger: Optional logger for swallowed faults.

    Returns:
      ``True`` only on an exact match.

    Raises:
      WatchCancelled: If the token was cancelled while waiting.
    """

    log = logger or _logger
    try:
        parts = read_correlation_header(message, header_name)
    except _HEADER_FAULTS as exc:
        log.warning("unable to read correlation header", header=header_name, error=repr(exc))
        return False
    if parts is None:
        return False
    expected = token.wait_until_set()
    try:
        actual = parse_request_id(parts[0])
    except ValueError as exc:
        log.warning("malformed correlation header", header=header_name, error=str(exc))
        return False
    return actual == expected
