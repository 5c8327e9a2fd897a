"""
Module: tests/unit/test_watcher.py

What:
    Drive :class:`CorrelatedMessageWatcher` through its states against the
    fake IMAP backend: matches found by the initial scan, matches arriving
    during IDLE, request ids supplied late, connection failures and
    cancellation.

Why:
    The registration workflow blocks on the watcher's future. Any path that
    neither completes nor fails would leave the user's registration hanging.

How:
    Seed the backend's INBOX, run the watcher on its own thread via
    :meth:`CorrelatedMessageWatcher.start`, wait for a target state, then
    deliver mail or set the token from the test thread.

Invariants & Safety Rules:
    - The folder is always closed without expunge and the session logged out.
    - Messages older than the look-back window are never evaluated.
"""

import io
import time
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import timedelta

import pytest
from imapclient.exceptions import IMAPClientAbortError

from fakes import build_message
from identmail.core.correlation import CorrelationToken
from identmail.core.errors import ExtractionError, FailureKind, WatchCancelled
from identmail.core.watcher import CorrelatedMessageWatcher, WatchState
from identmail.utils.logging import JsonLogger


REQUEST_ID = 0x2A


def _watcher(imap_config, **kwargs) -> CorrelatedMessageWatcher:
    kwargs.setdefault("logger", JsonLogger(stream=io.StringIO(), component="test"))
    return CorrelatedMessageWatcher(imap_config, **kwargs)


def _wait_for_state(watcher: CorrelatedMessageWatcher, state: WatchState, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if watcher.state is state:
            return
        time.sleep(0.01)
    raise AssertionError(f"watcher stuck in {watcher.state}, expected {state}")


def test_scan_returns_recent_match_and_closes_without_expunge(backend, imap_config):
    backend.append_message("INBOX", build_message("stale", request_id=REQUEST_ID), age=timedelta(hours=1))
    match = backend.append_message("INBOX", build_message("registration", request_id=REQUEST_ID))
    backend.append_message("INBOX", build_message("newsletter"))

    watcher = _watcher(imap_config, token=CorrelationToken(REQUEST_ID))
    stored = watcher.run()

    assert stored.uid == match
    assert stored.message_id == "<registration@example.org>"
    assert watcher.state is WatchState.DONE
    names = backend.call_names()
    assert "idle" not in names
    assert "unselect_folder" in names
    assert "close_folder" not in names
    assert names[-1] == "logout"


def test_scan_stops_at_first_message_outside_lookback(backend, imap_config):
    """
    What:
        A matching message behind an out-of-window message is never returned;
        the watcher proceeds to WAITING and returns the later arrival.

    Why:
        Mail older than the look-back window cannot answer the current
        request, and evaluating the whole mailbox would not scale.
    """
    backend.append_message("INBOX", build_message("ancient", request_id=REQUEST_ID), age=timedelta(hours=2))
    backend.append_message("INBOX", build_message("old"), age=timedelta(hours=1))
    backend.append_message("INBOX", build_message("recent"))

    watcher = _watcher(imap_config, token=CorrelationToken(REQUEST_ID))
    future = watcher.start()
    _wait_for_state(watcher, WatchState.WAITING)
    arrived = backend.deliver("INBOX", build_message("fresh", request_id=REQUEST_ID))

    assert future.result(timeout=5).uid == arrived
    assert 1 not in backend.fetched_uids
    assert 2 in backend.fetched_uids


def test_non_matching_arrivals_are_skipped(backend, imap_config):
    watcher = _watcher(imap_config, token=CorrelationToken(REQUEST_ID))
    future = watcher.start()
    _wait_for_state(watcher, WatchState.WAITING)

    backend.deliver("INBOX", build_message("no header"))
    backend.deliver("INBOX", build_message("other request", request_id=0x2B))
    backend.deliver("INBOX", build_message("garbled", header_value="not-hex:x"))
    match = backend.deliver("INBOX", build_message("registration", request_id=REQUEST_ID))

    stored = future.result(timeout=5)
    assert stored.uid == match
    assert watcher.state is WatchState.DONE


def test_scan_of_in_window_mail_then_arrival(backend, imap_config):
    for subject in ("first", "second", "third"):
        backend.append_message("INBOX", build_message(subject, request_id=0x1))
    watcher = _watcher(imap_config, token=CorrelationToken(REQUEST_ID))
    future = watcher.start()
    _wait_for_state(watcher, WatchState.WAITING)
    assert sorted(set(backend.fetched_uids)) == [1, 2, 3]

    match = backend.deliver("INBOX", build_message("registration", request_id=REQUEST_ID))

    assert future.result(timeout=5).uid == match


def test_empty_folder_proceeds_to_waiting(backend, imap_config):
    watcher = _watcher(imap_config, token=CorrelationToken(REQUEST_ID))
    future = watcher.start()
    _wait_for_state(watcher, WatchState.WAITING)
    assert not future.done()
    watcher.cancel()
    with pytest.raises(WatchCancelled):
        future.result(timeout=5)


def test_token_set_after_scan_started(backend, imap_config):
    match = backend.append_message("INBOX", build_message("registration", request_id=REQUEST_ID))
    watcher = _watcher(imap_config)
    future = watcher.start()
    _wait_for_state(watcher, WatchState.SCANNING)

    with pytest.raises(FutureTimeout):
        future.result(timeout=0.1)
    watcher.set_correlation_token(REQUEST_ID)

    assert future.result(timeout=5).uid == match


def test_token_set_after_matching_mail_arrived(backend, imap_config):
    watcher = _watcher(imap_config)
    future = watcher.start()
    _wait_for_state(watcher, WatchState.WAITING)
    match = backend.deliver("INBOX", build_message("registration", request_id=REQUEST_ID))

    with pytest.raises(FutureTimeout):
        future.result(timeout=0.1)
    watcher.set_correlation_token(REQUEST_ID)

    assert future.result(timeout=5).uid == match


def test_unreachable_server_fails_with_connection(monkeypatch, imap_config):
    def refuse(host, port, ssl):
        raise OSError("network unreachable")

    monkeypatch.setattr("identmail.imap.client.IMAPClient", refuse)
    watcher = _watcher(imap_config, token=CorrelationToken(REQUEST_ID))

    with pytest.raises(ExtractionError) as excinfo:
        watcher.run()
    assert excinfo.value.kind is FailureKind.CONNECTION
    assert watcher.state is WatchState.FAILED


def test_connection_lost_while_idling(backend, imap_config):
    watcher = _watcher(imap_config, token=CorrelationToken(REQUEST_ID))
    future = watcher.start()
    _wait_for_state(watcher, WatchState.WAITING)

    backend.fail_idle(IMAPClientAbortError("socket closed"))

    with pytest.raises(ExtractionError) as excinfo:
        future.result(timeout=5)
    assert excinfo.value.kind is FailureKind.CONNECTION
    assert isinstance(excinfo.value.cause, IMAPClientAbortError)
    assert watcher.state is WatchState.FAILED
    assert backend.logged_out


def test_cancel_releases_scan_blocked_on_token(backend, imap_config):
    backend.append_message("INBOX", build_message("registration", request_id=REQUEST_ID))
    watcher = _watcher(imap_config)
    future = watcher.start()
    _wait_for_state(watcher, WatchState.SCANNING)

    watcher.cancel()

    with pytest.raises(WatchCancelled) as excinfo:
        future.result(timeout=5)
    assert excinfo.value.kind is FailureKind.CANCELLED
    assert backend.logged_out


def test_failed_watch_releases_blocked_listener(backend, imap_config):
    watcher = _watcher(imap_config)
    future = watcher.start()
    _wait_for_state(watcher, WatchState.WAITING)
    backend.deliver("INBOX", build_message("registration", request_id=REQUEST_ID))
    time.sleep(0.1)

    backend.fail_idle(IMAPClientAbortError("socket closed"))

    with pytest.raises(ExtractionError):
        future.result(timeout=5)
    with pytest.raises(WatchCancelled):
        watcher.token.wait_until_set(timeout=0)


def test_watcher_runs_only_once(backend, imap_config):
    backend.append_message("INBOX", build_message("registration", request_id=REQUEST_ID))
    watcher = _watcher(imap_config, token=CorrelationToken(REQUEST_ID))
    watcher()
    with pytest.raises(RuntimeError):
        watcher.run()


def test_custom_header_and_lookback(backend, imap_config):
    match = backend.append_message(
        "INBOX",
        build_message("registration", request_id=REQUEST_ID, header_name="X-Signup-Token"),
        age=timedelta(minutes=20),
    )
    watcher = _watcher(
        imap_config,
        header_name="X-Signup-Token",
        lookback=timedelta(hours=1),
        token=CorrelationToken(REQUEST_ID),
    )
    assert watcher.run().uid == match


def test_state_transitions_are_logged(backend, imap_config):
    stream = io.StringIO()
    backend.append_message("INBOX", build_message("registration", request_id=REQUEST_ID))
    watcher = CorrelatedMessageWatcher(
        imap_config,
        token=CorrelationToken(REQUEST_ID),
        logger=JsonLogger(stream=stream, component="watcher"),
    )
    watcher.run()
    output = stream.getvalue()
    for state in ("connecting", "scanning", "done"):
        assert f'"state":"{state}"' in output
    assert "secret" not in output


def test_listener_slower_than_settle_is_picked_up_within_one_idle_cycle(backend, imap_config):
    """
    What:
        The listener is still blocked on the request id when the settle wait
        ends; the watch reaches DONE at the next wake, within one
        ``idle_timeout`` of the token being set.

    Why:
        Arrival evaluation runs on the event thread, so the control loop must
        keep re-checking the result instead of treating a miss as final.
    """
    watcher = _watcher(imap_config, settle=0)
    future = watcher.start()
    _wait_for_state(watcher, WatchState.WAITING)
    match = backend.deliver("INBOX", build_message("registration", request_id=REQUEST_ID))

    time.sleep(0.3)
    assert not future.done()
    started = time.monotonic()
    watcher.set_correlation_token(REQUEST_ID)

    assert future.result(timeout=5).uid == match
    assert time.monotonic() - started < imap_config.idle_timeout + 1.5
