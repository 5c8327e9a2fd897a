"""
Module: tests/unit/test_events.py

What:
    Check that :class:`EventDispatcher` delivers batches in order on its own
    thread and survives failing listeners.

Why:
    The registration listener blocks on the request id; if it ran on the
    connection thread, the watch could never return to IDLE.
"""

import io
import threading

from identmail.imap.events import EventDispatcher
from identmail.utils.logging import JsonLogger


def _dispatcher(stream=None) -> EventDispatcher:
    return EventDispatcher("test-events", logger=JsonLogger(stream=stream or io.StringIO()))


def test_batches_arrive_in_order_off_the_calling_thread():
    dispatcher = _dispatcher()
    received = []
    threads = set()
    done = threading.Event()

    def listener(batch):
        threads.add(threading.current_thread().name)
        received.append(list(batch))
        if len(received) == 2:
            done.set()

    dispatcher.subscribe(listener)
    dispatcher.dispatch([1, 2])
    dispatcher.dispatch([3])
    assert done.wait(5)
    dispatcher.close()

    assert received == [[1, 2], [3]]
    assert threads == {"test-events"}


def test_empty_batches_are_dropped():
    dispatcher = _dispatcher()
    calls = []
    dispatcher.subscribe(calls.append)
    dispatcher.dispatch([])
    dispatcher.close()
    assert calls == []


def test_failing_listener_does_not_stop_delivery():
    stream = io.StringIO()
    dispatcher = _dispatcher(stream)
    delivered = threading.Event()

    def broken(batch):
        raise RuntimeError("listener bug")

    dispatcher.subscribe(broken)
    dispatcher.subscribe(lambda batch: delivered.set())
    dispatcher.dispatch(["message"])
    assert delivered.wait(5)
    dispatcher.close()

    assert "message listener failed" in stream.getvalue()
    assert "listener bug" in stream.getvalue()


def test_dispatch_after_close_is_ignored():
    dispatcher = _dispatcher()
    calls = []
    dispatcher.subscribe(calls.append)
    dispatcher.close()
    dispatcher.dispatch(["late"])
    assert calls == []
