"""Event delivery thread for mailbox notifications.

What:
  :class:`EventDispatcher` hands batches of newly arrived messages to
  subscribed listeners on one dedicated daemon thread per folder.

Why:
  Listeners may block (the registration listener waits for the request id),
  and the IMAP connection itself is not thread-safe. Delivering events on a
  separate thread keeps the connection-owning control thread free to return
  to IDLE while listeners do their work.

How:
  Batches go through a :class:`queue.Queue`; the worker thread starts lazily
  on the first dispatch and stops when it dequeues the close sentinel.
  Listener exceptions are logged and do not stop delivery of later batches.
"""
from __future__ import annotations

import queue
import threading
from typing import Any, Callable, List, Optional, Sequence

from ..utils.logging import JsonLogger, get_logger


Listener = Callable[[Sequence[Any]], None]

_STOP = object()


class EventDispatcher:
    """Deliver ``messages_added`` batches to listeners, in order."""

    def __init__(self, name: str = "imap-events", *, logger: Optional[JsonLogger] = None) -> None:
        self._name = name
        self._logger = logger or get_logger("imap.events")
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def dispatch(self, messages: Sequence[Any]) -> None:
        """Queue ``messages`` for delivery; empty batches are dropped."""

        if not messages:
            return
        with self._lock:
            if self._closed:
                return
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
                self._thread.start()
        self._queue.put(list(messages))

    def close(self, timeout: Optional[float] = 1.0) -> None:
        """Stop the worker after already queued batches have been delivered."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
        if thread is not None:
            self._queue.put(_STOP)
            thread.join(timeout)

    def _run(self) -> None:
        while True:
            batch = self._queue.get()
            try:
                if batch is _STOP:
                    return
                with self._lock:
                    listeners = list(self._listeners)
                for listener in listeners:
                    try:
                        listener(batch)
                    except Exception as exc:
                        self._logger.error(
                            "message listener failed", listener=repr(listener), error=repr(exc)
                        )
            finally:
                self._queue.task_done()
