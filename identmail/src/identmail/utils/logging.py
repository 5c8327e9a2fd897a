"""Structured JSON logging shared by the resolver and the mailbox watcher.

What:
  Emit one JSON object per log line with a timestamp, severity, component tag,
  the emitting thread, and any structured context supplied by the caller.

Why:
  The watcher runs on two threads at once (the control loop and the folder's
  event-delivery thread). Line-oriented JSON with the thread name keeps the
  interleaved output greppable, and scrubbing credential or message-content
  fields keeps passwords and registration headers out of shared logs.

How:
  :class:`JsonLogger` serialises a canonical payload merged with a redacted
  copy of the keyword context. Writes are serialised through a module-level
  lock so concurrent threads never interleave partial lines.

Interfaces:
  :class:`JsonLogger`, :func:`get_logger`.

Invariants & Safety:
  - Every payload carries ``ts``, ``lvl``, ``msg``, ``component`` and
    ``thread``.
  - Keys listed in :data:`SENSITIVE_KEYS` are replaced with ``[redacted]`` at
    any nesting depth.
  - Streams are flushed after each line.
"""
from __future__ import annotations

import json
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


REDACTED = "[redacted]"
SENSITIVE_KEYS = frozenset({"password", "subject", "body", "header_value", "token_value"})

_WRITE_LOCK = threading.Lock()


@dataclass
class JsonLogger:
    """Structured JSON logger with automatic redaction.

    What:
      Writes single-line JSON log entries for a named component.

    Why:
      Tests and operators parse these lines; a fixed schema keeps assertions
      and dashboards simple.

    How:
      :meth:`log` builds the payload; the level helpers forward keyword
      arguments as structured context.
    """

    stream: Any = field(default_factory=lambda: sys.stdout)
    component: str = "identmail"

    def log(self, level: str, message: str, *, extra: Optional[Dict[str, Any]] = None) -> None:
        """Serialise ``message`` and redacted ``extra`` context to the stream."""

        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "lvl": level.upper(),
            "msg": message,
            "component": self.component,
            "thread": threading.current_thread().name,
        }
        if extra:
            payload.update(self._redact(extra))
        line = json.dumps(payload, separators=(",", ":"), default=str)
        with _WRITE_LOCK:
            self.stream.write(line + "\n")
            self.stream.flush()

    def debug(self, message: str, **kwargs: Any) -> None:
        self.log("DEBUG", message, extra=kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self.log("INFO", message, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.log("WARN", message, extra=kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.log("ERROR", message, extra=kwargs)

    @staticmethod
    def _redact(data: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``data`` with sensitive keys masked recursively."""

        result: Dict[str, Any] = {}
        for key, value in data.items():
            if key in SENSITIVE_KEYS:
                result[key] = REDACTED
            elif isinstance(value, dict):
                result[key] = JsonLogger._redact(value)
            else:
                result[key] = value
        return result


def get_logger(component: str) -> JsonLogger:
    """Return a :class:`JsonLogger` bound to ``component`` writing to stdout."""

    return JsonLogger(component=component)
