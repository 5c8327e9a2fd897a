"""Failure taxonomy shared by attachment extraction and the registration watch.

What:
  Define :class:`ExtractionError`, the single exception type surfaced by the
  resolver and the watcher, tagged with a :class:`FailureKind`.

Why:
  Callers (attachment viewer, registration workflow) should handle one type
  and branch on ``kind`` when they care, without ever seeing raw
  ``imapclient``, socket or ``email`` package faults.

How:
  The lower-level fault is chained with ``raise ... from`` and also stored on
  :attr:`ExtractionError.cause` for logging.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureKind(Enum):
    CONVERSION = "conversion"
    NOT_A_CONTAINER = "not-a-container"
    NOT_A_LEAF = "not-a-leaf"
    INDEX_OUT_OF_RANGE = "index-out-of-range"
    PATH_DEPTH_EXCEEDED = "path-depth-exceeded"
    STREAM_ACQUISITION = "stream-acquisition"
    CONNECTION = "connection"
    CANCELLED = "cancelled"


class ExtractionError(Exception):
    """Extraction or watch failure with a human-readable cause.

    Attributes:
      kind: Category of the failure.
      cause: Underlying fault, when there is one.
    """

    def __init__(
        self,
        message: str,
        kind: FailureKind,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message}: {self.cause}"


class WatchCancelled(ExtractionError):
    """Raised inside a watch that was abandoned through ``cancel()``."""

    def __init__(self, message: str = "watch cancelled") -> None:
        super().__init__(message, FailureKind.CANCELLED)
