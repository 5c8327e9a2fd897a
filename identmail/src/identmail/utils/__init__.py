"""Expose the public utility surface for identmail.

What:
  Re-export the logging and MIME helpers shared by the resolver and the
  watcher.

Why:
  Callers import from ``identmail.utils`` without depending on module
  filenames.
"""

from .logging import JsonLogger, get_logger
from .mime import parse_headers, parse_message, safe_filename

__all__ = [
    "JsonLogger",
    "get_logger",
    "parse_headers",
    "parse_message",
    "safe_filename",
]
