"""Aggregated exports for identmail's attachment and registration core.

What:
  Package facade exposing the content-path resolver, the attachment
  extractor, the correlation primitives and the mailbox watcher.

Why:
  The watcher pulls in the IMAP connection layer and the runtime config, which hosts
  that only extract attachments from stored messages never need. Lazy access
  keeps that import off their start-up path.

How:
  Defines ``__all__`` explicitly and implements ``__getattr__`` to import the
  owning submodule on demand.

Invariants & Safety:
  - ``__getattr__`` only exposes names from ``__all__``; anything else raises
    :class:`AttributeError`.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "AttachmentExtractor",
    "ContentPathResolver",
    "describe_attachments",
    "ContainerPart",
    "LeafPart",
    "to_content_tree",
    "CorrelationToken",
    "MatchResult",
    "matches_token",
    "parse_request_id",
    "ExtractionError",
    "FailureKind",
    "WatchCancelled",
    "CorrelatedMessageWatcher",
    "WatchState",
]


def __getattr__(name: str) -> Any:
    """Resolve ``name`` from the submodule that defines it.

    Raises:
      AttributeError: If ``name`` is not part of the public surface.
    """

    if name in {"AttachmentExtractor", "ContentPathResolver", "describe_attachments"}:
        from . import attachments

        return getattr(attachments, name)
    if name in {"ContainerPart", "LeafPart", "to_content_tree"}:
        from . import content_tree

        return getattr(content_tree, name)
    if name in {"CorrelationToken", "MatchResult", "matches_token", "parse_request_id"}:
        from . import correlation

        return getattr(correlation, name)
    if name in {"ExtractionError", "FailureKind", "WatchCancelled"}:
        from . import errors

        return getattr(errors, name)
    if name in {"CorrelatedMessageWatcher", "WatchState"}:
        from . import watcher

        return getattr(watcher, name)
    raise AttributeError(name)
