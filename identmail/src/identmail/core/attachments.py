"""Locate attachment bytes inside stored messages by MIME path.

What:
  :class:`ContentPathResolver` walks a message's content tree along a path of
  child indices and returns the addressed leaf's byte stream.
  :class:`AttachmentExtractor` applies it to :class:`MessageAttachment`
  metadata and can write the result to disk for an external viewer.
  :func:`describe_attachments` produces that metadata (including the paths)
  for a message.

Why:
  Attachment metadata is persisted separately from message bodies, so the
  bytes must be recovered later from the stored message using only the
  recorded path. Every failure along the way needs to reach the caller as one
  :class:`ExtractionError` naming what went wrong.

How:
  The root must be a container. Descent is recursive: the last path element
  selects the result, every earlier element selects a node that is coerced to
  a container via :func:`as_container`.

Interfaces:
  :class:`ContentPathResolver`, :class:`AttachmentExtractor`,
  :func:`describe_attachments`.

Invariants & Safety:
  - Resolution is read-only; the same ``(message, path)`` always yields the
    same bytes and independent calls may run concurrently.
  - Out-of-range or negative indices fail before any stream is opened.
  - A path ending on a container fails with ``NOT_A_LEAF``.
"""
from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterator, List, Optional, Sequence, Tuple

from ..config.loader import get_runtime_config
from ..store.messages import MessageAttachment
from ..utils.logging import JsonLogger, get_logger
from ..utils.mime import safe_filename
from .content_tree import ContainerPart, ContentNode, LeafPart, as_container, to_content_tree
from .errors import ExtractionError, FailureKind


ContentTreeConverter = Callable[[Any], ContentNode]

_MAX_NAME_ATTEMPTS = 1000


class ContentPathResolver:
    """Resolve a MIME path to the byte stream of a leaf part.

    Args:
      converter: Message store capability turning a message into its root
        :data:`ContentNode`. Defaults to :func:`to_content_tree`.
      logger: Structured logger; defaults to the ``attachments`` component.
    """

    def __init__(
        self,
        converter: ContentTreeConverter = to_content_tree,
        *,
        logger: Optional[JsonLogger] = None,
    ) -> None:
        self._converter = converter
        self._logger = logger or get_logger("attachments")

    def resolve(self, message: Any, path: Sequence[int]) -> BinaryIO:
        """Return a stream over the leaf addressed by ``path`` in ``message``.

        Raises:
          ExtractionError: ``CONVERSION`` if the message cannot be turned into
            a tree, ``NOT_A_CONTAINER`` when a node on the path is a leaf,
            ``INDEX_OUT_OF_RANGE`` for indices past the child count,
            ``PATH_DEPTH_EXCEEDED`` for an empty path, ``NOT_A_LEAF`` when the
            path ends on a container, ``STREAM_ACQUISITION`` if the payload
            cannot be read.
        """

        mime_path = tuple(path)
        try:
            root = as_container(self._convert(message))
            leaf = self._extract_part_by_path(root, mime_path, 0)
            return leaf.open_stream()
        except ExtractionError as exc:
            self._logger.warning(
                "attachment extraction failed",
                kind=exc.kind.value,
                mime_path=list(mime_path),
                reason=exc.message,
            )
            raise

    def resolve_bytes(self, message: Any, path: Sequence[int]) -> bytes:
        with self.resolve(message, path) as stream:
            return stream.read()

    def _convert(self, message: Any) -> ContentNode:
        try:
            return self._converter(message)
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(
                "Exception converting message to content tree", FailureKind.CONVERSION, exc
            ) from exc

    def _extract_part_by_path(
        self, container: ContainerPart, path: Tuple[int, ...], depth: int
    ) -> LeafPart:
        if depth >= len(path):
            raise ExtractionError(
                f"path depth of {depth} exceeds length of mime path {len(path)}",
                FailureKind.PATH_DEPTH_EXCEEDED,
            )
        node = container.child(path[depth])
        if depth == len(path) - 1:
            if isinstance(node, ContainerPart):
                raise ExtractionError(
                    f"mime path {list(path)} addresses a {node.content_type} container, not a leaf part",
                    FailureKind.NOT_A_LEAF,
                )
            return node
        return self._extract_part_by_path(
            as_container(node, what=f"Part at depth {depth}"), path, depth + 1
        )


class AttachmentExtractor:
    """Extract attachments described by :class:`MessageAttachment` records."""

    def __init__(self, resolver: Optional[ContentPathResolver] = None) -> None:
        self._resolver = resolver or ContentPathResolver()

    def extract_attachment(self, attachment: MessageAttachment, message: Any) -> BinaryIO:
        """Return a stream over ``attachment`` inside ``message``."""

        return self._resolver.resolve(message, attachment.mime_path)

    def save_attachment(
        self,
        attachment: MessageAttachment,
        message: Any,
        directory: Optional[Path | str] = None,
    ) -> Path:
        """Write ``attachment`` into ``directory`` and return the created file.

        What:
          Materialise the attachment for an external viewer without ever
          overwriting an existing file.

        How:
          The filename is reduced to a safe single component; on collision a
          ``name (n).ext`` variant is tried. Files are opened with ``"xb"`` so
          concurrent saves cannot clobber each other.

        Args:
          attachment: Metadata carrying the filename and MIME path.
          message: The stored message containing the attachment.
          directory: Target directory; defaults to
            ``attachments.download_dir`` from the runtime configuration.

        Raises:
          ExtractionError: Any resolver failure, or ``STREAM_ACQUISITION`` when
            the file cannot be written.
        """

        target_dir = Path(directory or get_runtime_config().attachments.download_dir).expanduser()
        filename = safe_filename(attachment.filename)
        with self.extract_attachment(attachment, message) as stream:
            try:
                target_dir.mkdir(parents=True, exist_ok=True)
                for candidate in _candidate_paths(target_dir, filename):
                    try:
                        with candidate.open("xb") as handle:
                            shutil.copyfileobj(stream, handle)
                    except FileExistsError:
                        continue
                    return candidate
            except OSError as exc:
                raise ExtractionError(
                    f"Unable to write attachment to {target_dir}",
                    FailureKind.STREAM_ACQUISITION,
                    exc,
                ) from exc
        raise ExtractionError(
            f"No free filename for {filename} in {target_dir}", FailureKind.STREAM_ACQUISITION
        )


def _candidate_paths(directory: Path, filename: str) -> Iterator[Path]:
    yield directory / filename
    stem, suffix = Path(filename).stem, Path(filename).suffix
    for counter in range(1, _MAX_NAME_ATTEMPTS):
        yield directory / f"{stem} ({counter}){suffix}"


def describe_attachments(message: Any) -> List[MessageAttachment]:
    """List the attachments of ``message`` in wire order with their MIME paths.

    A message whose root is not multipart has no addressable attachments.
    """

    root = to_content_tree(message)
    found: List[MessageAttachment] = []
    if isinstance(root, ContainerPart):
        _collect(root, (), found)
    return found


def _collect(container: ContainerPart, prefix: Tuple[int, ...], found: List[MessageAttachment]) -> None:
    for index, child in enumerate(container.children()):
        path = prefix + (index,)
        if isinstance(child, ContainerPart):
            _collect(child, path, found)
        elif child.is_attachment:
            found.append(
                MessageAttachment(
                    filename=child.filename,
                    content_type=child.content_type,
                    mime_path=path,
                    size=len(child.read_bytes()),
                )
            )
