"""Navigable content tree over a parsed MIME message.

What:
  Model a message body as a tree whose nodes are either a :class:`LeafPart`
  (raw content with a content type and optional filename) or a
  :class:`ContainerPart` (ordered children addressed by zero-based index).

Why:
  Attachments are addressed by positional paths recorded when the message was
  stored. Walking ``email.message.Message`` objects directly invites unchecked
  assumptions (a ``message/rfc822`` part reports ``is_multipart()`` too); a
  two-variant type with an explicit coercion makes the wrong-variant case an
  error instead of a silent mis-read.

How:
  :func:`materialize` inspects one MIME part and returns the matching variant.
  Containers materialise children only when :meth:`ContainerPart.child` is
  called, so a path walk touches just the parts on the path.

Interfaces:
  :data:`ContentNode`, :class:`LeafPart`, :class:`ContainerPart`,
  :func:`materialize`, :func:`to_content_tree`, :func:`as_container`.

Invariants & Safety:
  - Child order is wire order; index ``i`` always addresses the ``i``-th
    subpart of the multipart body.
  - Only ``multipart/*`` parts with a parsed subpart list are containers.
    Embedded messages are leaves whose stream is the serialised message.
  - Nodes never mutate the underlying ``Message``.
"""
from __future__ import annotations

import io
from dataclasses import dataclass
from email.errors import MessageError
from email.message import EmailMessage, Message
from typing import BinaryIO, List, Optional, Union

from .errors import ExtractionError, FailureKind
from ..store.messages import StoredMessage
from ..utils.mime import parse_message


_PAYLOAD_FAULTS = (MessageError, ValueError, LookupError, TypeError, UnicodeError)


@dataclass(frozen=True)
class LeafPart:
    """A terminal MIME part carrying raw content."""

    part: Message

    @property
    def content_type(self) -> str:
        return self.part.get_content_type()

    @property
    def filename(self) -> Optional[str]:
        return self.part.get_filename()

    @property
    def is_attachment(self) -> bool:
        return self.part.get_content_disposition() == "attachment" or bool(self.filename)

    def read_bytes(self) -> bytes:
        """Return the transfer-decoded payload.

        Raises:
          ExtractionError: With kind ``STREAM_ACQUISITION`` if the payload
            cannot be decoded or serialised.
        """

        try:
            if self.part.get_content_maintype() == "message":
                embedded = self.part.get_payload()
                if isinstance(embedded, list):
                    return b"".join(sub.as_bytes() for sub in embedded)
            payload = self.part.get_payload(decode=True)
        except _PAYLOAD_FAULTS as exc:
            raise ExtractionError(
                "Exception reading content of body part", FailureKind.STREAM_ACQUISITION, exc
            ) from exc
        return payload if isinstance(payload, bytes) else b""

    def open_stream(self) -> BinaryIO:
        """Return a fresh binary stream over :meth:`read_bytes`."""

        return io.BytesIO(self.read_bytes())


@dataclass(frozen=True)
class ContainerPart:
    """A ``multipart/*`` part whose children are addressed by position."""

    part: Message

    @property
    def content_type(self) -> str:
        return self.part.get_content_type()

    @property
    def count(self) -> int:
        return len(self._subparts())

    def child(self, index: int) -> "ContentNode":
        """Materialise the child at ``index``.

        Raises:
          ExtractionError: With kind ``INDEX_OUT_OF_RANGE`` when ``index`` is
            not an ``int`` (``bool`` included), is negative, or is not below
            :attr:`count`.
        """

        if not isinstance(index, int) or isinstance(index, bool):
            raise ExtractionError(
                f"Cannot extract part {index!r}: path elements must be integers",
                FailureKind.INDEX_OUT_OF_RANGE,
            )
        subparts = self._subparts()
        if index < 0 or index >= len(subparts):
            raise ExtractionError(
                f"Cannot extract part {index}: index exceeds part count {len(subparts)}",
                FailureKind.INDEX_OUT_OF_RANGE,
            )
        return materialize(subparts[index])

    def children(self) -> List["ContentNode"]:
        return [materialize(sub) for sub in self._subparts()]

    def _subparts(self) -> List[Message]:
        payload = self.part.get_payload()
        return payload if isinstance(payload, list) else []


ContentNode = Union[LeafPart, ContainerPart]


def materialize(part: Message) -> ContentNode:
    """Inspect ``part`` and wrap it in the matching node variant."""

    if part.get_content_maintype() == "multipart" and isinstance(part.get_payload(), list):
        return ContainerPart(part)
    return LeafPart(part)


def to_content_tree(message: Union[StoredMessage, EmailMessage, bytes]) -> ContentNode:
    """Convert a stored message, parsed message or raw bytes into its root node.

    Raises:
      ExtractionError: With kind ``CONVERSION`` when the message cannot be
        parsed.
    """

    if isinstance(message, StoredMessage):
        return materialize(message.to_email_message())
    if isinstance(message, (bytes, bytearray)):
        try:
            return materialize(parse_message(bytes(message)))
        except _PAYLOAD_FAULTS as exc:
            raise ExtractionError(
                "Exception extracting mime message from raw bytes", FailureKind.CONVERSION, exc
            ) from exc
    if isinstance(message, Message):
        return materialize(message)
    raise ExtractionError(
        f"Cannot build a content tree from {type(message).__name__}", FailureKind.CONVERSION
    )


def as_container(node: ContentNode, *, what: str = "Message content") -> ContainerPart:
    """Coerce ``node`` to a container or fail explicitly.

    Raises:
      ExtractionError: With kind ``NOT_A_CONTAINER`` for leaf nodes.
    """

    if isinstance(node, ContainerPart):
        return node
    raise ExtractionError(
        f"{what} is not a container as expected (found {node.content_type})",
        FailureKind.NOT_A_CONTAINER,
    )
