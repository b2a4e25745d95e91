"""Document event model.

A :class:`DocumentEvent` describes a state change of a document in storage
and is the only thing nodes exchange. Events reference content by pointer
(``DocumentRef.url``) and never embed it. Events are immutable: a node that
transforms a document publishes a new event obtained with
:meth:`DocumentEvent.derive`.

Wire format (JSON)::

    {
      "specversion": "1.0",
      "type": "document-created",
      "time": "2024-05-01T12:00:00+00:00",
      "data": {
        "chainId": "6f1c...",
        "source": {"url": "s3://bucket/in.txt", "type": "text/plain"},
        "document": {"url": "s3://bucket/out.png", "type": "image/png", "etag": "9b2...", "size": 1024},
        "metadata": {"language": "en"},
        "callStack": ["trigger", "image-generator"]
      }
    }
"""

from __future__ import annotations

import copy
import hashlib
import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from docchain.errors import MalformedEventError
from docchain.events.media_types import InvalidMediaTypeError, MediaType

SPEC_VERSION = "1.0"


class EventType(str, Enum):
    """Kind of document state change carried by an event."""

    DOCUMENT_CREATED = "document-created"
    DOCUMENT_UPDATED = "document-updated"
    DOCUMENT_DELETED = "document-deleted"


def _coerce_event_type(value: EventType | str) -> EventType | str:
    if isinstance(value, EventType):
        return value
    try:
        return EventType(value)
    except ValueError:
        # Custom event types are allowed as plain strings
        return value


@dataclass(frozen=True)
class DocumentRef:
    """Pointer to a document in object storage.

    Attributes:
        url: Content pointer (storage location)
        type: Declared MIME type of the content
        etag: Optional content checksum
        size: Optional content size in bytes
    """

    url: str
    type: str
    etag: str | None = None
    size: int | None = None

    def __post_init__(self) -> None:
        """Validate fields after initialization."""
        if not self.url:
            raise MalformedEventError("document url cannot be empty")
        try:
            MediaType.parse(self.type)
        except InvalidMediaTypeError as exc:
            raise MalformedEventError(str(exc)) from exc
        if self.size is not None and self.size < 0:
            raise MalformedEventError("document size must be >= 0")

    @property
    def media_type(self) -> MediaType:
        return MediaType.parse(self.type)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        data: dict[str, Any] = {"url": self.url, "type": self.type}
        if self.etag is not None:
            data["etag"] = self.etag
        if self.size is not None:
            data["size"] = self.size
        return data

    @classmethod
    def from_dict(cls, data: Any, role: str = "document") -> DocumentRef:
        """Create a DocumentRef from a dictionary.

        Raises:
            MalformedEventError: If required fields are missing or invalid
        """
        if not isinstance(data, Mapping):
            raise MalformedEventError(f"'{role}' must be an object", data)
        url = data.get("url")
        if not isinstance(url, str) or not url:
            raise MalformedEventError(f"'{role}.url' is required", data)
        media_type = data.get("type")
        if not isinstance(media_type, str) or not media_type:
            raise MalformedEventError(f"'{role}.type' is required", data)
        etag = data.get("etag")
        if etag is not None and not isinstance(etag, str):
            raise MalformedEventError(f"'{role}.etag' must be a string", data)
        size = data.get("size")
        if size is not None and (isinstance(size, bool) or not isinstance(size, int)):
            raise MalformedEventError(f"'{role}.size' must be an integer", data)
        return cls(url=url, type=media_type, etag=etag, size=size)


@dataclass(frozen=True)
class DocumentEvent:
    """Immutable description of a document state change.

    Attributes:
        event_type: What happened to the document
        document: The document this event is about
        chain_id: Identifier shared by every event of one pipeline invocation
        source: The document that started the chain (defaults to ``document``)
        metadata: Annotations accumulated by upstream nodes (read-only)
        call_stack: Node ids the chain has traversed, oldest first
        time: When the event was created
        specversion: Envelope version
    """

    event_type: EventType | str
    document: DocumentRef
    chain_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    source: DocumentRef | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    call_stack: tuple[str, ...] = ()
    time: datetime = field(default_factory=lambda: datetime.now(UTC))
    specversion: str = SPEC_VERSION

    def __post_init__(self) -> None:
        """Normalize fields and freeze the metadata mapping."""
        event_type = _coerce_event_type(self.event_type)
        if not event_type:
            raise MalformedEventError("event type cannot be empty")
        if not self.chain_id:
            raise MalformedEventError("chain id cannot be empty")
        if self.time.tzinfo is None:
            raise MalformedEventError("event time must be timezone-aware")

        object.__setattr__(self, "event_type", event_type)
        if self.source is None:
            object.__setattr__(self, "source", self.document)
        object.__setattr__(self, "metadata", MappingProxyType(copy.deepcopy(dict(self.metadata))))
        object.__setattr__(self, "call_stack", tuple(self.call_stack))

    def __hash__(self) -> int:
        return hash((self.type, self.document, self.chain_id, self.call_stack, self.time))

    @property
    def type(self) -> str:
        """The event type as its wire string."""
        if isinstance(self.event_type, EventType):
            return self.event_type.value
        return self.event_type

    @property
    def idempotency_key(self) -> str:
        """Stable key identifying this event's effect on its document.

        Redeliveries of the same event yield the same key, so nodes can use
        it to name per-invocation outputs.
        """
        parts = [self.chain_id, self.type, self.document.url, self.document.etag or ""]
        return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()

    def derive(
        self,
        node_id: str,
        document: DocumentRef | None = None,
        event_type: EventType | str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> DocumentEvent:
        """Create the event a node publishes after handling this one.

        The chain id and source document are carried over, *node_id* is
        appended to the call stack and *metadata* is merged on top of the
        existing annotations.

        Args:
            node_id: Id of the node producing the new event
            document: Resulting document (defaults to the current one)
            event_type: Resulting event type (defaults to the current one)
            metadata: Annotations to add or overwrite

        Returns:
            A new DocumentEvent; this event is left untouched
        """
        merged = dict(self.metadata)
        if metadata:
            merged.update(metadata)
        return replace(
            self,
            event_type=event_type if event_type is not None else self.event_type,
            document=document if document is not None else self.document,
            metadata=merged,
            call_stack=(*self.call_stack, node_id),
            time=datetime.now(UTC),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        source = self.source if self.source is not None else self.document
        return {
            "specversion": self.specversion,
            "type": self.type,
            "time": self.time.isoformat(),
            "data": {
                "chainId": self.chain_id,
                "source": source.to_dict(),
                "document": self.document.to_dict(),
                "metadata": copy.deepcopy(dict(self.metadata)),
                "callStack": list(self.call_stack),
            },
        }

    def to_json(self) -> str:
        """Serialize the event to its JSON wire format."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> DocumentEvent:
        """Create a DocumentEvent from its wire dictionary.

        Raises:
            MalformedEventError: If required fields are missing or invalid
        """
        if not isinstance(data, Mapping):
            raise MalformedEventError("event must be a JSON object", data)

        event_type = data.get("type")
        if not isinstance(event_type, str) or not event_type:
            raise MalformedEventError("'type' is required", data)

        body = data.get("data")
        if not isinstance(body, Mapping):
            raise MalformedEventError("'data' must be an object", data)

        document = DocumentRef.from_dict(body.get("document"), role="document")
        source = DocumentRef.from_dict(body["source"], role="source") if body.get("source") is not None else None

        chain_id = body.get("chainId")
        if chain_id is not None and (not isinstance(chain_id, str) or not chain_id):
            raise MalformedEventError("'chainId' must be a non-empty string", data)

        metadata = body.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise MalformedEventError("'metadata' must be an object", data)

        call_stack = body.get("callStack") or []
        if not isinstance(call_stack, list) or not all(isinstance(n, str) for n in call_stack):
            raise MalformedEventError("'callStack' must be a list of strings", data)

        raw_time = data.get("time")
        if raw_time is None:
            time = datetime.now(UTC)
        else:
            try:
                time = datetime.fromisoformat(raw_time)
            except (TypeError, ValueError) as exc:
                raise MalformedEventError(f"'time' is not an ISO 8601 timestamp: {raw_time!r}", data) from exc
            if time.tzinfo is None:
                time = time.replace(tzinfo=UTC)

        specversion = data.get("specversion", SPEC_VERSION)
        if not isinstance(specversion, str):
            raise MalformedEventError("'specversion' must be a string", data)

        kwargs: dict[str, Any] = {}
        if chain_id is not None:
            kwargs["chain_id"] = chain_id
        return cls(
            event_type=event_type,
            document=document,
            source=source,
            metadata=metadata,
            call_stack=tuple(call_stack),
            time=time,
            specversion=specversion,
            **kwargs,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> DocumentEvent:
        """Parse an event from its JSON wire format.

        Raises:
            MalformedEventError: If the payload is not valid JSON or not a valid event
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MalformedEventError(f"payload is not valid JSON: {exc}", raw) from exc
        return cls.from_dict(data)


__all__ = [
    "SPEC_VERSION",
    "EventType",
    "DocumentRef",
    "DocumentEvent",
]
