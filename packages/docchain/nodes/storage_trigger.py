"""Storage event trigger.

Source node that turns object storage notifications into document events.
Notifications use the common bucket notification shape::

    {"Records": [{"eventName": "ObjectCreated:Put",
                  "eventTime": "2024-05-01T12:00:00.000Z",
                  "s3": {"bucket": {"name": "inbox"},
                         "object": {"key": "docs/report.pdf", "size": 1024, "eTag": "9b2..."}}}]}

``ObjectCreated:*`` records become ``document-created`` events and
``ObjectRemoved:*`` records become ``document-deleted`` events. Every record
starts a new chain. The media type comes from the key extension, or from the
leading bytes of the object when the extension is unknown.
"""

from __future__ import annotations

import json
import logging
import mimetypes
import uuid
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Self
from urllib.parse import unquote_plus

from docchain.errors import MalformedEventError, StorageError
from docchain.events.types import DocumentEvent, DocumentRef, EventType
from docchain.pipeline.capabilities import ComputeType
from docchain.pipeline.consumer_types import BatchItem
from docchain.pipeline.middleware import (
    Middleware,
    MiddlewareBuilder,
    MiddlewareDescription,
    ProcessingContext,
)

logger = logging.getLogger(__name__)

DESCRIPTION = MiddlewareDescription(
    name="storage-event-trigger",
    description="Triggers pipelines upon events emitted by object storage buckets.",
    version="1.0.0",
)

DEFAULT_MEDIA_TYPE = "application/octet-stream"

# Leading bytes of common formats, checked in order
_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"%PDF-", "application/pdf"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b", "application/gzip"),
    (b"ID3", "audio/mpeg"),
    (b"OggS", "audio/ogg"),
)


def sniff_media_type(head: bytes) -> str | None:
    """Detect a media type from the leading bytes of an object."""
    for signature, media_type in _SIGNATURES:
        if head.startswith(signature):
            return media_type
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if head[:4] == b"RIFF" and head[8:12] == b"WAVE":
        return "audio/wav"
    if head and b"\x00" not in head[:1024]:
        try:
            head[:1024].decode("utf-8")
        except UnicodeDecodeError:
            return None
        return "text/plain"
    return None


def guess_media_type(key: str) -> str:
    """Guess a media type from an object key's extension."""
    media_type, _ = mimetypes.guess_type(key, strict=False)
    return media_type or DEFAULT_MEDIA_TYPE


def _parse_time(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None and parsed.tzinfo is not None:
            return parsed
    return datetime.now(UTC)


class StorageEventTriggerBuilder(MiddlewareBuilder["StorageEventTrigger"]):
    """Builder for :class:`StorageEventTrigger`."""

    def with_bucket(self, bucket: str, prefix: str | None = None) -> Self:
        """Only trigger on objects of *bucket*, optionally under *prefix*."""
        buckets = list(self._options.get("buckets", []))
        buckets.append({"name": bucket, "prefix": prefix or ""})
        self._options["buckets"] = buckets
        return self

    def with_url_scheme(self, scheme: str) -> Self:
        """Scheme of the document URLs built from bucket and key (default ``s3``)."""
        self._options["url_scheme"] = scheme
        return self

    def build(self) -> StorageEventTrigger:
        return StorageEventTrigger(self.props(StorageEventTrigger.default_consumer_config))


class StorageEventTrigger(Middleware):
    """Emits a document event for every object created in or removed from storage."""

    description = DESCRIPTION
    supported_input_types = ()
    supported_output_types = ("*/*",)
    supported_compute_types = (ComputeType.CPU,)

    @classmethod
    def builder(cls, node_id: str) -> StorageEventTriggerBuilder:
        return StorageEventTriggerBuilder(node_id)

    @property
    def url_scheme(self) -> str:
        return self.props.options.get("url_scheme", "s3")

    def _watches(self, bucket: str, key: str) -> bool:
        buckets = self.props.options.get("buckets") or []
        if not buckets:
            return True
        return any(b["name"] == bucket and key.startswith(b["prefix"]) for b in buckets)

    def decode(self, item: BatchItem) -> list[DocumentEvent]:
        """Turn a storage notification into one event per relevant record.

        Raises:
            MalformedEventError: If the body is not a notification
        """
        try:
            notification = json.loads(item.body)
        except json.JSONDecodeError as e:
            raise MalformedEventError(f"invalid JSON: {e.msg}", item.body) from e
        if not isinstance(notification, dict):
            raise MalformedEventError("notification must be a JSON object", item.body)

        records = notification.get("Records")
        if records is None:
            # Test events sent when notifications are configured
            logger.debug("Ignoring notification without records on %s", self.node_id)
            return []
        if not isinstance(records, list):
            raise MalformedEventError("'Records' must be a list", item.body)

        events = []
        for record in records:
            event = self._event_from_record(record)
            if event is not None:
                events.append(event)
        return events

    def _event_from_record(self, record: Any) -> DocumentEvent | None:
        if not isinstance(record, dict):
            raise MalformedEventError("notification record must be an object", record)

        event_name = str(record.get("eventName", "")).removeprefix("s3:")
        if event_name.startswith("ObjectCreated"):
            event_type = EventType.DOCUMENT_CREATED
        elif event_name.startswith("ObjectRemoved"):
            event_type = EventType.DOCUMENT_DELETED
        else:
            logger.debug("Ignoring storage event %s on %s", event_name, self.node_id)
            return None

        storage = record.get("s3")
        try:
            bucket = storage["bucket"]["name"]
            obj = storage["object"]
            key = unquote_plus(obj["key"])
        except (KeyError, TypeError) as e:
            raise MalformedEventError(f"notification record is missing {e}", record) from e

        if not self._watches(bucket, key):
            logger.debug("Ignoring %s/%s on %s: bucket not watched", bucket, key, self.node_id)
            return None

        url = obj.get("url") or f"{self.url_scheme}://{bucket}/{key}"
        etag = obj.get("eTag") or None
        size = obj.get("size")
        document = DocumentRef(
            url=url,
            type=guess_media_type(key),
            etag=str(etag).strip('"') if etag else None,
            size=size if isinstance(size, int) and not isinstance(size, bool) else None,
        )
        # Redelivered notifications map to the same chain
        marker = obj.get("sequencer") or record.get("eventTime") or ""
        chain_id = str(uuid.uuid5(uuid.NAMESPACE_URL, f"{url}#{document.etag or ''}#{event_name}#{marker}"))

        return DocumentEvent(
            event_type=event_type,
            document=document,
            chain_id=chain_id,
            metadata={"storage": {"bucket": bucket, "key": key, "event": event_name}},
            call_stack=(self.node_id,),
            time=_parse_time(record.get("eventTime")),
        )

    async def process(self, event: DocumentEvent, context: ProcessingContext) -> list[DocumentEvent]:
        if (
            event.document.type != DEFAULT_MEDIA_TYPE
            or event.event_type != EventType.DOCUMENT_CREATED
            or context.storage is None
        ):
            return [event]

        try:
            head = (await context.storage.get(event.document.url))[:2048]
        except StorageError as e:
            logger.debug("Cannot read %s to detect its type: %s", event.document.url, e)
            return [event]

        detected = sniff_media_type(head)
        if detected is None:
            return [event]
        document = replace(event.document, type=detected)
        return [replace(event, document=document, source=document)]


__all__ = [
    "DESCRIPTION",
    "StorageEventTrigger",
    "StorageEventTriggerBuilder",
    "guess_media_type",
    "sniff_media_type",
]
