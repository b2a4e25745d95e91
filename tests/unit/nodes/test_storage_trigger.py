"""Unit tests for the storage event trigger."""

import json

import pytest

from docchain.errors import MalformedEventError
from docchain.events import EventType
from docchain.nodes import StorageEventTrigger
from docchain.nodes.storage_trigger import guess_media_type, sniff_media_type
from docchain.pipeline import BatchItem, ProcessingContext
from docchain.transport import InMemoryStorage
from tests.fixtures.middlewares import make_event


def _record(
    key: str = "docs/report.pdf",
    bucket: str = "inbox",
    event_name: str = "ObjectCreated:Put",
    **obj: object,
) -> dict:
    return {
        "eventName": event_name,
        "eventTime": "2024-05-01T12:00:00.000Z",
        "s3": {"bucket": {"name": bucket}, "object": {"key": key, "size": 1024, **obj}},
    }


def _item(*records: dict, body: str | None = None) -> BatchItem:
    if body is None:
        body = json.dumps({"Records": list(records)})
    return BatchItem(item_id="1-0", body=body)


@pytest.fixture()
def trigger() -> StorageEventTrigger:
    return StorageEventTrigger.builder("trigger").build()


class TestDecode:
    """Tests for turning notifications into document events."""

    def test_created_and_removed_records(self, trigger: StorageEventTrigger) -> None:
        """Test that object events map to document event types."""
        events = trigger.decode(
            _item(_record(), _record(key="old.txt", event_name="ObjectRemoved:Delete"))
        )

        assert [e.event_type for e in events] == [EventType.DOCUMENT_CREATED, EventType.DOCUMENT_DELETED]
        created = events[0]
        assert created.document.url == "s3://inbox/docs/report.pdf"
        assert created.document.type == "application/pdf"
        assert created.document.size == 1024
        assert created.call_stack == ("trigger",)
        assert created.source == created.document
        assert created.metadata["storage"] == {
            "bucket": "inbox",
            "key": "docs/report.pdf",
            "event": "ObjectCreated:Put",
        }
        assert created.time.year == 2024
        assert events[1].document.type == "text/plain"

    def test_event_name_prefix_is_ignored(self, trigger: StorageEventTrigger) -> None:
        """Test that 's3:'-prefixed event names are understood."""
        events = trigger.decode(_item(_record(event_name="s3:ObjectCreated:Copy")))
        assert events[0].event_type == EventType.DOCUMENT_CREATED

    def test_other_event_names_are_ignored(self, trigger: StorageEventTrigger) -> None:
        """Test that records other than creations and removals produce nothing."""
        assert trigger.decode(_item(_record(event_name="ObjectRestore:Post"))) == []

    def test_notification_without_records(self, trigger: StorageEventTrigger) -> None:
        """Test that test notifications are ignored."""
        assert trigger.decode(_item(body=json.dumps({"Event": "s3:TestEvent"}))) == []

    @pytest.mark.parametrize(
        "body",
        [
            "not json",
            "[]",
            json.dumps({"Records": "nope"}),
            json.dumps({"Records": ["nope"]}),
            json.dumps({"Records": [{"eventName": "ObjectCreated:Put", "s3": {"bucket": {}}}]}),
        ],
    )
    def test_malformed_notifications(self, trigger: StorageEventTrigger, body: str) -> None:
        """Test that malformed notifications raise MalformedEventError."""
        with pytest.raises(MalformedEventError):
            trigger.decode(_item(body=body))

    def test_keys_are_unquoted(self, trigger: StorageEventTrigger) -> None:
        """Test that URL-encoded keys are decoded."""
        events = trigger.decode(_item(_record(key="my+docs/r%C3%A9sum%C3%A9.txt")))
        assert events[0].document.url == "s3://inbox/my docs/résumé.txt"
        assert events[0].metadata["storage"]["key"] == "my docs/résumé.txt"

    def test_etag_quotes_are_stripped(self, trigger: StorageEventTrigger) -> None:
        """Test that quoted ETags are normalized."""
        events = trigger.decode(_item(_record(eTag='"9b2cf535f27731c974343645a3985328"')))
        assert events[0].document.etag == "9b2cf535f27731c974343645a3985328"

    def test_url_override(self, trigger: StorageEventTrigger) -> None:
        """Test that records carrying a URL keep it."""
        events = trigger.decode(_item(_record(url="https://cdn.example.com/report.pdf")))
        assert events[0].document.url == "https://cdn.example.com/report.pdf"

    def test_url_scheme(self) -> None:
        """Test that the URL scheme is configurable."""
        trigger = StorageEventTrigger.builder("trigger").with_url_scheme("gs").build()
        assert trigger.decode(_item(_record()))[0].document.url == "gs://inbox/docs/report.pdf"

    def test_redelivery_keeps_chain_id(self, trigger: StorageEventTrigger) -> None:
        """Test that the same record always starts the same chain."""
        first = trigger.decode(_item(_record(sequencer="0055AED6DCD90281E5")))
        second = trigger.decode(_item(_record(sequencer="0055AED6DCD90281E5")))
        other = trigger.decode(_item(_record(sequencer="0055AED6DCD90281E6")))
        assert first[0].chain_id == second[0].chain_id
        assert first[0].chain_id != other[0].chain_id

    def test_bucket_and_prefix_filter(self) -> None:
        """Test that only watched buckets and prefixes trigger events."""
        trigger = StorageEventTrigger.builder("trigger").with_bucket("inbox", prefix="docs/").build()
        events = trigger.decode(
            _item(_record(), _record(key="images/cat.png"), _record(bucket="other"))
        )
        assert [e.document.url for e in events] == ["s3://inbox/docs/report.pdf"]


class TestMediaTypes:
    """Tests for media type detection."""

    @pytest.mark.parametrize(
        ("head", "expected"),
        [
            (b"\x89PNG\r\n\x1a\n\x00\x00", "image/png"),
            (b"\xff\xd8\xff\xe0", "image/jpeg"),
            (b"%PDF-1.7\n", "application/pdf"),
            (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "image/webp"),
            (b"RIFF\x00\x00\x00\x00WAVEfmt ", "audio/wav"),
            (b"Hello, world", "text/plain"),
            (b"\x00\x01\x02", None),
            (b"\xc3\x28", None),
            (b"", None),
        ],
    )
    def test_sniff(self, head: bytes, expected: str | None) -> None:
        """Test detection from leading bytes."""
        assert sniff_media_type(head) == expected

    def test_guess_from_extension(self) -> None:
        """Test detection from the key extension."""
        assert guess_media_type("a/b/photo.png") == "image/png"
        assert guess_media_type("README") == "application/octet-stream"


class TestProcess:
    """Tests for StorageEventTrigger.process."""

    @pytest.mark.asyncio()
    async def test_known_types_pass_through(self, trigger: StorageEventTrigger) -> None:
        """Test that events with a known type are published unchanged."""
        event = make_event()
        assert await trigger.process(event, ProcessingContext(node_id="trigger", storage=InMemoryStorage())) == [event]

    @pytest.mark.asyncio()
    async def test_unknown_type_is_sniffed(self, trigger: StorageEventTrigger) -> None:
        """Test that untyped objects get a type from their content."""
        storage = InMemoryStorage()
        url = await storage.put(b"%PDF-1.4 ...", "application/octet-stream")
        event = make_event(url=url, media_type="application/octet-stream")

        outputs = await trigger.process(event, ProcessingContext(node_id="trigger", storage=storage))

        assert outputs[0].document.type == "application/pdf"
        assert outputs[0].source == outputs[0].document
        assert outputs[0].chain_id == event.chain_id

    @pytest.mark.asyncio()
    async def test_missing_object_keeps_event(self, trigger: StorageEventTrigger) -> None:
        """Test that unreadable objects keep their declared type."""
        event = make_event(url="mem://missing", media_type="application/octet-stream")
        outputs = await trigger.process(event, ProcessingContext(node_id="trigger", storage=InMemoryStorage()))
        assert outputs == [event]

    @pytest.mark.asyncio()
    async def test_deleted_documents_are_not_read(self, trigger: StorageEventTrigger) -> None:
        """Test that removed objects are not sniffed."""
        event = make_event(
            url="mem://gone", media_type="application/octet-stream", event_type=EventType.DOCUMENT_DELETED
        )
        outputs = await trigger.process(event, ProcessingContext(node_id="trigger", storage=InMemoryStorage()))
        assert outputs == [event]
