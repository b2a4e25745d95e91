"""Unit tests for the document event model."""

import json
from datetime import UTC, datetime

import pytest

from docchain.errors import MalformedEventError
from docchain.events import DocumentEvent, DocumentRef, EventType


def _wire(**overrides: object) -> dict:
    data = {
        "specversion": "1.0",
        "type": "document-created",
        "time": "2024-05-01T12:00:00+00:00",
        "data": {
            "chainId": "chain-1",
            "source": {"url": "s3://inbox/prompt.txt", "type": "text/plain"},
            "document": {"url": "s3://inbox/prompt.txt", "type": "text/plain", "etag": "abc", "size": 12},
            "metadata": {"language": "en"},
            "callStack": ["trigger"],
        },
    }
    data.update(overrides)
    return data


class TestDocumentRef:
    """Tests for DocumentRef."""

    def test_media_type_property(self) -> None:
        """Test that the declared type parses into a MediaType."""
        ref = DocumentRef(url="s3://b/k.png", type="image/png")
        assert ref.media_type.essence == "image/png"

    def test_rejects_empty_url(self) -> None:
        """Test that a document needs a pointer."""
        with pytest.raises(MalformedEventError, match="url"):
            DocumentRef(url="", type="text/plain")

    def test_rejects_invalid_type(self) -> None:
        """Test that an invalid MIME type is rejected."""
        with pytest.raises(MalformedEventError):
            DocumentRef(url="s3://b/k", type="not-a-type")

    def test_rejects_negative_size(self) -> None:
        """Test that sizes cannot be negative."""
        with pytest.raises(MalformedEventError, match="size"):
            DocumentRef(url="s3://b/k", type="text/plain", size=-1)

    def test_to_dict_omits_unset_fields(self) -> None:
        """Test that optional fields are left out when unset."""
        assert DocumentRef(url="s3://b/k", type="text/plain").to_dict() == {"url": "s3://b/k", "type": "text/plain"}


class TestDocumentEvent:
    """Tests for DocumentEvent construction and derivation."""

    def test_defaults(self) -> None:
        """Test that source defaults to the document and a chain id is generated."""
        ref = DocumentRef(url="s3://b/k.txt", type="text/plain")
        event = DocumentEvent(event_type="document-created", document=ref)
        assert event.event_type is EventType.DOCUMENT_CREATED
        assert event.source == ref
        assert event.chain_id
        assert event.time.tzinfo is not None

    def test_custom_event_type_kept_as_string(self) -> None:
        """Test that unknown event types are allowed."""
        event = DocumentEvent(event_type="document-archived", document=DocumentRef(url="s3://b/k", type="text/plain"))
        assert event.type == "document-archived"

    def test_metadata_is_read_only_copy(self) -> None:
        """Test that metadata cannot be mutated through the event or the original dict."""
        metadata = {"tags": ["a"]}
        event = DocumentEvent(
            event_type=EventType.DOCUMENT_CREATED,
            document=DocumentRef(url="s3://b/k", type="text/plain"),
            metadata=metadata,
        )
        metadata["tags"].append("b")
        assert event.metadata["tags"] == ["a"]
        with pytest.raises(TypeError):
            event.metadata["new"] = 1  # type: ignore[index]

    def test_rejects_naive_time(self) -> None:
        """Test that event times must carry a timezone."""
        with pytest.raises(MalformedEventError, match="timezone"):
            DocumentEvent(
                event_type=EventType.DOCUMENT_CREATED,
                document=DocumentRef(url="s3://b/k", type="text/plain"),
                time=datetime(2024, 1, 1),
            )

    def test_derive_carries_chain_and_appends_call_stack(self) -> None:
        """Test that derived events keep the chain and source."""
        event = DocumentEvent.from_dict(_wire())
        output = DocumentRef(url="mem://out.png", type="image/png")

        derived = event.derive("image-gen", document=output, metadata={"image": {"index": 0}})

        assert derived.chain_id == event.chain_id
        assert derived.source == event.source
        assert derived.document == output
        assert derived.call_stack == ("trigger", "image-gen")
        assert derived.metadata == {"language": "en", "image": {"index": 0}}
        assert event.call_stack == ("trigger",)
        assert event.document.type == "text/plain"

    def test_derive_can_change_event_type(self) -> None:
        """Test overriding the event type when deriving."""
        event = DocumentEvent.from_dict(_wire())
        assert event.derive("n", event_type=EventType.DOCUMENT_DELETED).type == "document-deleted"

    def test_idempotency_key_is_stable(self) -> None:
        """Test that redeliveries of the same event share a key."""
        first = DocumentEvent.from_json(json.dumps(_wire()))
        second = DocumentEvent.from_json(json.dumps(_wire()))
        assert first.idempotency_key == second.idempotency_key

        other = DocumentEvent.from_dict(_wire(type="document-deleted"))
        assert other.idempotency_key != first.idempotency_key


class TestWireFormat:
    """Tests for JSON serialization."""

    def test_from_json_parses_every_field(self) -> None:
        """Test parsing the full wire format."""
        event = DocumentEvent.from_json(json.dumps(_wire()))
        assert event.type == "document-created"
        assert event.chain_id == "chain-1"
        assert event.document.etag == "abc"
        assert event.document.size == 12
        assert event.metadata["language"] == "en"
        assert event.call_stack == ("trigger",)
        assert event.time == datetime(2024, 5, 1, 12, tzinfo=UTC)

    def test_to_json_matches_wire_shape(self) -> None:
        """Test that serialization produces the wire layout."""
        event = DocumentEvent.from_dict(_wire())
        assert json.loads(event.to_json()) == _wire()

    @pytest.mark.parametrize(
        "event",
        [
            DocumentEvent(event_type="document-created", document=DocumentRef(url="s3://b/k", type="text/plain")),
            DocumentEvent(event_type="document-archived", document=DocumentRef(url="s3://b/a.png", type="image/png")),
            DocumentEvent(
                event_type=EventType.DOCUMENT_UPDATED,
                document=DocumentRef(url="mem://out.png", type="image/png", etag="e1", size=10),
                source=DocumentRef(url="s3://b/in.txt", type="text/plain"),
                metadata={"a": {"b": [1, {"c": "d"}]}, "score": 0.5, "flag": None},
                call_stack=("trigger", "image-gen"),
            ),
        ],
        ids=["defaults", "custom-type", "nested-metadata"],
    )
    def test_json_round_trip_preserves_event(self, event: DocumentEvent) -> None:
        """Test that parsing a serialized event yields an equal event."""
        parsed = DocumentEvent.from_json(event.to_json())
        assert parsed == event
        assert parsed.type == event.type
        assert parsed.to_json() == event.to_json()

    def test_missing_time_defaults_to_now(self) -> None:
        """Test that events without a time are stamped on parse."""
        data = _wire()
        del data["time"]
        assert DocumentEvent.from_dict(data).time.tzinfo is not None

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            "[]",
            json.dumps({"data": {}}),
            json.dumps({"type": "document-created"}),
            json.dumps({"type": "document-created", "data": {"document": {"url": "s3://b/k"}}}),
            json.dumps(_wire(time="yesterday")),
        ],
    )
    def test_malformed_payloads(self, payload: str) -> None:
        """Test that invalid payloads raise MalformedEventError."""
        with pytest.raises(MalformedEventError):
            DocumentEvent.from_json(payload)

    def test_malformed_call_stack(self) -> None:
        """Test that the call stack must be a list of strings."""
        data = _wire()
        data["data"]["callStack"] = "trigger"
        with pytest.raises(MalformedEventError, match="callStack"):
            DocumentEvent.from_dict(data)
