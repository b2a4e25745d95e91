"""Unit tests for field lookup and pattern matching."""

import pytest

from docchain.events import DocumentRef
from docchain.pipeline.predicates import MISSING, get_nested_value, match_value, translate_path
from tests.fixtures.middlewares import make_event


class TestGetNestedValue:
    """Tests for get_nested_value helper function."""

    def test_simple_dict_key(self) -> None:
        """Test getting a simple dict key."""
        obj = {"name": "test", "value": 42}
        assert get_nested_value(obj, "name") == "test"
        assert get_nested_value(obj, "value") == 42

    def test_nested_dict_path(self) -> None:
        """Test getting nested dict value with dot notation."""
        obj = {"metadata": {"author": "John", "tags": ["a", "b"]}}
        assert get_nested_value(obj, "metadata.author") == "John"
        assert get_nested_value(obj, "metadata.tags") == ["a", "b"]

    def test_missing_key_returns_missing(self) -> None:
        """Test that missing keys return the MISSING sentinel."""
        obj = {"metadata": {"author": "John"}}
        assert get_nested_value(obj, "metadata.missing") is MISSING
        assert get_nested_value(obj, "missing.key") is MISSING

    def test_none_is_distinct_from_missing(self) -> None:
        """Test that an explicit None value is returned as None."""
        obj = {"metadata": {"author": None}}
        assert get_nested_value(obj, "metadata.author") is None
        assert get_nested_value({"metadata": None}, "metadata.author") is MISSING

    def test_dataclass_attribute(self) -> None:
        """Test getting attributes from dataclasses."""
        ref = DocumentRef(url="s3://b/doc.pdf", type="application/pdf")
        assert get_nested_value(ref, "url") == "s3://b/doc.pdf"
        assert get_nested_value(ref, "type") == "application/pdf"

    def test_event_metadata(self) -> None:
        """Test traversing from an event into its metadata."""
        event = make_event(metadata={"image": {"index": 2}})
        assert get_nested_value(event, "metadata.image.index") == 2

    def test_private_attributes_are_hidden(self) -> None:
        """Test that underscore attributes cannot be reached."""
        assert get_nested_value(make_event(), "__class__") is MISSING

    def test_missing_sentinel_is_falsy(self) -> None:
        """Test the sentinel's truthiness and repr."""
        assert not MISSING
        assert repr(MISSING) == "MISSING"


class TestTranslatePath:
    """Tests for wire-format path translation."""

    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("type", "event_type"),
            ("data.document.type", "document.type"),
            ("data.source.url", "source.url"),
            ("data.metadata.language", "metadata.language"),
            ("data.chainId", "chain_id"),
            ("callStack", "call_stack"),
            ("metadata.language", "metadata.language"),
        ],
    )
    def test_translation(self, path: str, expected: str) -> None:
        """Test translating wire paths to attribute paths."""
        assert translate_path(path) == expected


class TestMatchValue:
    """Tests for match_value function."""

    def test_exact_string_match(self) -> None:
        """Test exact string matching."""
        assert match_value("application/pdf", "application/pdf") is True
        assert match_value("application/pdf", "text/plain") is False

    def test_glob_pattern(self) -> None:
        """Test glob patterns."""
        assert match_value("image/*", "image/png") is True
        assert match_value("*.pdf", "report.pdf") is True
        assert match_value("image/*", "text/plain") is False

    def test_negation(self) -> None:
        """Test negated patterns."""
        assert match_value("!image/*", "text/plain") is True
        assert match_value("!image/*", "image/png") is False

    def test_numeric_comparisons(self) -> None:
        """Test numeric operators."""
        assert match_value(">100", 150) is True
        assert match_value(">=100", 100) is True
        assert match_value("<100", 150) is False
        assert match_value("!=5", 4) is True
        assert match_value(">100", "not a number") is False

    def test_list_is_or(self) -> None:
        """Test that lists match if any element matches."""
        assert match_value(["en", "fr"], "fr") is True
        assert match_value(["en", "fr"], "de") is False

    def test_boolean_patterns(self) -> None:
        """Test boolean matching against bools and strings."""
        assert match_value(True, True) is True
        assert match_value(True, "yes") is True
        assert match_value("false", False) is True
        assert match_value(False, "1") is False

    def test_numeric_literals(self) -> None:
        """Test numeric literal patterns."""
        assert match_value(42, "42") is True
        assert match_value(42, "x") is False

    def test_none_pattern_matches_everything(self) -> None:
        """Test that a None pattern is a wildcard."""
        assert match_value(None, "anything") is True

    def test_missing_value_never_matches(self) -> None:
        """Test that MISSING and None values do not match."""
        assert match_value("*", MISSING) is False
        assert match_value("*", None) is False

    def test_enum_values_match_by_value(self) -> None:
        """Test that str enums compare by their value."""
        assert match_value("document-*", make_event().event_type) is True
