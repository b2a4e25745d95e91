"""MIME media type parsing and wildcard matching.

Media types are parsed into a structured :class:`MediaType` and compared
field by field, so ``image/*`` matches ``image/png`` and ``*/*`` matches
everything. Type and subtype names follow the RFC 6838 restricted-name
grammar and are compared case-insensitively.

Example:
    >>> MediaType.parse("image/png").matches("image/*")
    True
    >>> patterns_overlap("image/*", "image/jpeg")
    True
    >>> media_type_matches("text/plain", ["image/png", "image/jpeg"])
    False
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

WILDCARD = "*"

_NAME = r"[a-z0-9][a-z0-9!#$&^_.+-]{0,126}"
_MEDIA_TYPE_PATTERN = re.compile(rf"^(?P<type>{_NAME}|\*)/(?P<subtype>{_NAME}|\*)$")
_PARAMETER_PATTERN = re.compile(rf"^(?P<name>{_NAME})=(?P<value>\"[^\"]*\"|[^\s;\"]+)$")


class InvalidMediaTypeError(ValueError):
    """Raised when a string is not a syntactically valid media type."""

    def __init__(self, value: str, reason: str) -> None:
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid media type '{value}': {reason}")


@dataclass(frozen=True)
class MediaType:
    """A parsed media type such as ``image/png`` or ``text/plain; charset=utf-8``.

    Attributes:
        type: Top-level type, lowercased (may be ``*`` for patterns)
        subtype: Subtype, lowercased (may be ``*`` for patterns)
        parameters: Ordered ``(name, value)`` parameter pairs
    """

    type: str
    subtype: str
    parameters: tuple[tuple[str, str], ...] = ()

    @classmethod
    def parse(cls, value: str, allow_wildcard: bool = False) -> MediaType:
        """Parse a media type string.

        Args:
            value: String to parse
            allow_wildcard: Accept ``*`` in type or subtype (for patterns)

        Returns:
            The parsed media type

        Raises:
            InvalidMediaTypeError: If the string is not a valid media type
        """
        if not isinstance(value, str) or not value.strip():
            raise InvalidMediaTypeError(str(value), "empty value")

        essence, *raw_params = value.split(";")
        match = _MEDIA_TYPE_PATTERN.match(essence.strip().lower())
        if match is None:
            raise InvalidMediaTypeError(value, "expected 'type/subtype'")

        type_, subtype = match.group("type"), match.group("subtype")
        if WILDCARD in (type_, subtype):
            if not allow_wildcard:
                raise InvalidMediaTypeError(value, "wildcards are only allowed in patterns")
            if type_ == WILDCARD and subtype != WILDCARD:
                raise InvalidMediaTypeError(value, "'*/subtype' is not a valid pattern")

        parameters: list[tuple[str, str]] = []
        for raw in raw_params:
            raw = raw.strip()
            if not raw:
                continue
            param = _PARAMETER_PATTERN.match(raw)
            if param is None:
                raise InvalidMediaTypeError(value, f"malformed parameter '{raw}'")
            parameters.append((param.group("name").lower(), param.group("value").strip('"')))

        return cls(type=type_, subtype=subtype, parameters=tuple(parameters))

    @property
    def essence(self) -> str:
        """The ``type/subtype`` part without parameters."""
        return f"{self.type}/{self.subtype}"

    @property
    def suffix(self) -> str | None:
        """Structured syntax suffix (``json`` for ``application/ld+json``)."""
        if "+" not in self.subtype:
            return None
        return self.subtype.rsplit("+", 1)[1]

    @property
    def is_wildcard(self) -> bool:
        return WILDCARD in (self.type, self.subtype)

    def matches(self, pattern: MediaType | str) -> bool:
        """Return True if this media type is covered by *pattern*."""
        if isinstance(pattern, str):
            pattern = MediaType.parse(pattern, allow_wildcard=True)
        if pattern.type != WILDCARD and pattern.type != self.type:
            return False
        return pattern.subtype == WILDCARD or pattern.subtype == self.subtype

    def overlaps(self, other: MediaType | str) -> bool:
        """Return True if some concrete media type satisfies both patterns."""
        if isinstance(other, str):
            other = MediaType.parse(other, allow_wildcard=True)
        if WILDCARD not in (self.type, other.type) and self.type != other.type:
            return False
        return WILDCARD in (self.subtype, other.subtype) or self.subtype == other.subtype

    def __str__(self) -> str:
        params = "".join(f"; {name}={value}" for name, value in self.parameters)
        return f"{self.essence}{params}"


def is_valid_media_type(value: str, allow_wildcard: bool = False) -> bool:
    """Return True if *value* parses as a media type."""
    try:
        MediaType.parse(value, allow_wildcard=allow_wildcard)
    except InvalidMediaTypeError:
        return False
    return True


def media_type_matches(value: str, patterns: Iterable[str]) -> bool:
    """Check whether a concrete media type matches any of *patterns*.

    Args:
        value: Concrete media type (e.g. ``image/png``)
        patterns: Media type patterns, wildcards allowed

    Returns:
        True if at least one pattern covers *value*; False for invalid values
    """
    try:
        media_type = MediaType.parse(value)
    except InvalidMediaTypeError:
        return False
    return any(media_type.matches(pattern) for pattern in patterns)


def patterns_overlap(left: str, right: str) -> bool:
    """Return True if two media type patterns share at least one concrete type."""
    return MediaType.parse(left, allow_wildcard=True).overlaps(MediaType.parse(right, allow_wildcard=True))


__all__ = [
    "WILDCARD",
    "InvalidMediaTypeError",
    "MediaType",
    "is_valid_media_type",
    "media_type_matches",
    "patterns_overlap",
]
