"""Capability descriptors and compatibility checks between nodes.

Every middleware declares which content types it accepts, which it may
produce, and where it can run. Two nodes may only be connected when the
producer's output types overlap the consumer's input types; this is checked
when the pipeline graph is assembled so that incompatible wiring never
reaches production.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from docchain.errors import ConfigurationError
from docchain.events.media_types import InvalidMediaTypeError, MediaType


class ComputeType(str, Enum):
    """Placement class a middleware can run under."""

    CPU = "cpu"
    GPU = "gpu"


def _normalize_patterns(patterns: Iterable[str], role: str) -> frozenset[str]:
    normalized: set[str] = set()
    for pattern in patterns:
        try:
            normalized.add(MediaType.parse(pattern, allow_wildcard=True).essence)
        except InvalidMediaTypeError as exc:
            raise ConfigurationError(f"Invalid {role} type: {exc}") from exc
    return frozenset(normalized)


@dataclass(frozen=True)
class CapabilityDescriptor:
    """Declared input/output types and compute placements of a node.

    Attributes:
        input_types: Media type patterns the node accepts
        output_types: Media type patterns the node may produce
        compute_types: Placement classes the node can run under
    """

    input_types: frozenset[str] = frozenset()
    output_types: frozenset[str] = frozenset()
    compute_types: frozenset[ComputeType] = frozenset({ComputeType.CPU})

    def __post_init__(self) -> None:
        """Normalize patterns to lowercase essences and validate them."""
        object.__setattr__(self, "input_types", _normalize_patterns(self.input_types, "input"))
        object.__setattr__(self, "output_types", _normalize_patterns(self.output_types, "output"))
        try:
            compute_types = frozenset(ComputeType(c) for c in self.compute_types)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown compute type: {exc}") from exc
        object.__setattr__(self, "compute_types", compute_types)

    def overlapping_types(self, consumer: CapabilityDescriptor) -> set[tuple[str, str]]:
        """Return ``(output, input)`` pattern pairs that overlap.

        Args:
            consumer: Descriptor of the node receiving this node's events

        Returns:
            Every pair of this node's output pattern and the consumer's input
            pattern that share at least one concrete media type
        """
        return {
            (output, accepted)
            for output in self.output_types
            for accepted in consumer.input_types
            if MediaType.parse(output, allow_wildcard=True).overlaps(MediaType.parse(accepted, allow_wildcard=True))
        }

    def is_compatible_with(self, consumer: CapabilityDescriptor) -> bool:
        """Return True if this node's outputs can feed *consumer*."""
        return bool(self.overlapping_types(consumer))

    def accepts(self, media_type: str) -> bool:
        """Return True if a concrete *media_type* is accepted as input."""
        try:
            parsed = MediaType.parse(media_type)
        except InvalidMediaTypeError:
            return False
        return any(parsed.matches(pattern) for pattern in self.input_types)

    def supports_compute(self, compute_type: ComputeType | str) -> bool:
        return ComputeType(compute_type) in self.compute_types

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "input_types": sorted(self.input_types),
            "output_types": sorted(self.output_types),
            "compute_types": sorted(c.value for c in self.compute_types),
        }


__all__ = [
    "ComputeType",
    "CapabilityDescriptor",
]
