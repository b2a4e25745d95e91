"""Type definitions for the work queue consumer.

This module defines the batch items handed to the consumer, the per-item
outcomes it reports back, and the consumer configuration.
"""

from __future__ import annotations

import math
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from docchain.errors import ConfigurationError

#: Default processing timeout in seconds.
DEFAULT_PROCESSING_TIMEOUT = 120.0


@dataclass(frozen=True)
class BatchItem:
    """One raw queue entry delivered in a batch.

    Attributes:
        item_id: Delivery handle used to acknowledge or fail this item
        body: Raw serialized payload
        receive_count: How many times the queue has delivered this entry
        attributes: Transport-specific delivery attributes
    """

    item_id: str
    body: str
    receive_count: int = 1
    attributes: Mapping[str, Any] = field(default_factory=dict)


class ItemOutcome(str, Enum):
    """Outcome of processing one batch item.

    Attributes:
        SUCCEEDED: Processed and results published; item is acknowledged
        SKIPPED: Condition did not match; item is acknowledged without output
        FAILED: Processing failed; item is redelivered or dead-lettered
    """

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ItemResult:
    """Per-item result produced by the consumer.

    Attributes:
        item_id: Delivery handle of the item
        outcome: What happened to the item
        published: Number of events published for this item
        error_type: Exception class name for failures
        error_message: Human-readable error for failures
        retryable: Whether a failed item should be redelivered
        duration_ms: Time spent on the item
    """

    item_id: str
    outcome: ItemOutcome
    published: int = 0
    error_type: str | None = None
    error_message: str | None = None
    retryable: bool = False
    duration_ms: float = 0.0

    @property
    def failed(self) -> bool:
        return self.outcome == ItemOutcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "item_id": self.item_id,
            "outcome": self.outcome.value,
            "published": self.published,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "retryable": self.retryable,
            "duration_ms": self.duration_ms,
        }


@dataclass
class BatchResult:
    """Ordered per-item results of one batch.

    Attributes:
        results: One result per batch item, in delivery order
    """

    results: list[ItemResult] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[ItemResult]:
        return iter(self.results)

    @property
    def succeeded(self) -> list[ItemResult]:
        return [r for r in self.results if r.outcome == ItemOutcome.SUCCEEDED]

    @property
    def skipped(self) -> list[ItemResult]:
        return [r for r in self.results if r.outcome == ItemOutcome.SKIPPED]

    @property
    def failed(self) -> list[ItemResult]:
        return [r for r in self.results if r.outcome == ItemOutcome.FAILED]

    @property
    def failed_item_ids(self) -> list[str]:
        return [r.item_id for r in self.failed]

    def outcomes(self) -> list[tuple[str, ItemOutcome]]:
        """Return ``(item_id, outcome)`` pairs in delivery order."""
        return [(r.item_id, r.outcome) for r in self.results]

    def batch_item_failures(self) -> dict[str, list[dict[str, str]]]:
        """Render failures as a partial batch response.

        Queue-driven function runtimes accept this shape to redeliver only
        the listed items.
        """
        return {"batchItemFailures": [{"itemIdentifier": item_id} for item_id in self.failed_item_ids]}

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "results": [r.to_dict() for r in self.results],
            "succeeded": len(self.succeeded),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }


@dataclass(frozen=True)
class ConsumerConfig:
    """Configuration of a work queue consumer.

    Attributes:
        batch_size: Maximum items pulled per receive cycle
        max_concurrency: Maximum items processed at once by one consumer
        processing_timeout: Seconds one item may take before it is failed
        visibility_window: Seconds a received item stays hidden from other
            consumers; must cover the batch deadline and defaults to twice it
        max_receive_count: Deliveries allowed before an item is dead-lettered
        receive_wait: Seconds a receive call long-polls for items
        consecutive_failure_threshold: Consecutive receive failures before
            the consumer halts
        failure_backoff: Seconds to wait after a failed receive
    """

    batch_size: int = 1
    max_concurrency: int = 2
    processing_timeout: float = DEFAULT_PROCESSING_TIMEOUT
    visibility_window: float | None = None
    max_receive_count: int = 5
    receive_wait: float = 20.0
    consecutive_failure_threshold: int = 10
    failure_backoff: float = 1.0

    def __post_init__(self) -> None:
        """Validate fields and derive the visibility window."""
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be at least 1")
        if self.max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be at least 1")
        if self.processing_timeout <= 0:
            raise ConfigurationError("processing_timeout must be positive")
        if self.max_receive_count < 1:
            raise ConfigurationError("max_receive_count must be at least 1")
        if self.receive_wait < 0:
            raise ConfigurationError("receive_wait must be >= 0")
        if self.consecutive_failure_threshold < 1:
            raise ConfigurationError("consecutive_failure_threshold must be at least 1")

        deadline = self.batch_deadline
        if self.visibility_window is None:
            object.__setattr__(self, "visibility_window", 2 * deadline)
        elif self.visibility_window < deadline:
            raise ConfigurationError(
                f"visibility_window ({self.visibility_window}s) must be at least "
                f"the batch deadline ({deadline}s): {self.batch_size} items at "
                f"concurrency {self.max_concurrency} with a {self.processing_timeout}s timeout"
            )

    @property
    def batch_deadline(self) -> float:
        """Seconds within which every item of a full batch is settled.

        Items wait for a concurrency slot before their timeout starts, so a
        batch takes up to one processing timeout per round of
        ``max_concurrency`` items.
        """
        return math.ceil(self.batch_size / self.max_concurrency) * self.processing_timeout

    @property
    def visibility(self) -> float:
        """Visibility window in seconds (always set after init)."""
        return float(self.visibility_window or 2 * self.batch_deadline)


__all__ = [
    "DEFAULT_PROCESSING_TIMEOUT",
    "BatchItem",
    "ItemOutcome",
    "ItemResult",
    "BatchResult",
    "ConsumerConfig",
]
