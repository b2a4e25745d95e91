"""Consecutive failure tracking for queue consumers.

Item failures are handled by the queue's own retry mechanics. What a
consumer must detect itself is a transport that keeps failing (queue
unreachable, credentials revoked), where looping forever only hides the
outage. :class:`ConsecutiveFailureTracker` counts such failures and tells the
consumer when to halt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

logger = logging.getLogger(__name__)


@dataclass
class FailureRecord:
    """Record of a single transport failure.

    Attributes:
        node_id: Node whose consumer failed
        operation: Queue operation that failed (receive, ack, ...)
        error_type: Category of the error
        error_message: Human-readable error description
        timestamp: When the failure occurred
    """

    node_id: str
    operation: str
    error_type: str
    error_message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class ConsecutiveFailureTracker:
    """Tracks consecutive failures to detect a broken transport.

    Each success resets the count. When the count reaches the threshold,
    should_halt() returns True.

    Example:
        ```python
        tracker = ConsecutiveFailureTracker(threshold=10)

        while not tracker.should_halt():
            try:
                items = await queue.receive(10, 240.0, 20.0)
                tracker.record_success()
            except Exception as e:
                tracker.record_failure("image-generator", "receive", str(e))
        ```
    """

    def __init__(self, threshold: int = 10, recent_limit: int = 50) -> None:
        """Initialize the failure tracker.

        Args:
            threshold: Number of consecutive failures to trigger halt (default: 10)
            recent_limit: Maximum number of recent failures to retain (default: 50)
        """
        if threshold < 1:
            raise ValueError("threshold must be at least 1")

        self.threshold = threshold
        self._recent_limit = recent_limit
        self._consecutive_count = 0
        self._recent_failures: list[FailureRecord] = []

    @property
    def consecutive_count(self) -> int:
        """Current count of consecutive failures."""
        return self._consecutive_count

    @property
    def recent_failures(self) -> list[FailureRecord]:
        """List of recent failure records."""
        return list(self._recent_failures)

    def record_success(self) -> None:
        """Record a successful operation, resetting the consecutive count."""
        if self._consecutive_count > 0:
            logger.info("Queue recovered after %d consecutive failures", self._consecutive_count)
        self._consecutive_count = 0

    def record_failure(
        self,
        node_id: str,
        operation: str,
        error_message: str,
        error_type: str = "unknown",
    ) -> None:
        """Record a failed queue operation.

        Args:
            node_id: Node whose consumer failed
            operation: Queue operation that failed
            error_message: Human-readable error description
            error_type: Category of the error (default: "unknown")
        """
        self._consecutive_count += 1
        self._recent_failures.append(
            FailureRecord(
                node_id=node_id,
                operation=operation,
                error_type=error_type,
                error_message=error_message,
            )
        )
        if len(self._recent_failures) > self._recent_limit:
            self._recent_failures = self._recent_failures[-self._recent_limit :]

        logger.debug(
            "Recorded failure #%d for %s during %s: %s",
            self._consecutive_count,
            node_id,
            operation,
            error_message[:100],
        )

        if self._consecutive_count >= self.threshold:
            logger.warning(
                "Reached %d consecutive failures (threshold: %d) - consumer will halt",
                self._consecutive_count,
                self.threshold,
            )

    def should_halt(self) -> bool:
        """Return True if consecutive failures reached the threshold."""
        return self._consecutive_count >= self.threshold

    def get_halt_reason(self) -> str:
        """Get a human-readable halt reason, or an empty string if not halted."""
        if not self.should_halt():
            return ""

        recent = self._recent_failures[-min(3, len(self._recent_failures)) :]
        operations = sorted({f.operation for f in recent})
        error_types = sorted({f.error_type for f in recent})

        return (
            f"Halted after {self._consecutive_count} consecutive failures. "
            f"Failing operations: {', '.join(operations)}. "
            f"Error types: {', '.join(error_types)}."
        )

    def reset(self) -> None:
        """Clear all failure counts and records."""
        self._consecutive_count = 0
        self._recent_failures = []


__all__ = [
    "ConsecutiveFailureTracker",
    "FailureRecord",
]
