"""Exception taxonomy for docchain middlewares.

Errors fall into three groups:

- Item-level runtime errors (``MalformedEventError``, ``ProcessingError``,
  ``PublishError``, ``StorageError``) that are confined to one batch item.
- ``ConditionEvaluationError``, raised inside a condition tree and turned
  into a ``False`` verdict by ``Condition.evaluate``.
- Build-time errors (``IncompatibleNodesError``, ``GraphValidationException``,
  ``ConfigurationError``) that abort pipeline assembly before any traffic flows.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from docchain.pipeline.validation import GraphValidationError


class DocchainError(Exception):
    """Root exception for all docchain errors."""

    #: Whether an item failing with this error should be redelivered.
    retryable: bool = False


class MalformedEventError(DocchainError, ValueError):
    """Raised when a payload cannot be parsed into a Document Event.

    This error is permanent: the item is dead-lettered immediately.
    """

    def __init__(self, reason: str, payload: object | None = None) -> None:
        self.reason = reason
        self.payload = payload
        super().__init__(f"Malformed document event: {reason}")


class ConditionEvaluationError(DocchainError):
    """Raised when a condition references a field the event does not carry."""

    def __init__(self, field: str, reason: str = "field not found") -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Cannot evaluate condition on '{field}': {reason}")


class ProcessingError(DocchainError):
    """Raised when a middleware transform fails.

    Retried by the queue unless raised with ``retryable=False`` for inputs
    that can never succeed.
    """

    retryable = True

    def __init__(self, message: str, node_id: str | None = None, retryable: bool = True) -> None:
        self.node_id = node_id
        self.retryable = retryable
        super().__init__(message)


class PublishError(DocchainError):
    """Raised when the outbound channel cannot be reached."""

    retryable = True

    def __init__(self, channel: str, reason: str) -> None:
        self.channel = channel
        self.reason = reason
        super().__init__(f"Failed to publish to {channel}: {reason}")


class StorageError(DocchainError):
    """Raised when object storage cannot read or write a document."""

    retryable = True

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Storage error for {url}: {reason}")


class IncompatibleNodesError(DocchainError):
    """Raised when two connected nodes share no content type.

    Attributes:
        producer_id: Node whose outputs were checked
        consumer_id: Node whose inputs were checked
        output_types: Producer's declared output types
        input_types: Consumer's declared input types
    """

    def __init__(
        self,
        producer_id: str,
        consumer_id: str,
        output_types: Iterable[str],
        input_types: Iterable[str],
    ) -> None:
        self.producer_id = producer_id
        self.consumer_id = consumer_id
        self.output_types = tuple(sorted(output_types))
        self.input_types = tuple(sorted(input_types))
        super().__init__(
            f"Cannot connect '{producer_id}' to '{consumer_id}': "
            f"outputs {list(self.output_types)} do not overlap inputs {list(self.input_types)}"
        )


class GraphValidationException(DocchainError):
    """Raised when pipeline graph validation fails.

    Attributes:
        errors: List of validation errors encountered
    """

    def __init__(self, errors: list[GraphValidationError]) -> None:
        self.errors = errors
        error_messages = "; ".join(e.message for e in errors)
        super().__init__(f"Pipeline graph validation failed: {error_messages}")


class ConfigurationError(DocchainError):
    """Raised when a middleware or worker is configured inconsistently."""


class ConsumerHaltedError(DocchainError):
    """Raised when a consumer stops after too many consecutive queue failures."""

    def __init__(self, node_id: str, reason: str) -> None:
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Consumer for '{node_id}' halted: {reason}")


__all__ = [
    "DocchainError",
    "MalformedEventError",
    "ConditionEvaluationError",
    "ProcessingError",
    "PublishError",
    "StorageError",
    "IncompatibleNodesError",
    "GraphValidationException",
    "ConfigurationError",
    "ConsumerHaltedError",
]
