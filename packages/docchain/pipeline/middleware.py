"""Middleware base classes.

A middleware is one node of a pipeline. It declares what it accepts and
produces through class attributes, gates events with a condition, and turns
each accepted event into zero or more output events in :meth:`Middleware.process`.
Queue consumption, publication and settlement are handled by
:class:`~docchain.pipeline.consumer.WorkQueueConsumer`, so implementations
only contain the transformation itself.

Middlewares are configured through a builder that freezes its settings into
:class:`MiddlewareProps` when :meth:`MiddlewareBuilder.build` is called:

    >>> node = ImageGenerator.builder("image-gen").with_max_concurrency(4).build()
    >>> node.state
    <NodeState.CREATED: 'created'>
"""

from __future__ import annotations

import copy
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Self, TypeVar

from docchain.errors import ConfigurationError
from docchain.events.types import DocumentEvent
from docchain.pipeline.capabilities import CapabilityDescriptor, ComputeType
from docchain.pipeline.conditions import Always, Condition, condition_from_mapping, when
from docchain.pipeline.consumer_types import BatchItem, ConsumerConfig

if TYPE_CHECKING:
    from docchain.pipeline.graph import PipelineBuilder
    from docchain.pipeline.publisher import EventPublisher
    from docchain.transport.base import ObjectStorage, WorkQueue

logger = logging.getLogger(__name__)

_NODE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


@dataclass(frozen=True)
class MiddlewareDescription:
    """Identity of a middleware implementation.

    Attributes:
        name: Stable implementation name (e.g., "image-generator")
        description: One-line summary
        version: Implementation version
    """

    name: str
    description: str = ""
    version: str = "1.0.0"

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "description": self.description, "version": self.version}


class NodeState(str, Enum):
    """Lifecycle state of a middleware instance.

    Attributes:
        CREATED: Built but not attached to any queue or channel
        BOUND: Input queue and output channel are attached
        ACTIVE: A consumer is pulling from the input queue
    """

    CREATED = "created"
    BOUND = "bound"
    ACTIVE = "active"


@dataclass(frozen=True)
class MiddlewareProps:
    """Immutable settings of one middleware instance.

    Attributes:
        node_id: Unique id of the node within its pipeline
        condition: Node-specific condition, combined with the input type check
        consumer: Queue consumption settings; None uses the middleware's defaults
        compute_type: Placement selected for this instance; None uses the first supported one
        options: Middleware-specific settings (read-only)
    """

    node_id: str
    condition: Condition = field(default_factory=Always)
    consumer: ConsumerConfig | None = None
    compute_type: ComputeType | None = None
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not _NODE_ID_PATTERN.match(self.node_id or ""):
            raise ConfigurationError(
                f"Invalid node id '{self.node_id}': use letters, digits, '.', '_' or '-' (max 128 characters)"
            )
        if not isinstance(self.condition, Condition):
            raise ConfigurationError(f"condition must be a Condition, got {type(self.condition).__name__}")
        object.__setattr__(self, "options", MappingProxyType(copy.deepcopy(dict(self.options))))


@dataclass(frozen=True)
class ProcessingContext:
    """What a middleware may use while processing one event.

    Attributes:
        node_id: Id of the processing node
        storage: Object storage shared by the pipeline, if bound
        item: The queue item the event was decoded from
    """

    node_id: str
    storage: ObjectStorage | None = None
    item: BatchItem | None = None


M = TypeVar("M", bound="Middleware")


class MiddlewareBuilder(ABC, Generic[M]):
    """Accumulates middleware settings before building an immutable node.

    Every ``with_*`` method returns the builder so calls can be chained.
    :meth:`build` snapshots the current settings; changing the builder
    afterwards does not affect nodes already built.
    """

    def __init__(self, node_id: str) -> None:
        self._node_id = node_id
        self._condition: Condition = Always()
        self._consumer_settings: dict[str, Any] = {}
        self._compute_type: ComputeType | None = None
        self._options: dict[str, Any] = {}

    def with_condition(self, condition: Condition | Mapping[str, Any]) -> Self:
        """Set the node condition, from a condition tree or a mapping predicate."""
        if isinstance(condition, Condition):
            self._condition = condition
        else:
            self._condition = condition_from_mapping(condition)
        return self

    def with_batch_size(self, batch_size: int) -> Self:
        self._consumer_settings["batch_size"] = batch_size
        return self

    def with_max_concurrency(self, max_concurrency: int) -> Self:
        self._consumer_settings["max_concurrency"] = max_concurrency
        return self

    def with_processing_timeout(self, seconds: float) -> Self:
        self._consumer_settings["processing_timeout"] = seconds
        return self

    def with_visibility_window(self, seconds: float) -> Self:
        self._consumer_settings["visibility_window"] = seconds
        return self

    def with_max_receive_count(self, count: int) -> Self:
        self._consumer_settings["max_receive_count"] = count
        return self

    def with_compute_type(self, compute_type: ComputeType | str) -> Self:
        try:
            self._compute_type = ComputeType(compute_type)
        except ValueError as e:
            raise ConfigurationError(f"Unknown compute type: {compute_type}") from e
        return self

    def _consumer_config(self, defaults: ConsumerConfig) -> ConsumerConfig | None:
        if not self._consumer_settings:
            return None
        settings = {
            "batch_size": defaults.batch_size,
            "max_concurrency": defaults.max_concurrency,
            "processing_timeout": defaults.processing_timeout,
            "max_receive_count": defaults.max_receive_count,
            "receive_wait": defaults.receive_wait,
            "consecutive_failure_threshold": defaults.consecutive_failure_threshold,
            "failure_backoff": defaults.failure_backoff,
        }
        # The default window was sized for the default batch deadline
        if not self._consumer_settings.keys() & {"batch_size", "max_concurrency", "processing_timeout"}:
            settings["visibility_window"] = defaults.visibility_window
        settings.update(self._consumer_settings)
        return ConsumerConfig(**settings)

    def props(self, defaults: ConsumerConfig | None = None) -> MiddlewareProps:
        """Snapshot the accumulated settings."""
        return MiddlewareProps(
            node_id=self._node_id,
            condition=self._condition,
            consumer=self._consumer_config(defaults or ConsumerConfig()),
            compute_type=self._compute_type,
            options=dict(self._options),
        )

    @abstractmethod
    def build(self) -> M:
        """Create the middleware from a snapshot of the current settings."""


class Middleware(ABC):
    """Base class of every pipeline node.

    Subclasses declare their capabilities through class attributes and
    implement :meth:`process`.

    Attributes:
        description: Identity of the implementation
        supported_input_types: Media type patterns accepted as input; empty marks a source node
        supported_output_types: Media type patterns that may be produced
        supported_compute_types: Placements the implementation can run under
        default_consumer_config: Consumer settings used when props do not override them
    """

    description: ClassVar[MiddlewareDescription]
    supported_input_types: ClassVar[tuple[str, ...]] = ()
    supported_output_types: ClassVar[tuple[str, ...]] = ()
    supported_compute_types: ClassVar[tuple[ComputeType, ...]] = (ComputeType.CPU,)
    default_consumer_config: ClassVar[ConsumerConfig] = ConsumerConfig()

    def __init__(self, props: MiddlewareProps) -> None:
        if props.compute_type is not None and props.compute_type not in self.supported_compute_types:
            raise ConfigurationError(
                f"{self.description.name} does not support compute type '{props.compute_type.value}'"
            )
        self.props = props
        self.state = NodeState.CREATED
        self.input_queue: WorkQueue | None = None
        self.publisher: EventPublisher | None = None
        self.storage: ObjectStorage | None = None
        self._conditional: Condition | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(node_id={self.node_id!r}, state={self.state.value})"

    @property
    def node_id(self) -> str:
        return self.props.node_id

    @property
    def condition(self) -> Condition:
        """Node-specific condition without the input type check."""
        return self.props.condition

    @property
    def compute_type(self) -> ComputeType:
        return self.props.compute_type or self.supported_compute_types[0]

    @property
    def consumer_config(self) -> ConsumerConfig:
        return self.props.consumer or self.default_consumer_config

    @property
    def capabilities(self) -> CapabilityDescriptor:
        return CapabilityDescriptor(
            input_types=frozenset(self.supported_input_types),
            output_types=frozenset(self.supported_output_types),
            compute_types=frozenset(self.supported_compute_types),
        )

    def base_condition(self) -> Condition:
        """Condition accepting only the declared input types.

        A node declaring no input types is a source node: it turns external
        notifications into the pipeline's first events, so every event it
        decodes passes the type check and only the node condition applies.
        """
        if not self.supported_input_types:
            return Always()
        return when("document.type").media_type(*self.supported_input_types)

    def conditional(self) -> Condition:
        """Effective condition: declared input types AND the node condition."""
        if self._conditional is None:
            self._conditional = self.base_condition().and_(self.condition)
        return self._conditional

    def should_process(self, event: DocumentEvent) -> bool:
        return self.conditional().evaluate(event)

    def decode(self, item: BatchItem) -> list[DocumentEvent]:
        """Turn a queue item into the events to process.

        Raises:
            MalformedEventError: If the body is not a valid event
        """
        return [DocumentEvent.from_json(item.body)]

    @abstractmethod
    async def process(self, event: DocumentEvent, context: ProcessingContext) -> list[DocumentEvent]:
        """Handle one accepted event.

        Args:
            event: Event that passed the node's condition
            context: Storage and delivery details for this event

        Returns:
            Events to publish on the node's channel, in order

        Raises:
            ProcessingError: On a transient failure; the item is retried
        """

    def pipe(self, other: Middleware) -> PipelineBuilder:
        """Start a pipeline where this node feeds *other*."""
        from docchain.pipeline.graph import PipelineBuilder

        return PipelineBuilder().pipe(self, other)

    def bind(self, queue: WorkQueue, publisher: EventPublisher, storage: ObjectStorage | None = None) -> None:
        """Attach the input queue, publisher and storage."""
        if self.state is NodeState.ACTIVE:
            raise ConfigurationError(f"Node '{self.node_id}' is active and cannot be rebound")
        self.input_queue = queue
        self.publisher = publisher
        self.storage = storage
        self.state = NodeState.BOUND
        logger.debug("Bound %s to queue %s", self.node_id, queue.name)

    def activate(self) -> None:
        """Mark the node as consuming from its input queue."""
        if self.state is NodeState.CREATED:
            raise ConfigurationError(f"Node '{self.node_id}' must be bound before it is activated")
        self.state = NodeState.ACTIVE

    async def aclose(self) -> None:
        """Release resources held by the node. Nothing by default."""

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable description of this node."""
        config = self.consumer_config
        return {
            "node_id": self.node_id,
            "middleware": self.description.to_dict(),
            "state": self.state.value,
            "compute_type": self.compute_type.value,
            "capabilities": self.capabilities.to_dict(),
            "condition": self.conditional().to_dict(),
            "consumer": {
                "batch_size": config.batch_size,
                "max_concurrency": config.max_concurrency,
                "processing_timeout": config.processing_timeout,
                "visibility_window": config.visibility,
                "max_receive_count": config.max_receive_count,
            },
            "options": dict(self.props.options),
        }


__all__ = [
    "MiddlewareDescription",
    "NodeState",
    "MiddlewareProps",
    "ProcessingContext",
    "MiddlewareBuilder",
    "Middleware",
]
