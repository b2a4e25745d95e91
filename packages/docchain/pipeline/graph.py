"""Pipeline graph assembly.

Nodes are connected producer → consumer. Connections are checked against the
nodes' capability descriptors when they are made, and the whole graph is
validated when it is built:

    >>> graph = PipelineBuilder().pipe(trigger, generator).build()
    >>> await graph.bind(InMemoryTransport())

Binding gives every node an input queue named ``<node_id>.input`` and an
outbound channel named ``<node_id>.events``; every edge subscribes the
consumer's queue to the producer's channel.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from docchain.errors import ConfigurationError, GraphValidationException, IncompatibleNodesError
from docchain.pipeline.consumer import WorkQueueConsumer
from docchain.pipeline.middleware import Middleware, NodeState
from docchain.pipeline.publisher import EventPublisher
from docchain.pipeline.validation import validate_graph
from docchain.transport.base import Transport

logger = logging.getLogger(__name__)

INPUT_QUEUE_SUFFIX = ".input"
EVENTS_CHANNEL_SUFFIX = ".events"


def input_queue_name(node_id: str) -> str:
    return f"{node_id}{INPUT_QUEUE_SUFFIX}"


def events_channel_name(node_id: str) -> str:
    return f"{node_id}{EVENTS_CHANNEL_SUFFIX}"


@dataclass(frozen=True)
class PipelineEdge:
    """A producer → consumer connection.

    Attributes:
        producer: ID of the node publishing events
        consumer: ID of the node receiving them
    """

    producer: str
    consumer: str

    def to_dict(self) -> dict[str, str]:
        return {"producer": self.producer, "consumer": self.consumer}


class PipelineGraph:
    """Validated, immutable set of nodes and edges."""

    def __init__(self, nodes: tuple[Middleware, ...], edges: tuple[PipelineEdge, ...]) -> None:
        self._nodes = {node.node_id: node for node in nodes}
        self.edges = edges

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Middleware]:
        return iter(self._nodes.values())

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    @property
    def nodes(self) -> tuple[Middleware, ...]:
        return tuple(self._nodes.values())

    def node(self, node_id: str) -> Middleware:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise KeyError(f"Unknown node: {node_id}") from None

    def successors(self, node_id: str) -> list[str]:
        return [edge.consumer for edge in self.edges if edge.producer == node_id]

    def predecessors(self, node_id: str) -> list[str]:
        return [edge.producer for edge in self.edges if edge.consumer == node_id]

    def sources(self) -> list[Middleware]:
        """Nodes with no incoming edges."""
        consumers = {edge.consumer for edge in self.edges}
        return [node for node in self._nodes.values() if node.node_id not in consumers]

    def topological_order(self) -> list[str]:
        """Node IDs ordered so every producer precedes its consumers."""
        in_degree = {node_id: 0 for node_id in self._nodes}
        for edge in self.edges:
            in_degree[edge.consumer] += 1

        ready = [node_id for node_id, degree in in_degree.items() if degree == 0]
        order: list[str] = []
        while ready:
            node_id = ready.pop(0)
            order.append(node_id)
            for successor in self.successors(node_id):
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    ready.append(successor)
        return order

    async def bind(self, transport: Transport) -> None:
        """Create queues and channels on *transport* and attach every node."""
        for node in self._nodes.values():
            queue = transport.queue(input_queue_name(node.node_id))
            channel = transport.channel(events_channel_name(node.node_id))
            node.bind(queue, EventPublisher(channel), transport.storage)

        for edge in self.edges:
            channel = transport.channel(events_channel_name(edge.producer))
            await channel.subscribe(transport.queue(input_queue_name(edge.consumer)))
            logger.debug("Subscribed %s to %s", input_queue_name(edge.consumer), channel.name)

        logger.info("Bound pipeline with %d nodes and %d edges", len(self._nodes), len(self.edges))

    def consumers(self) -> dict[str, WorkQueueConsumer]:
        """Create a consumer for every bound node."""
        unbound = [node.node_id for node in self._nodes.values() if node.state is NodeState.CREATED]
        if unbound:
            raise ConfigurationError(f"Nodes must be bound before consuming: {', '.join(unbound)}")
        return {node_id: WorkQueueConsumer.for_middleware(node) for node_id, node in self._nodes.items()}

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "nodes": [node.to_dict() for node in self._nodes.values()],
            "edges": [edge.to_dict() for edge in self.edges],
        }


class PipelineBuilder:
    """Accumulates nodes and connections, then builds a validated graph.

    Example:
        ```python
        graph = (
            PipelineBuilder()
            .add(trigger)
            .add(generator)
            .connect(trigger, generator)
            .build()
        )
        ```
    """

    def __init__(self) -> None:
        self._nodes: list[Middleware] = []
        self._edges: list[PipelineEdge] = []
        self._last: Middleware | None = None

    def _find(self, node_id: str) -> Middleware | None:
        return next((node for node in self._nodes if node.node_id == node_id), None)

    def add(self, node: Middleware) -> PipelineBuilder:
        """Add *node*; adding the same instance twice is a no-op."""
        if not any(existing is node for existing in self._nodes):
            self._nodes.append(node)
        return self

    def connect(self, producer: Middleware | str, consumer: Middleware | str) -> PipelineBuilder:
        """Connect *producer*'s events to *consumer*'s input.

        Raises:
            IncompatibleNodesError: If both nodes are known and share no content type
        """
        producer_id = producer if isinstance(producer, str) else producer.node_id
        consumer_id = consumer if isinstance(consumer, str) else consumer.node_id

        producer_node = producer if isinstance(producer, Middleware) else self._find(producer_id)
        consumer_node = consumer if isinstance(consumer, Middleware) else self._find(consumer_id)
        if producer_node is not None and consumer_node is not None and producer_id != consumer_id:
            producer_caps = producer_node.capabilities
            consumer_caps = consumer_node.capabilities
            if not producer_caps.is_compatible_with(consumer_caps):
                raise IncompatibleNodesError(
                    producer_id,
                    consumer_id,
                    producer_caps.output_types,
                    consumer_caps.input_types,
                )

        self._edges.append(PipelineEdge(producer=producer_id, consumer=consumer_id))
        return self

    def pipe(self, *nodes: Middleware) -> PipelineBuilder:
        """Add *nodes* and connect them in a chain.

        The chain continues from the last node piped, so
        ``builder.pipe(a, b).pipe(c)`` connects a → b → c.
        """
        chain = list(nodes)
        if self._last is not None:
            chain.insert(0, self._last)
        for node in chain:
            self.add(node)
        for producer, consumer in zip(chain, chain[1:], strict=False):
            self.connect(producer, consumer)
        if chain:
            self._last = chain[-1]
        return self

    def build(self) -> PipelineGraph:
        """Validate and freeze the graph.

        Raises:
            GraphValidationException: If any validation rule fails
        """
        errors = validate_graph(self._nodes, self._edges)
        if errors:
            raise GraphValidationException(errors)
        return PipelineGraph(tuple(self._nodes), tuple(self._edges))


__all__ = [
    "INPUT_QUEUE_SUFFIX",
    "EVENTS_CHANNEL_SUFFIX",
    "input_queue_name",
    "events_channel_name",
    "PipelineEdge",
    "PipelineGraph",
    "PipelineBuilder",
]
