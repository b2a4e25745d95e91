"""Pipeline building blocks for document processing middlewares.

This package provides the routing conditions, capability negotiation, the
work queue consumer and the graph builder used to assemble middlewares into
pipelines.

Conditions:
    - Condition: Immutable expression tree evaluated against events
    - Always, Compare, And, Or, Not: Condition nodes
    - when: Fluent entry point (``when("type").equals("document-created")``)
    - condition_from_mapping: Compile a mapping predicate into a condition

Capabilities:
    - ComputeType: Placement class (CPU or GPU)
    - CapabilityDescriptor: Declared input/output types of a node

Middlewares:
    - Middleware: Base class of every pipeline node
    - MiddlewareBuilder: Accumulates settings into immutable MiddlewareProps
    - NodeState: CREATED → BOUND → ACTIVE lifecycle

Execution:
    - WorkQueueConsumer: Batch processing with per-item settlement
    - ConsumerConfig: Batch size, concurrency, timeout and retry settings
    - BatchItem, ItemResult, BatchResult, ItemOutcome: Batch types
    - EventPublisher: Publishes events on a node's channel
    - ConsecutiveFailureTracker: Failure detection for halt logic

Graph:
    - PipelineBuilder: Connects nodes and validates the result
    - PipelineGraph: Validated graph that binds to a transport
    - validate_graph: Validate graph structure

Example:
    >>> from docchain.pipeline import PipelineBuilder, when
    >>> generator = (
    ...     ImageGenerator.builder("image-gen")
    ...     .with_condition(when("metadata.language").is_in(["en", "fr"]))
    ...     .build()
    ... )
    >>> graph = trigger.pipe(generator).build()
"""

from docchain.pipeline.capabilities import CapabilityDescriptor, ComputeType
from docchain.pipeline.conditions import (
    Always,
    And,
    Comparator,
    Compare,
    Condition,
    FieldCondition,
    Not,
    Or,
    condition_from_mapping,
    when,
)
from docchain.pipeline.consumer import WorkQueueConsumer
from docchain.pipeline.consumer_types import (
    DEFAULT_PROCESSING_TIMEOUT,
    BatchItem,
    BatchResult,
    ConsumerConfig,
    ItemOutcome,
    ItemResult,
)
from docchain.pipeline.failure_tracker import ConsecutiveFailureTracker, FailureRecord
from docchain.pipeline.graph import PipelineBuilder, PipelineEdge, PipelineGraph
from docchain.pipeline.middleware import (
    Middleware,
    MiddlewareBuilder,
    MiddlewareDescription,
    MiddlewareProps,
    NodeState,
    ProcessingContext,
)
from docchain.pipeline.publisher import EventPublisher
from docchain.pipeline.validation import GraphValidationError, validate_graph

__all__ = [
    # Conditions
    "Comparator",
    "Condition",
    "Always",
    "Compare",
    "And",
    "Or",
    "Not",
    "FieldCondition",
    "when",
    "condition_from_mapping",
    # Capabilities
    "ComputeType",
    "CapabilityDescriptor",
    # Consumer types
    "DEFAULT_PROCESSING_TIMEOUT",
    "BatchItem",
    "BatchResult",
    "ConsumerConfig",
    "ItemOutcome",
    "ItemResult",
    # Middlewares
    "Middleware",
    "MiddlewareBuilder",
    "MiddlewareDescription",
    "MiddlewareProps",
    "NodeState",
    "ProcessingContext",
    # Execution
    "EventPublisher",
    "WorkQueueConsumer",
    "ConsecutiveFailureTracker",
    "FailureRecord",
    # Graph
    "GraphValidationError",
    "validate_graph",
    "PipelineBuilder",
    "PipelineEdge",
    "PipelineGraph",
]
