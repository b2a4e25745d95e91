"""Registry of node types a worker process can run.

Each entry maps a node type name to a factory building the node from the
worker configuration.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import ValidationError

from docchain.config import WorkerConfig
from docchain.errors import ConfigurationError
from docchain.nodes.image_generator import ImageGenerator
from docchain.nodes.image_tasks import parse_task
from docchain.nodes.storage_trigger import StorageEventTrigger
from docchain.pipeline.middleware import Middleware

logger = logging.getLogger(__name__)

NodeFactory = Callable[[WorkerConfig], Middleware]

_FACTORIES: dict[str, NodeFactory] = {}


def register_node(node_type: str) -> Callable[[NodeFactory], NodeFactory]:
    """Register a factory under *node_type*.

    Raises:
        ConfigurationError: If the type is already registered
    """

    def decorator(factory: NodeFactory) -> NodeFactory:
        if node_type in _FACTORIES:
            raise ConfigurationError(f"Node type already registered: {node_type}")
        _FACTORIES[node_type] = factory
        return factory

    return decorator


def available_node_types() -> list[str]:
    return sorted(_FACTORIES)


def create_node(node_type: str, config: WorkerConfig) -> Middleware:
    """Build the node registered under *node_type*.

    Raises:
        ConfigurationError: If the type is unknown or the configuration is invalid
    """
    try:
        factory = _FACTORIES[node_type]
    except KeyError:
        raise ConfigurationError(
            f"Unknown node type '{node_type}'. Available: {', '.join(available_node_types())}"
        ) from None
    node = factory(config)
    logger.debug("Created %s node %s", node_type, node.node_id)
    return node


@register_node("image-generator")
def build_image_generator(config: WorkerConfig) -> Middleware:
    if config.TASK is None:
        raise ConfigurationError("TASK must be set to run an image generator")
    try:
        task = parse_task(config.TASK)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid TASK: {e}") from e

    builder = (
        ImageGenerator.builder(config.NODE_ID)
        .with_image_model(config.IMAGE_MODEL)
        .with_task(task)
        .with_endpoint(config.INFERENCE_ENDPOINT)
    )
    if config.INFERENCE_REGION:
        builder.with_region(config.INFERENCE_REGION)
    return builder.build()


@register_node("storage-trigger")
def build_storage_trigger(config: WorkerConfig) -> Middleware:
    return StorageEventTrigger.builder(config.NODE_ID).build()


__all__ = [
    "NodeFactory",
    "register_node",
    "available_node_types",
    "create_node",
]
