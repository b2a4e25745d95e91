"""Worker process running one middleware against a transport.

A worker binds the node to its input queue ``<node_id>.input`` and output
channel ``<node_id>.events``, optionally subscribes that queue to upstream
channels, and consumes until it is asked to stop.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Iterable

from docchain.config import WorkerConfig
from docchain.metrics import set_node_info
from docchain.pipeline.consumer import WorkQueueConsumer
from docchain.pipeline.graph import events_channel_name, input_queue_name
from docchain.pipeline.middleware import Middleware
from docchain.pipeline.publisher import EventPublisher
from docchain.transport.base import Transport

logger = logging.getLogger(__name__)


async def bind_node(node: Middleware, transport: Transport, upstream: Iterable[str] = ()) -> None:
    """Attach *node* to its queue and channel and subscribe it to *upstream* nodes."""
    queue = transport.queue(input_queue_name(node.node_id))
    channel = transport.channel(events_channel_name(node.node_id))
    node.bind(queue, EventPublisher(channel), transport.storage)

    for producer_id in upstream:
        await transport.channel(events_channel_name(producer_id)).subscribe(queue)
        logger.info("Subscribed %s to events of %s", queue.name, producer_id)


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    """Set *stop_event* on SIGINT and SIGTERM."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            logger.debug("Cannot install handler for %s", sig.name)


async def run_worker(
    node: Middleware,
    transport: Transport,
    config: WorkerConfig | None = None,
    stop_event: asyncio.Event | None = None,
    upstream: Iterable[str] = (),
) -> int:
    """Consume the node's input queue until *stop_event* is set.

    Args:
        node: Middleware to run
        transport: Transport providing the queue, channel and storage
        config: Worker settings; the node's own consumer defaults apply when omitted
        stop_event: Event that stops the worker when set
        upstream: IDs of nodes whose events this node consumes

    Returns:
        Number of items handled

    Raises:
        ConsumerHaltedError: When the input queue keeps failing
    """
    await bind_node(node, transport, upstream)
    consumer_config = config.consumer_config() if config is not None else None
    consumer = WorkQueueConsumer.for_middleware(node, consumer_config)
    set_node_info(node.node_id, node.description.name, node.description.version)

    logger.info(
        "Starting %s worker for node %s (batch=%d, concurrency=%d, timeout=%.0fs)",
        node.description.name,
        node.node_id,
        consumer.config.batch_size,
        consumer.config.max_concurrency,
        consumer.config.processing_timeout,
    )
    try:
        return await consumer.run(stop_event)
    finally:
        await node.aclose()


__all__ = [
    "bind_node",
    "install_signal_handlers",
    "run_worker",
]
