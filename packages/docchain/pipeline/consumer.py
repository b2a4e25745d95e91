"""Work queue consumer driving one middleware.

The consumer pulls batches from the node's input queue, runs every item
through decode → condition → process → publish, and settles each item
individually:

- ``SUCCEEDED`` and ``SKIPPED`` items are acknowledged.
- Retryable ``FAILED`` items are reported so the queue redelivers them after
  the visibility window, or dead-lettered once they reached
  ``max_receive_count`` deliveries.
- Non-retryable ``FAILED`` items (malformed payloads) are dead-lettered
  immediately.

A failing item never affects its siblings. Items run concurrently up to
``max_concurrency`` and each one is bounded by ``processing_timeout``.
Each item is settled as soon as it finishes, and the visibility window
covers the whole batch deadline, so no item is redelivered while this
consumer still holds it.

Example:
    ```python
    consumer = WorkQueueConsumer(node, queue, EventPublisher(channel))
    result = await consumer.run_once()
    print(result.outcomes())
    ```
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence

from docchain.errors import ConsumerHaltedError, DocchainError, MalformedEventError
from docchain.metrics import (
    items_in_flight,
    record_batch_received,
    record_dead_lettered,
    record_item_failed,
    record_item_outcome,
    record_receive_failure,
)
from docchain.pipeline.consumer_types import BatchItem, BatchResult, ConsumerConfig, ItemOutcome, ItemResult
from docchain.pipeline.failure_tracker import ConsecutiveFailureTracker
from docchain.pipeline.middleware import Middleware, NodeState, ProcessingContext
from docchain.pipeline.publisher import EventPublisher
from docchain.transport.base import ObjectStorage, WorkQueue

logger = logging.getLogger(__name__)


class WorkQueueConsumer:
    """Consumes a work queue on behalf of one middleware.

    Args:
        middleware: Node whose events are processed
        queue: Input queue of the node
        publisher: Publisher of the node's output events
        config: Consumer settings (defaults to the middleware's)
        storage: Object storage passed to the middleware
    """

    def __init__(
        self,
        middleware: Middleware,
        queue: WorkQueue,
        publisher: EventPublisher,
        config: ConsumerConfig | None = None,
        storage: ObjectStorage | None = None,
    ) -> None:
        self.middleware = middleware
        self.queue = queue
        self.publisher = publisher
        self.config = config or middleware.consumer_config
        self.storage = storage if storage is not None else middleware.storage
        self.tracker = ConsecutiveFailureTracker(threshold=self.config.consecutive_failure_threshold)
        self._condition = middleware.conditional()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._in_flight = 0
        self.peak_concurrency = 0

    @classmethod
    def for_middleware(cls, middleware: Middleware, config: ConsumerConfig | None = None) -> WorkQueueConsumer:
        """Create a consumer from a bound middleware's queue, publisher and storage."""
        if middleware.input_queue is None or middleware.publisher is None:
            raise ConsumerHaltedError(middleware.node_id, "middleware is not bound to a queue")
        return cls(middleware, middleware.input_queue, middleware.publisher, config, middleware.storage)

    @property
    def node_id(self) -> str:
        return self.middleware.node_id

    async def process_batch(self, items: Sequence[BatchItem], settle: bool = False) -> BatchResult:
        """Process *items* concurrently and return their results in order.

        With *settle*, each item is settled as soon as its own result is
        known, so no finished item waits for slower siblings while its
        visibility window runs.
        """
        results = await asyncio.gather(*(self._process_bounded(item, settle) for item in items))
        return BatchResult(list(results))

    async def _process_bounded(self, item: BatchItem, settle: bool = False) -> ItemResult:
        async with self._semaphore:
            self._in_flight += 1
            self.peak_concurrency = max(self.peak_concurrency, self._in_flight)
            items_in_flight.labels(node=self.node_id).inc()
            start = time.perf_counter()
            try:
                result = await self._process_with_timeout(item)
            finally:
                self._in_flight -= 1
                items_in_flight.labels(node=self.node_id).dec()

        duration = time.perf_counter() - start
        result.duration_ms = round(duration * 1000, 3)
        record_item_outcome(self.node_id, result.outcome.value, duration)
        if result.failed:
            record_item_failed(self.node_id, result.error_type or "unknown")
        if settle:
            await self._settle_safely(item, result)
        return result

    async def _process_with_timeout(self, item: BatchItem) -> ItemResult:
        try:
            return await asyncio.wait_for(self._process_item(item), timeout=self.config.processing_timeout)
        except TimeoutError:
            logger.warning(
                "Item %s on %s timed out after %.1fs", item.item_id, self.node_id, self.config.processing_timeout
            )
            return self._failure(item, "TimeoutError", f"timed out after {self.config.processing_timeout}s", True)
        except MalformedEventError as e:
            logger.warning("Malformed item %s on %s: %s", item.item_id, self.node_id, e)
            return self._failure(item, type(e).__name__, str(e), False)
        except DocchainError as e:
            logger.warning("Item %s on %s failed: %s", item.item_id, self.node_id, e)
            return self._failure(item, type(e).__name__, str(e), e.retryable)
        except Exception as e:
            logger.exception("Unexpected error processing item %s on %s", item.item_id, self.node_id)
            return self._failure(item, type(e).__name__, str(e), True)

    async def _process_item(self, item: BatchItem) -> ItemResult:
        events = self.middleware.decode(item)
        context = ProcessingContext(node_id=self.node_id, storage=self.storage, item=item)

        matched = False
        outputs = []
        for event in events:
            if not self._condition.evaluate(event):
                logger.debug("Skipping %s event for %s on %s", event.type, event.document.url, self.node_id)
                continue
            matched = True
            outputs.extend(await self.middleware.process(event, context))

        if not matched:
            return ItemResult(item_id=item.item_id, outcome=ItemOutcome.SKIPPED)

        await self.publisher.publish_all(outputs)
        return ItemResult(item_id=item.item_id, outcome=ItemOutcome.SUCCEEDED, published=len(outputs))

    @staticmethod
    def _failure(item: BatchItem, error_type: str, message: str, retryable: bool) -> ItemResult:
        return ItemResult(
            item_id=item.item_id,
            outcome=ItemOutcome.FAILED,
            error_type=error_type,
            error_message=message,
            retryable=retryable,
        )

    async def settle(self, items: Sequence[BatchItem], result: BatchResult) -> None:
        """Acknowledge, retry or dead-letter every item according to its result."""
        by_id = {item.item_id: item for item in items}
        for item_result in result:
            item = by_id.get(item_result.item_id)
            if item is None:
                logger.error("No delivered item matches result %s on %s", item_result.item_id, self.node_id)
                continue
            await self._settle_safely(item, item_result)

    async def _settle_safely(self, item: BatchItem, result: ItemResult) -> None:
        try:
            await self._settle_item(item, result)
        except Exception:
            logger.exception("Failed to settle item %s on %s", item.item_id, self.node_id)

    async def _settle_item(self, item: BatchItem, result: ItemResult) -> None:
        if not result.failed:
            await self.queue.ack(item)
            return

        if not result.retryable:
            reason = f"{result.error_type}: {result.error_message}"
        elif item.receive_count >= self.config.max_receive_count:
            reason = f"exceeded {self.config.max_receive_count} receives; last error {result.error_type}"
        else:
            await self.queue.report_failure(item)
            return

        await self.queue.dead_letter(item, reason)
        record_dead_lettered(self.node_id)

    async def run_once(self) -> BatchResult:
        """Receive one batch, process it and settle every item.

        Raises:
            ConsumerHaltedError: When receiving failed too many times in a row
        """
        try:
            items = await self.queue.receive(self.config.batch_size, self.config.visibility, self.config.receive_wait)
        except Exception as e:
            record_receive_failure(self.node_id)
            self.tracker.record_failure(self.node_id, "receive", str(e), type(e).__name__)
            if self.tracker.should_halt():
                raise ConsumerHaltedError(self.node_id, self.tracker.get_halt_reason()) from e
            logger.warning("Receive failed on %s: %s", self.node_id, e)
            await asyncio.sleep(self.config.failure_backoff)
            return BatchResult()

        self.tracker.record_success()
        if not items:
            return BatchResult()

        record_batch_received(self.node_id, len(items))
        result = await self.process_batch(items, settle=True)
        logger.info(
            "Batch on %s: %d succeeded, %d skipped, %d failed",
            self.node_id,
            len(result.succeeded),
            len(result.skipped),
            len(result.failed),
        )
        return result

    async def run(self, stop_event: asyncio.Event | None = None) -> int:
        """Consume until *stop_event* is set.

        Returns:
            Number of items handled
        """
        if self.middleware.state is NodeState.CREATED:
            self.middleware.bind(self.queue, self.publisher, self.storage)
        self.middleware.activate()
        logger.info("Consumer for %s started on %s", self.node_id, self.queue.name)

        stop_event = stop_event or asyncio.Event()
        handled = 0
        while not stop_event.is_set():
            result = await self.run_once()
            handled += len(result)

        logger.info("Consumer for %s stopped after %d items", self.node_id, handled)
        return handled


__all__ = ["WorkQueueConsumer"]
