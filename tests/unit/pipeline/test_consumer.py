"""Unit tests for the work queue consumer."""

import asyncio
import json

import pytest

from docchain.errors import ConsumerHaltedError
from docchain.events import DocumentEvent, EventType
from docchain.pipeline import ConsumerConfig, ItemOutcome, NodeState, WorkQueueConsumer
from docchain.pipeline.conditions import when
from docchain.pipeline.consumer_types import BatchItem
from docchain.pipeline.publisher import EventPublisher
from docchain.transport import InMemoryChannel, InMemoryStorage, InMemoryWorkQueue
from tests.fixtures.middlewares import EchoMiddleware, ThumbnailMiddleware, make_event

FAST = {"receive_wait": 0, "failure_backoff": 0}


def _consumer(
    node: EchoMiddleware | ThumbnailMiddleware,
    config: ConsumerConfig | None = None,
    queue: InMemoryWorkQueue | None = None,
    channel: InMemoryChannel | None = None,
) -> tuple[WorkQueueConsumer, InMemoryWorkQueue, InMemoryChannel]:
    queue = queue if queue is not None else InMemoryWorkQueue(f"{node.node_id}.input")
    channel = channel if channel is not None else InMemoryChannel(f"{node.node_id}.events")
    node.bind(queue, EventPublisher(channel), InMemoryStorage())
    return WorkQueueConsumer.for_middleware(node, config or ConsumerConfig(batch_size=10, **FAST)), queue, channel


class _BrokenQueue(InMemoryWorkQueue):
    """Queue whose receive always fails."""

    async def receive(self, max_items: int, visibility_window: float, wait: float) -> list[BatchItem]:
        raise ConnectionError("queue unreachable")


class _AckFailingQueue(InMemoryWorkQueue):
    """Queue that cannot acknowledge one specific entry."""

    def __init__(self, name: str, bad_id: str) -> None:
        super().__init__(name)
        self.bad_id = bad_id

    async def ack(self, item: BatchItem) -> None:
        if item.item_id == self.bad_id:
            raise ConnectionError("ack lost")
        await super().ack(item)


class _BrokenChannel(InMemoryChannel):
    async def publish(self, body: str) -> int:
        raise ConnectionError("channel down")


class TestBatchOutcomes:
    """Tests for per-item outcomes and settlement."""

    @pytest.mark.asyncio()
    async def test_mixed_batch(self) -> None:
        """Test a valid, a malformed and a filtered item in one batch."""
        node = EchoMiddleware.builder("echo").build()
        consumer, queue, channel = _consumer(node)
        valid = await queue.send(make_event(url="s3://inbox/a.txt").to_json())
        malformed = await queue.send("this is not json")
        filtered = await queue.send(make_event(url="s3://inbox/b.pdf", media_type="application/pdf").to_json())

        result = await consumer.run_once()

        assert result.outcomes() == [
            (valid, ItemOutcome.SUCCEEDED),
            (malformed, ItemOutcome.FAILED),
            (filtered, ItemOutcome.SKIPPED),
        ]
        assert result.failed[0].retryable is False
        assert result.failed[0].error_type == "MalformedEventError"
        assert len(queue) == 0
        assert [d.item_id for d in queue.dead_letters] == [malformed]
        assert len(channel.published) == 1
        assert result.succeeded[0].published == 1

    @pytest.mark.asyncio()
    async def test_image_node_gated_on_created_events(self) -> None:
        """Test that a PNG/JPEG node publishes for a created PNG, skips an update and dead-letters garbage."""
        node = ThumbnailMiddleware.builder("thumbs").with_condition(when("type").equals("document-created")).build()
        consumer, queue, channel = _consumer(node)
        created = await queue.send(make_event(url="s3://inbox/a.png", media_type="image/png").to_json())
        updated = await queue.send(
            make_event(url="s3://inbox/b.png", media_type="image/png", event_type=EventType.DOCUMENT_UPDATED).to_json()
        )
        malformed = await queue.send('{"type": "document-created", "data": 42}')

        result = await consumer.run_once()

        assert result.outcomes() == [
            (created, ItemOutcome.SUCCEEDED),
            (updated, ItemOutcome.SKIPPED),
            (malformed, ItemOutcome.FAILED),
        ]
        assert len(channel.published) == 1
        assert DocumentEvent.from_json(channel.published[0]).document.url == "s3://inbox/a.png.thumb.png"
        assert [d.item_id for d in queue.dead_letters] == [malformed]
        assert len(queue) == 0

    @pytest.mark.asyncio()
    async def test_partial_failure_only_retries_failed_item(self) -> None:
        """Test that one failing item does not affect its siblings."""
        node = EchoMiddleware.builder("echo").failing_on("s3://inbox/b.txt").build()
        consumer, queue, channel = _consumer(node)
        for name in ("a", "b", "c"):
            await queue.send(make_event(url=f"s3://inbox/{name}.txt").to_json())

        result = await consumer.run_once()

        assert len(result.succeeded) == 2
        failed = result.failed[0]
        assert failed.error_type == "ProcessingError"
        assert failed.retryable is True
        assert result.batch_item_failures() == {"batchItemFailures": [{"itemIdentifier": failed.item_id}]}
        # The failed entry stays hidden until its visibility window lapses
        assert len(queue) == 1
        assert queue.in_flight_count == 1
        assert queue.dead_letters == []
        assert len(channel.published) == 2

    @pytest.mark.asyncio()
    async def test_failed_item_is_redelivered(self) -> None:
        """Test redelivery after the visibility window with a higher receive count."""
        node = EchoMiddleware.builder("echo").failing_on("s3://inbox/b.txt").build()
        config = ConsumerConfig(batch_size=10, max_concurrency=10, processing_timeout=0.05, **FAST)
        consumer, queue, _ = _consumer(node, config)
        await queue.send(make_event(url="s3://inbox/b.txt").to_json())

        await consumer.run_once()
        assert len(await queue.receive(10, 1, 0)) == 0

        await asyncio.sleep(0.15)
        redelivered = await queue.receive(10, 1, 0)
        assert redelivered[0].receive_count == 2

    @pytest.mark.asyncio()
    async def test_dead_letter_after_max_receive_count(self) -> None:
        """Test that a persistently failing item ends in the dead-letter list."""
        node = EchoMiddleware.builder("echo").failing_on("s3://inbox/b.txt").build()
        config = ConsumerConfig(batch_size=1, processing_timeout=0.02, max_receive_count=2, **FAST)
        consumer, queue, _ = _consumer(node, config)
        entry_id = await queue.send(make_event(url="s3://inbox/b.txt").to_json())

        await consumer.run_once()
        assert queue.dead_letters == []
        await asyncio.sleep(0.06)
        await consumer.run_once()

        assert len(queue) == 0
        dead = queue.dead_letters[0]
        assert dead.item_id == entry_id
        assert dead.receive_count == 2
        assert "exceeded 2 receives" in dead.reason

    @pytest.mark.asyncio()
    async def test_unexpected_exception_is_retryable(self) -> None:
        """Test that unknown errors are confined to their item and retried."""
        node = EchoMiddleware.builder("echo").crashing_on("s3://inbox/a.txt").build()
        consumer, queue, _ = _consumer(node)
        await queue.send(make_event(url="s3://inbox/a.txt").to_json())

        result = await consumer.run_once()

        assert result.failed[0].error_type == "RuntimeError"
        assert result.failed[0].retryable is True
        assert queue.dead_letters == []

    @pytest.mark.asyncio()
    async def test_publish_failure_fails_item(self) -> None:
        """Test that an unreachable channel fails the item as retryable."""
        node = EchoMiddleware.builder("echo").build()
        consumer, queue, _ = _consumer(node, channel=_BrokenChannel("echo.events"))
        await queue.send(make_event().to_json())

        result = await consumer.run_once()

        assert result.failed[0].error_type == "PublishError"
        assert result.failed[0].retryable is True

    @pytest.mark.asyncio()
    async def test_fan_out_publishes_in_order(self) -> None:
        """Test that several outputs of one event are published in order."""
        node = EchoMiddleware.builder("echo").with_fan_out(3).build()
        consumer, queue, channel = _consumer(node)
        await queue.send(make_event().to_json())

        result = await consumer.run_once()

        assert result.succeeded[0].published == 3
        copies = [DocumentEvent.from_json(body).metadata["copy"] for body in channel.published]
        assert copies == [0, 1, 2]

    @pytest.mark.asyncio()
    async def test_published_events_extend_call_stack(self) -> None:
        """Test that outputs carry the chain id and the node in their call stack."""
        node = EchoMiddleware.builder("echo").build()
        consumer, queue, channel = _consumer(node)
        event = make_event(call_stack=("trigger",))
        await queue.send(event.to_json())

        await consumer.run_once()

        published = json.loads(channel.published[0])
        assert published["data"]["chainId"] == event.chain_id
        assert published["data"]["callStack"] == ["trigger", "echo"]

    @pytest.mark.asyncio()
    async def test_settlement_error_does_not_stop_other_items(self) -> None:
        """Test that a failed ack is logged and the other items are still settled."""
        queue = _AckFailingQueue("echo.input", bad_id="echo.input-1")
        node = EchoMiddleware.builder("echo").build()
        consumer, queue, _ = _consumer(node, queue=queue)
        await queue.send(make_event(url="s3://inbox/a.txt").to_json())
        await queue.send(make_event(url="s3://inbox/b.txt").to_json())

        result = await consumer.run_once()

        assert len(result.succeeded) == 2
        assert len(queue) == 1

    @pytest.mark.asyncio()
    async def test_empty_receive(self) -> None:
        """Test that an empty queue yields an empty result."""
        consumer, _, _ = _consumer(EchoMiddleware.builder("echo").build())
        assert len(await consumer.run_once()) == 0


class TestConcurrencyAndTimeouts:
    """Tests for concurrency bounds and per-item timeouts."""

    @pytest.mark.asyncio()
    async def test_max_concurrency_is_respected(self) -> None:
        """Test that at most max_concurrency items run at once."""
        node = EchoMiddleware.builder("echo").with_delay(0.05).build()
        config = ConsumerConfig(batch_size=5, max_concurrency=2, **FAST)
        consumer, queue, _ = _consumer(node, config)
        for i in range(5):
            await queue.send(make_event(url=f"s3://inbox/{i}.txt").to_json())

        result = await consumer.run_once()

        assert len(result.succeeded) == 5
        assert node.peak == 2
        assert consumer.peak_concurrency == 2

    @pytest.mark.asyncio()
    async def test_items_run_concurrently(self) -> None:
        """Test that a batch takes about one delay per concurrency slot."""
        node = EchoMiddleware.builder("echo").with_delay(0.1).build()
        config = ConsumerConfig(batch_size=4, max_concurrency=4, **FAST)
        consumer, queue, _ = _consumer(node, config)
        for i in range(4):
            await queue.send(make_event(url=f"s3://inbox/{i}.txt").to_json())

        loop = asyncio.get_running_loop()
        start = loop.time()
        await consumer.run_once()

        assert loop.time() - start < 0.35

    @pytest.mark.asyncio()
    async def test_timeout_fails_item(self) -> None:
        """Test that an item exceeding the processing timeout fails as retryable."""
        node = EchoMiddleware.builder("echo").with_delay(1).build()
        config = ConsumerConfig(batch_size=1, processing_timeout=0.05, **FAST)
        consumer, queue, channel = _consumer(node, config)
        await queue.send(make_event().to_json())

        result = await consumer.run_once()

        failed = result.failed[0]
        assert failed.error_type == "TimeoutError"
        assert failed.retryable is True
        assert failed.duration_ms < 1000
        assert channel.published == []

    @pytest.mark.asyncio()
    async def test_batch_stays_hidden_until_every_item_is_settled(self) -> None:
        """Test that a slow sequential batch is never redelivered while it is still being processed."""
        node = EchoMiddleware.builder("echo").with_delay(0.08).build()
        config = ConsumerConfig(batch_size=6, max_concurrency=1, processing_timeout=0.1, **FAST)
        consumer, queue, channel = _consumer(node, config)
        for i in range(6):
            await queue.send(make_event(url=f"s3://inbox/{i}.txt").to_json())

        batch = asyncio.create_task(consumer.run_once())
        await asyncio.sleep(0.3)

        assert await queue.receive(10, 1.0, 0) == []
        # Finished items are acknowledged before their siblings complete
        assert 0 < len(queue) < 6

        result = await batch
        assert len(result.succeeded) == 6
        assert len(queue) == 0
        assert len(channel.published) == 6
        assert [event.document.url for event in node.seen] == [f"s3://inbox/{i}.txt" for i in range(6)]


class TestRunLoop:
    """Tests for the consume loop and halt logic."""

    @pytest.mark.asyncio()
    async def test_halts_after_consecutive_receive_failures(self) -> None:
        """Test that a broken queue halts the consumer at the threshold."""
        node = EchoMiddleware.builder("echo").build()
        config = ConsumerConfig(consecutive_failure_threshold=3, **FAST)
        consumer, _, _ = _consumer(node, config, queue=_BrokenQueue("echo.input"))

        assert len(await consumer.run_once()) == 0
        assert len(await consumer.run_once()) == 0
        with pytest.raises(ConsumerHaltedError, match="3 consecutive failures"):
            await consumer.run_once()

    @pytest.mark.asyncio()
    async def test_run_raises_when_halted(self) -> None:
        """Test that run propagates the halt."""
        node = EchoMiddleware.builder("echo").build()
        config = ConsumerConfig(consecutive_failure_threshold=2, **FAST)
        consumer, _, _ = _consumer(node, config, queue=_BrokenQueue("echo.input"))

        with pytest.raises(ConsumerHaltedError):
            await consumer.run()

    @pytest.mark.asyncio()
    async def test_run_until_stopped(self) -> None:
        """Test that run consumes until the stop event is set."""
        node = EchoMiddleware.builder("echo").build()
        config = ConsumerConfig(batch_size=10, receive_wait=0.01)
        consumer, queue, channel = _consumer(node, config)
        for i in range(3):
            await queue.send(make_event(url=f"s3://inbox/{i}.txt").to_json())

        stop = asyncio.Event()
        task = asyncio.create_task(consumer.run(stop))
        await asyncio.sleep(0.1)
        assert node.state is NodeState.ACTIVE
        stop.set()
        handled = await asyncio.wait_for(task, timeout=1)

        assert handled == 3
        assert len(channel.published) == 3
        assert len(queue) == 0

    @pytest.mark.asyncio()
    async def test_for_middleware_requires_binding(self) -> None:
        """Test that an unbound node has no consumer."""
        with pytest.raises(ConsumerHaltedError, match="not bound"):
            WorkQueueConsumer.for_middleware(EchoMiddleware.builder("echo").build())
