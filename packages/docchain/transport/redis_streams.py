"""Redis Streams transport.

Each work queue is a stream read through a consumer group:

- ``send`` appends with ``XADD``.
- ``receive`` first reclaims entries that have been pending longer than the
  visibility window (``XPENDING`` + ``XCLAIM``), then reads new entries with
  ``XREADGROUP``. The delivery counter kept by Redis is the receive count.
- ``ack`` acknowledges and deletes the entry.
- ``report_failure`` leaves the entry pending; it is reclaimed once idle for
  the visibility window.
- ``dead_letter`` copies the entry to ``<stream>:dead-letter`` before
  deleting it.

A channel is a set of subscribed stream names; publishing appends the body to
every subscribed stream.
"""

from __future__ import annotations

import logging
import os
import socket
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

from docchain.pipeline.consumer_types import BatchItem
from docchain.transport.base import ObjectStorage, WorkQueue

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "docchain"
BODY_FIELD = "body"
DEAD_LETTER_SUFFIX = ":dead-letter"
SUBSCRIBERS_SUFFIX = ":subscribers"


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def default_consumer_name() -> str:
    """Consumer name unique to this process."""
    return f"{socket.gethostname()}-{os.getpid()}"


class RedisStreamQueue:
    """Work queue backed by a Redis stream and consumer group.

    Args:
        client: Async Redis client
        name: Stream key
        group: Consumer group name
        consumer: Consumer name within the group
        max_receive_count: Deliveries after which a pending entry is
            dead-lettered instead of reclaimed; None disables the limit
    """

    def __init__(
        self,
        client: aioredis.Redis,
        name: str,
        group: str = DEFAULT_GROUP,
        consumer: str | None = None,
        max_receive_count: int | None = None,
    ) -> None:
        self.client = client
        self.name = name
        self.group = group
        self.consumer = consumer or default_consumer_name()
        self.max_receive_count = max_receive_count
        self._group_ready = False

    @property
    def dead_letter_stream(self) -> str:
        return f"{self.name}{DEAD_LETTER_SUFFIX}"

    async def ensure_group(self) -> None:
        """Create the consumer group (and stream) if it does not exist."""
        if self._group_ready:
            return
        try:
            await self.client.xgroup_create(self.name, self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s for stream %s", self.group, self.name)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug("Consumer group %s already exists for %s", self.group, self.name)
        self._group_ready = True

    async def send(self, body: str) -> str:
        entry_id = await self.client.xadd(self.name, {BODY_FIELD: body})
        return _text(entry_id)

    async def _reclaim(self, max_items: int, visibility_window: float) -> list[BatchItem]:
        min_idle_ms = int(visibility_window * 1000)
        pending = await self.client.xpending_range(self.name, self.group, min="-", max="+", count=max_items * 4)
        expired = [p for p in pending if int(p["time_since_delivered"]) >= min_idle_ms]
        if not expired:
            return []

        delivered: dict[str, int] = {}
        for entry in expired:
            entry_id = _text(entry["message_id"])
            times_delivered = int(entry["times_delivered"])
            if self.max_receive_count is not None and times_delivered >= self.max_receive_count:
                await self._dead_letter_by_id(entry_id, times_delivered, "max receive count exceeded")
                continue
            delivered[entry_id] = times_delivered
            if len(delivered) >= max_items:
                break
        if not delivered:
            return []

        claimed = await self.client.xclaim(
            self.name,
            self.group,
            self.consumer,
            min_idle_time=min_idle_ms,
            message_ids=list(delivered),
        )
        items = []
        for entry_id, fields in claimed:
            if not fields:
                # Entry was deleted while pending
                continue
            entry_id = _text(entry_id)
            items.append(
                BatchItem(
                    item_id=entry_id,
                    body=_text(fields.get(BODY_FIELD, fields.get(BODY_FIELD.encode(), ""))),
                    receive_count=delivered[entry_id] + 1,
                    attributes={"stream": self.name, "reclaimed": True},
                )
            )
        if items:
            logger.info("Reclaimed %d idle entries on %s", len(items), self.name)
        return items

    async def receive(self, max_items: int, visibility_window: float, wait: float) -> list[BatchItem]:
        await self.ensure_group()
        items = await self._reclaim(max_items, visibility_window)
        remaining = max_items - len(items)
        if remaining <= 0:
            return items

        # Do not block when reclaimed entries are already waiting
        block = int(wait * 1000) if wait > 0 and not items else None
        response = await self.client.xreadgroup(
            self.group,
            self.consumer,
            {self.name: ">"},
            count=remaining,
            block=block,
        )
        for _, entries in response or []:
            for entry_id, fields in entries:
                items.append(
                    BatchItem(
                        item_id=_text(entry_id),
                        body=_text(fields.get(BODY_FIELD, fields.get(BODY_FIELD.encode(), ""))),
                        receive_count=1,
                        attributes={"stream": self.name, "reclaimed": False},
                    )
                )
        return items

    async def ack(self, item: BatchItem) -> None:
        await self.client.xack(self.name, self.group, item.item_id)
        await self.client.xdel(self.name, item.item_id)

    async def report_failure(self, item: BatchItem) -> None:
        logger.debug(
            "Entry %s on %s left pending for redelivery (receive count %d)",
            item.item_id,
            self.name,
            item.receive_count,
        )

    async def dead_letter(self, item: BatchItem, reason: str) -> None:
        await self.client.xadd(
            self.dead_letter_stream,
            {
                BODY_FIELD: item.body,
                "item_id": item.item_id,
                "receive_count": str(item.receive_count),
                "reason": reason,
            },
        )
        await self.ack(item)
        logger.warning("Dead-lettered %s on %s: %s", item.item_id, self.name, reason)

    async def _dead_letter_by_id(self, entry_id: str, times_delivered: int, reason: str) -> None:
        entries = await self.client.xrange(self.name, min=entry_id, max=entry_id)
        body = ""
        if entries:
            fields = entries[0][1]
            body = _text(fields.get(BODY_FIELD, fields.get(BODY_FIELD.encode(), "")))
        await self.dead_letter(BatchItem(item_id=entry_id, body=body, receive_count=times_delivered), reason)


class RedisChannel:
    """Channel fanning out to the streams registered in a Redis set."""

    def __init__(self, client: aioredis.Redis, name: str) -> None:
        self.client = client
        self.name = name

    @property
    def subscribers_key(self) -> str:
        return f"{self.name}{SUBSCRIBERS_SUFFIX}"

    async def subscribers(self) -> list[str]:
        members = await self.client.smembers(self.subscribers_key)
        return sorted(_text(m) for m in members)

    async def publish(self, body: str) -> int:
        streams = await self.subscribers()
        if not streams:
            logger.debug("No subscribers on %s, dropping event", self.name)
            return 0
        async with self.client.pipeline(transaction=False) as pipe:
            for stream in streams:
                pipe.xadd(stream, {BODY_FIELD: body})
            await pipe.execute()
        return len(streams)

    async def subscribe(self, queue: WorkQueue) -> None:
        await self.client.sadd(self.subscribers_key, queue.name)


class RedisTransport:
    """Transport over one Redis connection.

    Args:
        client: Async Redis client
        storage: Object storage shared by all nodes
        group: Consumer group used by every queue
        consumer: Consumer name used by every queue
        max_receive_count: Receive limit applied to every queue created
    """

    def __init__(
        self,
        client: aioredis.Redis,
        storage: ObjectStorage,
        group: str = DEFAULT_GROUP,
        consumer: str | None = None,
        max_receive_count: int | None = None,
    ) -> None:
        self.client = client
        self._storage = storage
        self.group = group
        self.consumer = consumer or default_consumer_name()
        self.max_receive_count = max_receive_count
        self._queues: dict[str, RedisStreamQueue] = {}
        self._channels: dict[str, RedisChannel] = {}

    @classmethod
    def from_url(cls, url: str, storage: ObjectStorage, **kwargs: Any) -> RedisTransport:
        client = aioredis.from_url(url, decode_responses=True)
        return cls(client, storage, **kwargs)

    @property
    def storage(self) -> ObjectStorage:
        return self._storage

    def queue(self, name: str) -> RedisStreamQueue:
        if name not in self._queues:
            self._queues[name] = RedisStreamQueue(
                self.client,
                name,
                group=self.group,
                consumer=self.consumer,
                max_receive_count=self.max_receive_count,
            )
        return self._queues[name]

    def channel(self, name: str) -> RedisChannel:
        if name not in self._channels:
            self._channels[name] = RedisChannel(self.client, name)
        return self._channels[name]

    async def close(self) -> None:
        await self.client.aclose()


__all__ = [
    "DEFAULT_GROUP",
    "RedisStreamQueue",
    "RedisChannel",
    "RedisTransport",
    "default_consumer_name",
]
