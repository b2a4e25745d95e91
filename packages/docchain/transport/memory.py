"""In-process transport implementations.

These mirror the semantics of the production queue closely enough to test
consumers against: entries become invisible for a visibility window when
received, receive counts grow with every delivery, and dead-lettered entries
are kept with their reason for inspection.
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import logging
import mimetypes
import time
from dataclasses import dataclass, field

from docchain.errors import StorageError
from docchain.pipeline.consumer_types import BatchItem
from docchain.transport.base import WorkQueue

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    entry_id: str
    body: str
    receive_count: int = 0
    visible_at: float = 0.0


@dataclass(frozen=True)
class DeadLetter:
    """An entry moved out of a queue.

    Attributes:
        item_id: Id of the dead-lettered entry
        body: Raw payload
        receive_count: Deliveries before the entry was dead-lettered
        reason: Why the entry was dead-lettered
    """

    item_id: str
    body: str
    receive_count: int
    reason: str


class InMemoryWorkQueue:
    """Work queue held in process memory.

    Args:
        name: Queue name
        max_receive_count: Deliveries after which an unsettled entry is
            dead-lettered instead of delivered again; None disables the limit
    """

    def __init__(self, name: str, max_receive_count: int | None = None) -> None:
        self.name = name
        self.max_receive_count = max_receive_count
        self.dead_letters: list[DeadLetter] = []
        self._entries: dict[str, _Entry] = {}
        self._ids = itertools.count(1)
        self._changed = asyncio.Condition()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def in_flight_count(self) -> int:
        """Number of entries currently hidden by a visibility window."""
        now = time.monotonic()
        return sum(1 for entry in self._entries.values() if entry.visible_at > now)

    async def send(self, body: str) -> str:
        entry_id = f"{self.name}-{next(self._ids)}"
        self._entries[entry_id] = _Entry(entry_id=entry_id, body=body)
        async with self._changed:
            self._changed.notify_all()
        return entry_id

    def _take_visible(self, max_items: int, visibility_window: float) -> list[BatchItem]:
        now = time.monotonic()
        items: list[BatchItem] = []
        for entry in list(self._entries.values()):
            if len(items) >= max_items:
                break
            if entry.visible_at > now:
                continue
            if self.max_receive_count is not None and entry.receive_count >= self.max_receive_count:
                self._move_to_dead_letters(entry, "max receive count exceeded")
                continue
            entry.receive_count += 1
            entry.visible_at = now + visibility_window
            items.append(BatchItem(item_id=entry.entry_id, body=entry.body, receive_count=entry.receive_count))
        return items

    def _next_visibility_delay(self) -> float | None:
        now = time.monotonic()
        hidden = [entry.visible_at for entry in self._entries.values() if entry.visible_at > now]
        if not hidden:
            return None
        return min(hidden) - now

    async def receive(self, max_items: int, visibility_window: float, wait: float) -> list[BatchItem]:
        deadline = time.monotonic() + wait
        async with self._changed:
            while True:
                items = self._take_visible(max_items, visibility_window)
                remaining = deadline - time.monotonic()
                if items or remaining <= 0:
                    return items
                delay = self._next_visibility_delay()
                timeout = remaining if delay is None else min(remaining, max(delay, 0.001))
                try:
                    await asyncio.wait_for(self._changed.wait(), timeout=timeout)
                except TimeoutError:
                    pass

    def _current(self, item: BatchItem, action: str) -> _Entry | None:
        """Entry still held by *item*'s delivery, or None if it was settled or redelivered."""
        entry = self._entries.get(item.item_id)
        if entry is None:
            logger.debug("%s for unknown entry %s on %s", action, item.item_id, self.name)
            return None
        if entry.receive_count != item.receive_count:
            logger.warning(
                "Ignoring %s for stale delivery %d of %s on %s (now at delivery %d)",
                action.lower(),
                item.receive_count,
                item.item_id,
                self.name,
                entry.receive_count,
            )
            return None
        return entry

    async def ack(self, item: BatchItem) -> None:
        if self._current(item, "Ack") is not None:
            del self._entries[item.item_id]

    async def report_failure(self, item: BatchItem) -> None:
        # The entry stays hidden until its visibility window lapses
        self._current(item, "Failure report")

    async def dead_letter(self, item: BatchItem, reason: str) -> None:
        entry = self._current(item, "Dead-letter")
        if entry is not None:
            self._move_to_dead_letters(entry, reason)

    def _move_to_dead_letters(self, entry: _Entry, reason: str) -> None:
        del self._entries[entry.entry_id]
        self.dead_letters.append(
            DeadLetter(item_id=entry.entry_id, body=entry.body, receive_count=entry.receive_count, reason=reason)
        )
        logger.warning("Dead-lettered %s on %s: %s", entry.entry_id, self.name, reason)


class InMemoryChannel:
    """Fan-out channel delivering to subscribed in-memory queues."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.published: list[str] = []
        self._subscribers: list[WorkQueue] = []

    @property
    def subscribers(self) -> list[WorkQueue]:
        return list(self._subscribers)

    async def publish(self, body: str) -> int:
        self.published.append(body)
        for queue in self._subscribers:
            await queue.send(body)
        return len(self._subscribers)

    async def subscribe(self, queue: WorkQueue) -> None:
        if queue not in self._subscribers:
            self._subscribers.append(queue)


def content_key(data: bytes, media_type: str) -> str:
    """Return the content-addressed key for *data*.

    Example:
        >>> content_key(b"hello", "text/plain")
        "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824.txt"
    """
    extension = mimetypes.guess_extension(media_type.split(";", 1)[0].strip()) or ""
    return hashlib.sha256(data).hexdigest() + extension


class InMemoryStorage:
    """Content-addressed storage held in a dict, addressed by ``mem://`` URLs."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    async def get(self, url: str) -> bytes:
        try:
            return self.objects[url]
        except KeyError:
            raise StorageError(url, "object not found") from None

    async def put(self, data: bytes, media_type: str) -> str:
        url = f"mem://{content_key(data, media_type)}"
        self.objects[url] = data
        return url


@dataclass
class InMemoryTransport:
    """Transport whose queues, channels and storage all live in memory.

    Attributes:
        max_receive_count: Receive limit applied to every queue created
    """

    max_receive_count: int | None = None
    queues: dict[str, InMemoryWorkQueue] = field(default_factory=dict)
    channels: dict[str, InMemoryChannel] = field(default_factory=dict)
    _storage: InMemoryStorage = field(default_factory=InMemoryStorage)

    @property
    def storage(self) -> InMemoryStorage:
        return self._storage

    def queue(self, name: str) -> InMemoryWorkQueue:
        if name not in self.queues:
            self.queues[name] = InMemoryWorkQueue(name, max_receive_count=self.max_receive_count)
        return self.queues[name]

    def channel(self, name: str) -> InMemoryChannel:
        if name not in self.channels:
            self.channels[name] = InMemoryChannel(name)
        return self.channels[name]

    async def close(self) -> None:
        return None


__all__ = [
    "DeadLetter",
    "InMemoryWorkQueue",
    "InMemoryChannel",
    "InMemoryStorage",
    "InMemoryTransport",
    "content_key",
]
