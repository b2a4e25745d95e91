"""Transport interfaces used by middlewares.

A middleware only talks to three kinds of infrastructure:

- an :class:`ObjectStorage` holding document content,
- a :class:`WorkQueue` feeding it batches of serialized events,
- a :class:`Channel` it publishes resulting events on.

Channels fan out to every subscribed queue. A :class:`Transport` creates the
named queues and channels a pipeline graph needs, so the same graph can be
bound to in-memory structures in tests and to Redis in production.

Implementations can satisfy these protocols structurally without importing
anything from this module.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from docchain.pipeline.consumer_types import BatchItem


@runtime_checkable
class ObjectStorage(Protocol):
    """Content store addressed by URL."""

    async def get(self, url: str) -> bytes:
        """Return the content stored at *url*.

        Raises:
            StorageError: If the content cannot be read
        """
        ...

    async def put(self, data: bytes, media_type: str) -> str:
        """Store *data* and return its URL.

        Keys are derived from the content hash, so storing the same bytes
        twice returns the same URL.

        Raises:
            StorageError: If the content cannot be written
        """
        ...


@runtime_checkable
class WorkQueue(Protocol):
    """Queue with at-least-once delivery and per-item settlement."""

    name: str

    async def send(self, body: str) -> str:
        """Enqueue *body* and return the new entry id."""
        ...

    async def receive(self, max_items: int, visibility_window: float, wait: float) -> list[BatchItem]:
        """Receive up to *max_items* entries.

        Received entries stay hidden from other receivers for
        *visibility_window* seconds unless acknowledged. The call long-polls
        for up to *wait* seconds when nothing is available.
        """
        ...

    async def ack(self, item: BatchItem) -> None:
        """Delete a successfully handled entry."""
        ...

    async def report_failure(self, item: BatchItem) -> None:
        """Mark an entry as failed so it is redelivered after its visibility window."""
        ...

    async def dead_letter(self, item: BatchItem, reason: str) -> None:
        """Move an entry to the dead-letter destination and delete it."""
        ...


@runtime_checkable
class Channel(Protocol):
    """Fan-out publication channel of one node."""

    name: str

    async def publish(self, body: str) -> int:
        """Deliver *body* to every subscribed queue.

        Returns:
            Number of queues the body was delivered to
        """
        ...

    async def subscribe(self, queue: WorkQueue) -> None:
        """Deliver future publications to *queue*."""
        ...


@runtime_checkable
class Transport(Protocol):
    """Factory of named queues and channels plus the shared object storage."""

    @property
    def storage(self) -> ObjectStorage: ...

    def queue(self, name: str) -> WorkQueue:
        """Return the queue called *name*, creating it on first use."""
        ...

    def channel(self, name: str) -> Channel:
        """Return the channel called *name*, creating it on first use."""
        ...

    async def close(self) -> None:
        """Release connections held by the transport."""
        ...


__all__ = [
    "ObjectStorage",
    "WorkQueue",
    "Channel",
    "Transport",
]
