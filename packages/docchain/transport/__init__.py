"""Queues, channels and object storage used to connect pipeline nodes.

Implementations:
    - memory: In-process queues, channels and storage for tests and local runs
    - redis_streams: Redis Streams queues and fan-out channels
    - storage: Content-addressed local filesystem storage
"""

from docchain.transport.base import Channel, ObjectStorage, Transport, WorkQueue
from docchain.transport.memory import (
    DeadLetter,
    InMemoryChannel,
    InMemoryStorage,
    InMemoryTransport,
    InMemoryWorkQueue,
)
from docchain.transport.storage import LocalObjectStorage

__all__ = [
    "Channel",
    "ObjectStorage",
    "Transport",
    "WorkQueue",
    "DeadLetter",
    "InMemoryChannel",
    "InMemoryStorage",
    "InMemoryTransport",
    "InMemoryWorkQueue",
    "LocalObjectStorage",
]
