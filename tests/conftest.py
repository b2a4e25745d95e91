"""Shared test configuration and fixtures."""

import os
import sys
from collections.abc import AsyncGenerator
from pathlib import Path

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ.setdefault("PROMETHEUS_DISABLE_SERVER", "true")
os.environ.pop("TASK", None)

import fakeredis.aioredis  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from docchain.transport import InMemoryStorage, InMemoryTransport, LocalObjectStorage  # noqa: E402
from docchain.transport.redis_streams import RedisTransport  # noqa: E402

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture()
def transport() -> InMemoryTransport:
    """In-memory transport with a receive limit of 3."""
    return InMemoryTransport(max_receive_count=3)


@pytest.fixture()
def memory_storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture()
def local_storage(tmp_path: Path) -> LocalObjectStorage:
    return LocalObjectStorage(tmp_path / "objects")


@pytest_asyncio.fixture
async def fake_redis() -> AsyncGenerator[fakeredis.aioredis.FakeRedis, None]:
    """Isolated fake Redis server returning decoded strings."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    try:
        yield client
    finally:
        await client.flushall()
        await client.aclose()


@pytest_asyncio.fixture
async def redis_transport(
    fake_redis: fakeredis.aioredis.FakeRedis, memory_storage: InMemoryStorage
) -> AsyncGenerator[RedisTransport, None]:
    yield RedisTransport(fake_redis, memory_storage, consumer="test-consumer", max_receive_count=3)
