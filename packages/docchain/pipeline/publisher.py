"""Event publication on a node's outbound channel."""

from __future__ import annotations

import logging

from docchain.errors import PublishError
from docchain.events.types import DocumentEvent
from docchain.metrics import record_event_published, record_publish_failure
from docchain.transport.base import Channel

logger = logging.getLogger(__name__)


class EventPublisher:
    """Serializes events and publishes them on a channel.

    Any failure of the underlying channel is raised as :class:`PublishError`,
    which consumers treat as a retryable item failure.

    Args:
        channel: Outbound channel of the node
    """

    def __init__(self, channel: Channel) -> None:
        self.channel = channel

    async def publish(self, event: DocumentEvent) -> int:
        """Publish *event*.

        Returns:
            Number of subscribers the event was delivered to

        Raises:
            PublishError: If serialization or delivery fails
        """
        try:
            body = event.to_json()
            delivered = await self.channel.publish(body)
        except PublishError:
            record_publish_failure(self.channel.name)
            raise
        except Exception as e:
            record_publish_failure(self.channel.name)
            raise PublishError(self.channel.name, f"{type(e).__name__}: {e}") from e

        record_event_published(self.channel.name)
        logger.debug(
            "Published %s for %s on %s (%d subscribers)",
            event.type,
            event.document.url,
            self.channel.name,
            delivered,
        )
        return delivered

    async def publish_all(self, events: list[DocumentEvent]) -> int:
        """Publish *events* in order and return how many were published."""
        for event in events:
            await self.publish(event)
        return len(events)


__all__ = ["EventPublisher"]
