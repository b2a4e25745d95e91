"""
Prometheus metrics for docchain middlewares
Provides observability into queue consumption and event publication
"""

import logging
import os

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, start_http_server

logger = logging.getLogger(__name__)

# Create custom registry
registry = CollectorRegistry()

_METRICS_SERVER_STARTED = False

# System Info
system_info = Info("docchain_node", "Docchain node information", registry=registry)

# Item Metrics
items_processed = Counter(
    "docchain_items_processed_total",
    "Batch items processed, by outcome",
    ["node", "outcome"],
    registry=registry,
)
items_failed = Counter(
    "docchain_items_failed_total",
    "Batch items failed, by error type",
    ["node", "error_type"],
    registry=registry,
)
items_dead_lettered = Counter(
    "docchain_items_dead_lettered_total",
    "Batch items moved to the dead-letter destination",
    ["node"],
    registry=registry,
)
items_in_flight = Gauge("docchain_items_in_flight", "Batch items currently processing", ["node"], registry=registry)
item_duration = Histogram(
    "docchain_item_duration_seconds",
    "Per-item processing duration",
    ["node"],
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120),
    registry=registry,
)

# Queue Metrics
receive_failures = Counter(
    "docchain_receive_failures_total", "Failed queue receive calls", ["node"], registry=registry
)
batch_size = Histogram(
    "docchain_batch_size",
    "Items per received batch",
    ["node"],
    buckets=(1, 2, 5, 10, 25, 50, 100),
    registry=registry,
)

# Publication Metrics
events_published = Counter(
    "docchain_events_published_total", "Events published on node channels", ["channel"], registry=registry
)
publish_failures = Counter(
    "docchain_publish_failures_total", "Failed event publications", ["channel"], registry=registry
)


# Helper functions
def record_item_outcome(node: str, outcome: str, duration_seconds: float) -> None:
    """Record the outcome of one batch item"""
    items_processed.labels(node=node, outcome=outcome).inc()
    item_duration.labels(node=node).observe(duration_seconds)


def record_item_failed(node: str, error_type: str) -> None:
    """Record a failed batch item"""
    items_failed.labels(node=node, error_type=error_type).inc()


def record_dead_lettered(node: str) -> None:
    """Record an item moved to the dead-letter destination"""
    items_dead_lettered.labels(node=node).inc()


def record_receive_failure(node: str) -> None:
    """Record a failed receive call"""
    receive_failures.labels(node=node).inc()


def record_batch_received(node: str, size: int) -> None:
    """Record the size of a received batch"""
    batch_size.labels(node=node).observe(size)


def record_event_published(channel: str) -> None:
    """Record a published event"""
    events_published.labels(channel=channel).inc()


def record_publish_failure(channel: str) -> None:
    """Record a failed publication"""
    publish_failures.labels(channel=channel).inc()


def set_node_info(node: str, name: str, version: str) -> None:
    """Publish the identity of the middleware this process runs"""
    system_info.info({"node": node, "middleware": name, "version": version})


def _should_skip_metrics_server() -> bool:
    """Determine whether metrics server startup should be skipped."""

    if os.getenv("PROMETHEUS_DISABLE_SERVER", "").lower() in {"1", "true", "yes"}:
        return True

    if os.getenv("TESTING", "").lower() in {"1", "true", "yes"}:
        return True

    return False


def start_metrics_server(port: int = 9090) -> None:
    """Start Prometheus metrics server unless disabled or already running."""

    global _METRICS_SERVER_STARTED

    if _METRICS_SERVER_STARTED:
        return

    if _should_skip_metrics_server():
        logger.info("Prometheus metrics server startup skipped for testing environment")
        _METRICS_SERVER_STARTED = True
        return

    try:
        start_http_server(port, registry=registry)
        logger.info("Metrics server started on port %s", port)
        _METRICS_SERVER_STARTED = True
    except OSError as exc:
        logger.warning("Failed to start metrics server on port %s: %s", port, exc)


__all__ = [
    "registry",
    "system_info",
    "items_processed",
    "items_failed",
    "items_dead_lettered",
    "items_in_flight",
    "item_duration",
    "receive_failures",
    "batch_size",
    "events_published",
    "publish_failures",
    "record_item_outcome",
    "record_item_failed",
    "record_dead_lettered",
    "record_receive_failure",
    "record_batch_received",
    "record_event_published",
    "record_publish_failure",
    "set_node_info",
    "start_metrics_server",
]
