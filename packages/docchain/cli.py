"""CLI entry point for docchain workers."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from docchain.config import WorkerConfig
from docchain.errors import ConsumerHaltedError, DocchainError
from docchain.metrics import start_metrics_server
from docchain.nodes.registry import available_node_types, create_node
from docchain.transport.redis_streams import RedisTransport
from docchain.transport.storage import LocalObjectStorage
from docchain.worker import install_signal_handlers, run_worker


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="docchain", description="Docchain document pipeline workers")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run a node worker against Redis")
    run.add_argument(
        "--node-type",
        choices=available_node_types(),
        default=None,
        help="Type of node to run (or NODE_TYPE).",
    )
    run.add_argument("--node-id", default=None, help="Node ID (or NODE_ID).")
    run.add_argument(
        "--upstream",
        action="append",
        default=[],
        help="ID of a node whose events this node consumes. Can be provided multiple times.",
    )
    run.add_argument("--redis-url", default=None, help="Redis URL (or REDIS_URL).")
    run.add_argument("--storage-dir", default=None, help="Object storage directory (or STORAGE_DIR).")
    run.add_argument("--metrics-port", type=int, default=None, help="Prometheus metrics port (or METRICS_PORT).")
    run.add_argument("--log-level", default=None, help="Logging level (or LOG_LEVEL).")
    run.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output (sets log level to DEBUG, overrides --log-level).",
    )

    describe = subparsers.add_parser("describe", help="Print a node's capabilities and condition as JSON")
    describe.add_argument("--node-type", choices=available_node_types(), default=None, help="Type of node.")
    describe.add_argument("--node-id", default=None, help="Node ID (or NODE_ID).")

    return parser


def _load_config(args: argparse.Namespace) -> WorkerConfig:
    overrides: dict[str, Any] = {}
    for option, setting in (
        ("node_type", "NODE_TYPE"),
        ("node_id", "NODE_ID"),
        ("redis_url", "REDIS_URL"),
        ("storage_dir", "STORAGE_DIR"),
        ("metrics_port", "METRICS_PORT"),
        ("log_level", "LOG_LEVEL"),
    ):
        value = getattr(args, option, None)
        if value is not None:
            overrides[setting] = value
    return WorkerConfig(**overrides)


async def _run(config: WorkerConfig, upstream: list[str]) -> int:
    node = create_node(config.NODE_TYPE, config)
    storage = LocalObjectStorage(config.STORAGE_DIR)
    transport = RedisTransport.from_url(
        config.REDIS_URL,
        storage,
        group=config.CONSUMER_GROUP,
        max_receive_count=config.MAX_RECEIVE_COUNT,
    )
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    try:
        return await run_worker(node, transport, config, stop_event, upstream)
    finally:
        await transport.close()


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = _load_config(args)
    except ValueError as exc:
        parser.error(f"Invalid configuration: {exc}")

    if args.command == "describe":
        try:
            node = create_node(config.NODE_TYPE, config)
        except DocchainError as exc:
            parser.error(str(exc))
        print(json.dumps(node.to_dict(), indent=2))
        return

    if args.command != "run":
        raise SystemExit(f"Unknown command: {args.command}")

    # --verbose overrides --log-level
    log_level = "DEBUG" if args.verbose else config.LOG_LEVEL
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger = logging.getLogger(__name__)

    start_metrics_server(config.METRICS_PORT)

    try:
        handled = asyncio.run(_run(config, args.upstream))
    except KeyboardInterrupt:
        raise SystemExit(130) from None
    except ConsumerHaltedError as exc:
        logger.error("%s", exc)
        raise SystemExit(2) from exc
    except DocchainError as exc:
        logger.error("Worker failed: %s", exc)
        raise SystemExit(1) from exc
    except Exception as exc:
        logger.error("Worker failed: %s", exc, exc_info=True)
        raise SystemExit(1) from exc

    logger.info("Worker stopped after %d items", handled)


if __name__ == "__main__":  # pragma: no cover
    main(sys.argv[1:])
