"""
Admin CLI for GraphSync.

Commands:
- export:  Write a full NDJSON export of watched kinds from the event source
- extract: Run the parallel bulk extractor on an export
- load:    Load extracted tables into the graph store
- sweep:   Run one comparison sweep
- process: Drain the retry queue once (or reconcile a single key)
- enqueue: Write a marker for one key
- status:  Show queue depth, convergence lag and graph counts
- serve:   Run the sync service

Usage:
    graphsync export --output /var/lib/graphsync/bulk/export.ndjson
    graphsync extract --input export.ndjson --output-dir bulk/
    graphsync load --dir bulk/
    graphsync process --actor <pubkey> --kind 3

All commands read the same environment configuration as the service.

Invariants:
    - Tools work without a running server
    - Operations are idempotent; re-running any command is safe
    - Exit code is non-zero when the command did not complete
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any

from ..bulk import BulkExtractor, BulkLoader, export_to_file
from ..config import SyncConfig
from ..events import EventSource, create_event_source
from ..graph import GraphStore, create_graph_store
from ..queue import QueueKey, RetryQueue, create_retry_queue
from ..reconcile import ComparisonSweep, DiffApplyEngine, QueueConsumer
from ..relations import RelationRegistry, default_registry

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Backends opened for one command."""

    registry: RelationRegistry
    source: EventSource | None = None
    store: GraphStore | None = None
    queue: RetryQueue | None = None


class GraphSyncCLI:
    """Command implementations.

    Example:
        >>> cli = GraphSyncCLI(SyncConfig.from_env())
        >>> await cli.status()
        {'queue_depth': 0, ...}
    """

    def __init__(self, config: SyncConfig) -> None:
        self.config = config
        self.registry = default_registry(config.reconcile.watched_kinds)

    @asynccontextmanager
    async def open(
        self, source: bool = False, store: bool = False, queue: bool = False
    ) -> AsyncIterator[Components]:
        parts = Components(registry=self.registry)
        try:
            if source:
                parts.source = create_event_source(self.config)
                await parts.source.connect()
            if store:
                parts.store = create_graph_store(self.config)
                await parts.store.initialize()
            if queue:
                parts.queue = create_retry_queue(self.config)
                await parts.queue.initialize()
            yield parts
        finally:
            if parts.queue is not None:
                await parts.queue.close()
            if parts.store is not None:
                await parts.store.close()
            if parts.source is not None:
                await parts.source.close()

    def _engine(self, parts: Components) -> DiffApplyEngine:
        assert parts.source is not None and parts.store is not None
        return DiffApplyEngine(
            parts.source,
            parts.store,
            parts.registry,
            missing_event_policy=self.config.reconcile.missing_event_policy,
        )

    async def export(self, output: str) -> dict[str, Any]:
        async with self.open(source=True) as parts:
            assert parts.source is not None
            count = await export_to_file(parts.source, self.registry.kinds, output)
        return {"output": output, "events": count}

    def extract(self, input_path: str, output_dir: str, workers: int) -> dict[str, Any]:
        extractor = BulkExtractor(self.registry, output_dir, workers=workers)
        result = extractor.run(input_path)
        return asdict(result)

    async def load(self, output_dir: str) -> dict[str, Any]:
        async with self.open(store=True) as parts:
            assert parts.store is not None
            result = await BulkLoader(parts.store).load_dir(output_dir)
        return asdict(result)

    async def sweep(self) -> dict[str, Any]:
        async with self.open(source=True, store=True, queue=True) as parts:
            assert parts.source and parts.store and parts.queue
            sweep = ComparisonSweep(
                parts.source,
                parts.store,
                parts.queue,
                self.registry.kinds,
                batch_size=self.config.sweep.batch_size,
            )
            result = await sweep.run()
        return asdict(result)

    async def process(self, actor_key: str | None = None, kind: int | None = None) -> dict[str, Any]:
        async with self.open(source=True, store=True, queue=True) as parts:
            assert parts.queue is not None
            engine = self._engine(parts)
            if actor_key is not None and kind is not None:
                result = await engine.process_key(QueueKey(actor_key, kind))
                return {
                    "status": result.status.value,
                    "event_id": result.event_id,
                    "added": result.added,
                    "removed": result.removed,
                    "updated": result.updated,
                    "checkpoint_advanced": result.checkpoint_advanced,
                }
            consumer = QueueConsumer(
                parts.queue,
                engine,
                max_concurrent=self.config.queue.max_concurrent,
                alert_after_attempts=self.config.queue.alert_after_attempts,
            )
            pass_result = await consumer.run_once()
        return {
            "listed": pass_result.listed,
            "succeeded": pass_result.succeeded,
            "failed": pass_result.failed,
        }

    async def enqueue(self, actor_key: str, kind: int) -> dict[str, Any]:
        if kind not in self.registry:
            raise ValueError(f"Kind {kind} is not watched")
        async with self.open(queue=True) as parts:
            assert parts.queue is not None
            item = await parts.queue.enqueue_or_replace(QueueKey(actor_key, kind))
        return item.to_dict()

    async def status(self) -> dict[str, Any]:
        async with self.open(store=True, queue=True) as parts:
            assert parts.store is not None and parts.queue is not None
            oldest = await parts.queue.oldest_enqueued_at()
            return {
                "queue_depth": await parts.queue.depth(),
                "convergence_lag_seconds": round(time.time() - oldest, 3) if oldest else 0.0,
                "graph": await parts.store.stats(),
                "watched_kinds": self.registry.kinds,
            }


def _print(result: dict[str, Any]) -> None:
    print(json.dumps(result, indent=2, sort_keys=True, default=str))


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="GraphSync administration tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    export_parser = subparsers.add_parser("export", help="Export watched kinds to NDJSON")
    export_parser.add_argument("--output", "-o", required=True, help="Output NDJSON file")

    extract_parser = subparsers.add_parser("extract", help="Extract bulk tables from an export")
    extract_parser.add_argument("--input", "-i", required=True, help="NDJSON export file")
    extract_parser.add_argument("--output-dir", "-o", help="Directory for CSV tables")
    extract_parser.add_argument(
        "--workers", type=int, default=None, help="Worker processes (0 = cores - 1)"
    )

    load_parser = subparsers.add_parser("load", help="Load bulk tables into the graph store")
    load_parser.add_argument("--dir", "-d", help="Directory holding the CSV tables")

    subparsers.add_parser("sweep", help="Run one comparison sweep")

    process_parser = subparsers.add_parser("process", help="Drain the queue once")
    process_parser.add_argument("--actor", help="Reconcile only this actor key")
    process_parser.add_argument("--kind", type=int, help="Kind for --actor")

    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue one key")
    enqueue_parser.add_argument("--actor", required=True, help="Actor key")
    enqueue_parser.add_argument("--kind", type=int, required=True, help="Event kind")

    subparsers.add_parser("status", help="Show queue and graph status")
    subparsers.add_parser("serve", help="Run the sync service")

    args = parser.parse_args(argv)

    if args.command == "serve":
        from ..main import main as serve

        serve()
        return

    try:
        config = SyncConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.observability.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    cli = GraphSyncCLI(config)

    if args.command == "export":
        _print(asyncio.run(cli.export(args.output)))

    elif args.command == "extract":
        workers = args.workers if args.workers is not None else config.bulk.workers
        result = cli.extract(args.input, args.output_dir or config.bulk.output_dir, workers)
        _print(result)
        if not result["complete"]:
            print(
                f"Extraction incomplete: {result['processed_lines']} of "
                f"{result['total_lines']} lines processed",
                file=sys.stderr,
            )
            sys.exit(1)

    elif args.command == "load":
        _print(asyncio.run(cli.load(args.dir or config.bulk.output_dir)))

    elif args.command == "sweep":
        result = asyncio.run(cli.sweep())
        _print(result)
        if result["failed_batches"]:
            sys.exit(1)

    elif args.command == "process":
        if (args.actor is None) != (args.kind is None):
            parser.error("--actor and --kind must be given together")
        result = asyncio.run(cli.process(args.actor, args.kind))
        _print(result)
        if result.get("failed"):
            sys.exit(1)

    elif args.command == "enqueue":
        try:
            _print(asyncio.run(cli.enqueue(args.actor, args.kind)))
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    elif args.command == "status":
        _print(asyncio.run(cli.status()))


if __name__ == "__main__":
    main()
