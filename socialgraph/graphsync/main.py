"""
GraphSync Server - Main entry point.

This module starts the sync service with all components:
- Coalescer loop (live subscription -> retry queue)
- Consumer loop (retry queue -> diff-and-apply -> graph store)
- Scheduler loop (system state -> sweeps, queue drains, rebuilds)
- Ops HTTP server (health, status, triggers)

Usage:
    python -m socialgraph.graphsync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The event source and graph store are connected before any loop starts
    - Restart needs no recovery step; the consumer re-lists the queue
    - Graceful shutdown cancels loops before closing backends

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from pathlib import Path

import json_log_formatter

from .api.http_server import run_http_server
from .api.servicer import SyncServicer
from .bulk import BulkExtractor, BulkLoader, export_to_file
from .config import SyncConfig
from .events import EventSource, create_event_source
from .graph import GraphStore, create_graph_store
from .ingest import Coalescer
from .queue import RetryQueue, create_retry_queue
from .reconcile import ComparisonSweep, DiffApplyEngine, QueueConsumer
from .relations import default_registry
from .schedule import ConvergencePolicy, SystemState, TaskScheduler, TaskType

logger = logging.getLogger(__name__)

SCHEDULER_TICK_SECONDS = 30.0


def setup_logging(config: SyncConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Sync configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("neo4j").setLevel(logging.WARNING)


class Server:
    """GraphSync service orchestrator.

    Manages the lifecycle of all components:
    - Event source connection
    - Graph store and retry queue
    - Background loops (coalescer, consumer, scheduler)
    - Ops HTTP server

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: SyncConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional configuration (loaded from env if not provided)
        """
        self.config = config or SyncConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.registry = default_registry(self.config.reconcile.watched_kinds)
        self.source: EventSource | None = None
        self.store: GraphStore | None = None
        self.queue: RetryQueue | None = None
        self.engine: DiffApplyEngine | None = None
        self.consumer: QueueConsumer | None = None
        self.coalescer: Coalescer | None = None
        self.sweep: ComparisonSweep | None = None
        self.scheduler: TaskScheduler | None = None
        self.servicer: SyncServicer | None = None

        self._last_rebuild_at: float | None = None
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting GraphSync server")
        self.config.log_config()

        try:
            data_dir = Path(self.config.storage.data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)

            self.source = create_event_source(self.config)
            await self.source.connect()

            self.store = create_graph_store(self.config)
            await self.store.initialize()

            self.queue = create_retry_queue(self.config)
            await self.queue.initialize()

            kinds = self.registry.kinds
            self.engine = DiffApplyEngine(
                self.source,
                self.store,
                self.registry,
                missing_event_policy=self.config.reconcile.missing_event_policy,
            )
            self.consumer = QueueConsumer(
                self.queue,
                self.engine,
                max_concurrent=self.config.queue.max_concurrent,
                poll_interval_seconds=self.config.queue.poll_interval_seconds,
                alert_after_attempts=self.config.queue.alert_after_attempts,
            )
            self.coalescer = Coalescer(self.source, self.queue, kinds)
            self.sweep = ComparisonSweep(
                self.source,
                self.store,
                self.queue,
                kinds,
                batch_size=self.config.sweep.batch_size,
            )
            self.scheduler = TaskScheduler(
                ConvergencePolicy(self.config.sweep.interval_seconds),
                queue_path=str(data_dir / "scheduler" / "priority_queue.json"),
            )
            self.servicer = SyncServicer(
                self.queue,
                self.store,
                self.scheduler,
                self.registry,
                stats_providers={
                    "engine": lambda: self.engine.stats,
                    "consumer": lambda: self.consumer.stats,
                    "coalescer": lambda: self.coalescer.stats,
                    "sweep": lambda: self.sweep.stats,
                },
                on_enqueue=self.consumer.notify,
            )

            self._tasks.append(asyncio.create_task(self.coalescer.start()))
            self._tasks.append(asyncio.create_task(self.consumer.start()))
            self._tasks.append(asyncio.create_task(self._schedule_loop()))
            if self.config.http.enabled:
                self._tasks.append(
                    asyncio.create_task(
                        run_http_server(self.servicer, self.config.http.host, self.config.http.port)
                    )
                )

            self._running = True
            logger.info("GraphSync server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping GraphSync server")

        if self.coalescer:
            await self.coalescer.stop()
        if self.consumer:
            await self.consumer.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.source:
            await self.source.close()
        if self.queue:
            await self.queue.close()
        if self.store:
            await self.store.close()

        self._running = False
        logger.info("GraphSync server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    async def gather_state(self) -> SystemState:
        assert self.queue is not None and self.store is not None and self.sweep is not None
        now = time.time()
        oldest = await self.queue.oldest_enqueued_at()
        stats = await self.store.stats()
        return SystemState(
            queue_depth=await self.queue.depth(),
            oldest_pending_age=now - oldest if oldest else None,
            last_sweep_at=self.sweep.last_run_at,
            last_rebuild_at=self._last_rebuild_at,
            graph_node_count=stats.get("nodes", 0),
            now=now,
        )

    async def _schedule_loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(SCHEDULER_TICK_SECONDS)

    async def tick(self) -> None:
        """Evaluate system state and run every task that is due.

        Never raises; a failed tick or task is logged and the next tick
        runs as usual.
        """
        assert self.scheduler is not None
        try:
            self.scheduler.evaluate(await self.gather_state())
        except Exception as e:
            logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            return
        while (task := self.scheduler.pop_next()) is not None:
            await self._run_task(task.type)

    async def _run_task(self, task_type: TaskType) -> None:
        logger.info("Running scheduled task", extra={"task_type": task_type.value})
        try:
            if task_type == TaskType.PROCESS_QUEUE:
                assert self.consumer is not None
                self.consumer.notify()
            elif task_type == TaskType.INCREMENTAL_SWEEP:
                assert self.sweep is not None
                await self.sweep.run()
            elif task_type == TaskType.FULL_REBUILD:
                await self.rebuild()
        except Exception as e:
            logger.error(
                f"Scheduled task failed: {e}",
                extra={"task_type": task_type.value},
                exc_info=True,
            )

    async def rebuild(self) -> bool:
        """Export, extract and load the whole corpus.

        Returns:
            True if the rebuild completed and was loaded
        """
        assert self.source is not None and self.store is not None
        output_dir = Path(self.config.bulk.output_dir)
        export_path = output_dir / "export.ndjson"

        await export_to_file(self.source, self.registry.kinds, str(export_path))
        extractor = BulkExtractor(self.registry, str(output_dir), workers=self.config.bulk.workers)
        result = await asyncio.to_thread(extractor.run, str(export_path))
        if not result.complete:
            return False

        await BulkLoader(self.store).load_result(result)
        self._last_rebuild_at = time.time()
        return True


def main() -> None:
    """Main entry point."""
    try:
        config = SyncConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
