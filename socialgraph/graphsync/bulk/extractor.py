"""
Parallel bulk extractor for GraphSync.

Turns a full NDJSON export of watched-kind events into three normalized
CSV tables for a bulk loader, bypassing the incremental path:

    nodes.csv          actorKey:ID
    relationships.csv  :START_ID,:END_ID,:TYPE,subtype
    events.csv         actorKey:ID,kind:int,eventId,createdAt:long

Headers follow the neo4j-admin import format.

Run layout:
    1. Count lines (progress and chunk sizing)
    2. chunk_size = ceil(total / workers), workers = max(1, cores - 1)
    3. Stream the file again; each full chunk goes to the worker pool
    4. extract_chunk() parses a chunk and returns one ChunkResult
    5. The coordinator appends each result to the output files as it
       arrives and adds its actor keys to the run's dedup set
    6. When every dispatched chunk is accounted for, write nodes.csv

Invariants:
    - extract_chunk() is a pure function; workers share nothing
    - The coordinator is the only writer of output files
    - Malformed lines are skipped and counted, never fatal
    - A failed chunk makes the run incomplete (processed < total); it is
      not retried. Re-running the whole extraction is always safe
    - Relationship rows are one per tag occurrence, repeats included

How to change safely:
    - Keep per-run state on ExtractionState, never at module level
    - The actor dedup set grows with the corpus; its size is logged
"""

from __future__ import annotations

import csv
import logging
import math
import os
import time
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Executor, Future, ProcessPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import MalformedEventError
from ..events.base import Event
from ..relations import RelationKind, RelationRegistry

logger = logging.getLogger(__name__)

NODES_FILE = "nodes.csv"
RELATIONSHIPS_FILE = "relationships.csv"
EVENTS_FILE = "events.csv"

NODES_HEADER = ["actorKey:ID"]
RELATIONSHIPS_HEADER = [":START_ID", ":END_ID", ":TYPE", "subtype"]
EVENTS_HEADER = ["actorKey:ID", "kind:int", "eventId", "createdAt:long"]


@dataclass
class ChunkResult:
    """Everything one worker extracted from one chunk.

    Attributes:
        chunk_index: Position of the chunk in the input
        lines: Lines in the chunk
        malformed: Lines skipped as unparseable
        ignored: Valid events of unwatched kinds
        actor_keys: Distinct authors and targets seen
        relationships: (source, target, edge_type, subtype) per tag occurrence
        events: (actor_key, kind, event_id, created_at) per event
    """

    chunk_index: int
    lines: int = 0
    malformed: int = 0
    ignored: int = 0
    actor_keys: set[str] = field(default_factory=set)
    relationships: list[tuple[str, str, str, str]] = field(default_factory=list)
    events: list[tuple[str, int, str, int]] = field(default_factory=list)


def extract_chunk(
    chunk_index: int, lines: list[str], relations: tuple[RelationKind, ...]
) -> ChunkResult:
    """Parse one chunk of NDJSON lines. Runs in a worker process."""
    by_kind = {r.kind: r for r in relations}
    result = ChunkResult(chunk_index=chunk_index, lines=len(lines))

    for line in lines:
        try:
            event = Event.from_json(line)
        except MalformedEventError:
            result.malformed += 1
            continue

        relation = by_kind.get(event.kind)
        if relation is None:
            result.ignored += 1
            continue

        result.actor_keys.add(event.actor_key)
        result.events.append((event.actor_key, event.kind, event.id, event.created_at))
        for target, subtype in relation.iter_targets(event):
            result.actor_keys.add(target)
            result.relationships.append(
                (event.actor_key, target, relation.edge_type, subtype or "")
            )

    return result


@dataclass
class ExtractionState:
    """Mutable state of one extraction run.

    Created per run() call and discarded with it.
    """

    total_lines: int = 0
    chunk_size: int = 0
    dispatched_chunks: int = 0
    completed_chunks: int = 0
    failed_chunks: list[int] = field(default_factory=list)
    processed_lines: int = 0
    malformed_lines: int = 0
    ignored_events: int = 0
    events_written: int = 0
    relationships_written: int = 0
    actor_keys: set[str] = field(default_factory=set)

    @property
    def complete(self) -> bool:
        return (
            self.dispatched_chunks == self.completed_chunks + len(self.failed_chunks)
            and not self.failed_chunks
            and self.processed_lines == self.total_lines
        )

    def absorb(self, chunk: ChunkResult) -> None:
        self.completed_chunks += 1
        self.processed_lines += chunk.lines
        self.malformed_lines += chunk.malformed
        self.ignored_events += chunk.ignored
        self.events_written += len(chunk.events)
        self.relationships_written += len(chunk.relationships)
        self.actor_keys |= chunk.actor_keys


@dataclass
class BulkResult:
    """Summary of a finished extraction run."""

    output_dir: str
    complete: bool
    total_lines: int
    processed_lines: int
    malformed_lines: int
    nodes: int
    relationships: int
    events: int
    failed_chunks: list[int]
    duration_seconds: float

    @property
    def nodes_path(self) -> str:
        return os.path.join(self.output_dir, NODES_FILE)

    @property
    def relationships_path(self) -> str:
        return os.path.join(self.output_dir, RELATIONSHIPS_FILE)

    @property
    def events_path(self) -> str:
        return os.path.join(self.output_dir, EVENTS_FILE)


def default_worker_count() -> int:
    return max(1, (os.cpu_count() or 1) - 1)


class BulkExtractor:
    """Coordinates a parallel extraction run.

    Example:
        >>> extractor = BulkExtractor(default_registry(), "/var/lib/graphsync/bulk")
        >>> result = extractor.run("/tmp/export.ndjson")
        >>> result.complete
        True
    """

    def __init__(
        self,
        registry: RelationRegistry,
        output_dir: str,
        workers: int = 0,
        max_chunk_size: int | None = None,
        executor_factory: Callable[[int], Executor] | None = None,
    ) -> None:
        """Initialize the extractor.

        Args:
            registry: Relation kinds to extract
            output_dir: Directory for the three CSV tables
            workers: Worker count (0 = cores - 1, minimum 1)
            max_chunk_size: Upper bound on lines per chunk (None = no bound)
            executor_factory: Builds the pool from a worker count
                (ProcessPoolExecutor by default)
        """
        self.relations = tuple(registry)
        self.output_dir = Path(output_dir)
        self.workers = workers if workers > 0 else default_worker_count()
        self.max_chunk_size = max_chunk_size
        self.executor_factory = executor_factory or (
            lambda n: ProcessPoolExecutor(max_workers=n)
        )

    def run(self, input_path: str) -> BulkResult:
        """Extract an NDJSON export into the output directory."""
        started = time.monotonic()
        state = ExtractionState()
        state.total_lines = _count_lines(input_path)
        state.chunk_size = max(1, math.ceil(state.total_lines / self.workers))
        if self.max_chunk_size:
            state.chunk_size = min(state.chunk_size, self.max_chunk_size)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        logger.info(
            "Starting bulk extraction",
            extra={
                "input_path": input_path,
                "total_lines": state.total_lines,
                "workers": self.workers,
                "chunk_size": state.chunk_size,
            },
        )

        rel_path = self.output_dir / RELATIONSHIPS_FILE
        events_path = self.output_dir / EVENTS_FILE
        with open(rel_path, "w", newline="", encoding="utf-8") as rel_f, open(
            events_path, "w", newline="", encoding="utf-8"
        ) as events_f:
            rel_writer = csv.writer(rel_f)
            events_writer = csv.writer(events_f)
            rel_writer.writerow(RELATIONSHIPS_HEADER)
            events_writer.writerow(EVENTS_HEADER)

            def on_result(chunk: ChunkResult) -> None:
                rel_writer.writerows(chunk.relationships)
                events_writer.writerows(chunk.events)
                state.absorb(chunk)
                logger.info(
                    "Chunk extracted",
                    extra={
                        "chunk_index": chunk.chunk_index,
                        "processed_lines": state.processed_lines,
                        "total_lines": state.total_lines,
                    },
                )

            self._dispatch(input_path, state, on_result)

        self._write_nodes(state.actor_keys)

        result = BulkResult(
            output_dir=str(self.output_dir),
            complete=state.complete,
            total_lines=state.total_lines,
            processed_lines=state.processed_lines,
            malformed_lines=state.malformed_lines,
            nodes=len(state.actor_keys),
            relationships=state.relationships_written,
            events=state.events_written,
            failed_chunks=sorted(state.failed_chunks),
            duration_seconds=time.monotonic() - started,
        )
        extra = {
            "complete": result.complete,
            "total_lines": result.total_lines,
            "processed_lines": result.processed_lines,
            "malformed_lines": result.malformed_lines,
            "nodes": result.nodes,
            "relationships": result.relationships,
            "events": result.events,
            "actor_set_size": len(state.actor_keys),
            "duration_seconds": round(result.duration_seconds, 3),
        }
        if result.complete:
            logger.info("Bulk extraction complete", extra=extra)
        else:
            logger.error(
                "Bulk extraction incomplete; re-run before loading",
                extra={**extra, "failed_chunks": result.failed_chunks, "alert": True},
            )
        return result

    def _dispatch(
        self,
        input_path: str,
        state: ExtractionState,
        on_result: Callable[[ChunkResult], None],
    ) -> None:
        max_in_flight = self.workers * 2
        pending: dict[Future, int] = {}

        def drain(return_when: str) -> None:
            done, _ = wait(pending, return_when=return_when)
            for future in done:
                chunk_index = pending.pop(future)
                try:
                    chunk = future.result()
                except Exception as e:
                    state.failed_chunks.append(chunk_index)
                    logger.error(
                        f"Chunk extraction failed: {e}",
                        extra={"chunk_index": chunk_index},
                    )
                    continue
                on_result(chunk)

        with self.executor_factory(self.workers) as executor:
            for chunk_index, lines in enumerate(_iter_chunks(input_path, state.chunk_size)):
                future = executor.submit(extract_chunk, chunk_index, lines, self.relations)
                pending[future] = chunk_index
                state.dispatched_chunks += 1
                if len(pending) >= max_in_flight:
                    drain(FIRST_COMPLETED)
            while pending:
                drain(FIRST_COMPLETED)

    def _write_nodes(self, actor_keys: Iterable[str]) -> None:
        with open(self.output_dir / NODES_FILE, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(NODES_HEADER)
            for key in sorted(actor_keys):
                writer.writerow([key])


def _count_lines(path: str) -> int:
    count = 0
    with open(path, "rb") as f:
        for _ in f:
            count += 1
    return count


def _iter_chunks(path: str, chunk_size: int):
    chunk: list[str] = []
    # Split on "\n" only, like _count_lines; a bare "\r" is JSON whitespace
    with open(path, encoding="utf-8", errors="replace", newline="\n") as f:
        for line in f:
            chunk.append(line)
            if len(chunk) >= chunk_size:
                yield chunk
                chunk = []
    if chunk:
        yield chunk
