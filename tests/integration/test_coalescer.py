"""
Integration tests for the ingestion coalescer.

Tests cover:
- Bursts of events for one key leave one marker
- The consumer applies the freshest event, not the triggering one
- Failed marker writes are dropped, not raised
- The loop ends with the subscription
"""

import asyncio
import tempfile

import pytest

from socialgraph.graphsync.events import InMemoryEventSource
from socialgraph.graphsync.graph import SqliteGraphStore
from socialgraph.graphsync.ingest import Coalescer
from socialgraph.graphsync.queue import DirectoryRetryQueue, QueueKey
from socialgraph.graphsync.reconcile import DiffApplyEngine, QueueConsumer
from socialgraph.graphsync.relations import default_registry
from tests.factories import make_event


class BrokenQueue(DirectoryRetryQueue):
    """Directory queue whose marker writes fail."""

    async def enqueue_or_replace(self, key):
        raise OSError("No space left on device")


@pytest.fixture
def data_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
async def source():
    src = InMemoryEventSource()
    await src.connect()
    yield src
    await src.close()


@pytest.fixture
async def queue(data_dir):
    q = DirectoryRetryQueue(f"{data_dir}/queue")
    await q.initialize()
    return q


class TestCoalescer:
    """Tests for Coalescer.handle."""

    @pytest.mark.asyncio
    async def test_burst_coalesces_to_one_marker(self, source, queue):
        coalescer = Coalescer(source, queue, [3, 10000])

        for ts in range(100, 150):
            assert await coalescer.handle(make_event("alice", 3, ts, [f"t{ts}"]))

        pending = await queue.list_pending()
        assert [i.key for i in pending] == [QueueKey("alice", 3)]
        assert coalescer.stats["written_count"] == 50

    @pytest.mark.asyncio
    async def test_consumer_applies_freshest_event(self, source, queue, data_dir):
        """Coalesced updates converge to the newest event's target set."""
        coalescer = Coalescer(source, queue, [3])
        for ts, targets in [(100, ["a"]), (200, ["a", "b"]), (300, ["c"])]:
            event = make_event("alice", 3, ts, targets)
            await source.publish(event)
            await coalescer.handle(event)

        store = SqliteGraphStore(data_dir, wal_mode=False)
        await store.initialize()
        engine = DiffApplyEngine(source, store, default_registry([3]))
        result = await QueueConsumer(queue, engine).run_once()

        assert result.succeeded == 1
        assert await store.get_edge_targets("alice", "FOLLOWS") == {"c": None}
        assert (await store.get_checkpoint("alice", 3)).created_at == 300

    @pytest.mark.asyncio
    async def test_unwatched_kind_is_ignored(self, source, queue):
        coalescer = Coalescer(source, queue, [3])

        assert await coalescer.handle(make_event("alice", 7, 100)) is False
        assert await queue.depth() == 0

    @pytest.mark.asyncio
    async def test_failed_write_is_dropped(self, source, data_dir):
        queue = BrokenQueue(f"{data_dir}/queue")
        coalescer = Coalescer(source, queue, [3])

        written = await coalescer.handle(make_event("alice", 3, 100))

        assert written is False
        assert coalescer.stats["dropped_count"] == 1

    @pytest.mark.asyncio
    async def test_invalid_actor_key_is_dropped(self, source, queue):
        coalescer = Coalescer(source, queue, [3])

        assert await coalescer.handle(make_event("../../etc", 3, 100)) is False
        assert coalescer.stats["dropped_count"] == 1
        assert await queue.depth() == 0


class TestCoalescerLoop:
    """Tests for the subscription loop."""

    @pytest.mark.asyncio
    async def test_live_events_become_markers(self, source, queue):
        coalescer = Coalescer(source, queue, [3, 10000])
        task = asyncio.create_task(coalescer.start())
        while source.subscriber_count() == 0:
            await asyncio.sleep(0)

        await source.publish(make_event("alice", 3, 100, ["bob"]))
        await source.publish(make_event("alice", 3, 101, ["carol"]))
        await source.publish(make_event("bob", 10000, 100, ["alice"]))
        await source.publish(make_event("bob", 1, 100))
        await source.close()
        await asyncio.wait_for(task, timeout=1)

        keys = sorted(i.key for i in await queue.list_pending())
        assert keys == [QueueKey("alice", 3), QueueKey("bob", 10000)]
        assert coalescer.stats["received_count"] == 3
        assert coalescer.stats["running"] is False
