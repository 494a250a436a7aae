"""
Integration tests for the comparison sweep.

Tests cover:
- Enqueueing keys whose checkpoint is missing or differs
- Leaving converged keys alone
- Batch failures are counted and skipped
- Sweep plus consumer repairs a missed live update
"""

import tempfile

import pytest

from socialgraph.graphsync.errors import TransientIOError
from socialgraph.graphsync.events import InMemoryEventSource
from socialgraph.graphsync.graph import SqliteGraphStore
from socialgraph.graphsync.queue import DirectoryRetryQueue, QueueKey
from socialgraph.graphsync.reconcile import ComparisonSweep, DiffApplyEngine, QueueConsumer
from socialgraph.graphsync.relations import default_registry
from tests.factories import make_event


class FlakyIdSource(InMemoryEventSource):
    """Source whose batched lookup fails for one named actor."""

    failing_actor = None

    async def get_latest_ids(self, actor_keys, kind):
        if self.failing_actor in actor_keys:
            raise TransientIOError("Injected batch failure", backend="memory")
        return await super().get_latest_ids(actor_keys, kind)


class FullDiskQueue(DirectoryRetryQueue):
    """Queue whose marker writes fail for one named actor."""

    failing_actor = None

    async def enqueue_or_replace(self, key):
        if key.actor_key == self.failing_actor:
            raise OSError(28, "No space left on device")
        return await super().enqueue_or_replace(key)


@pytest.fixture
def data_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
async def source():
    src = FlakyIdSource()
    await src.connect()
    yield src
    await src.close()


@pytest.fixture
async def store(data_dir):
    s = SqliteGraphStore(data_dir, wal_mode=False)
    await s.initialize()
    return s


@pytest.fixture
async def queue(data_dir):
    q = FullDiskQueue(f"{data_dir}/queue")
    await q.initialize()
    return q


class TestComparisonSweep:
    """Tests for ComparisonSweep.run."""

    @pytest.mark.asyncio
    async def test_enqueues_lagging_keys(self, source, store, queue):
        # alice: converged; bob: checkpoint behind; carol: no checkpoint; dave: nothing upstream
        await store.set_checkpoint("alice", 3, "a1", 100)
        await store.set_checkpoint("bob", 3, "b1", 100)
        await store.upsert_edges("carol", "FOLLOWS", {"dave": None}, 1)
        await source.publish(make_event("alice", 3, 100, event_id="a1"))
        await source.publish(make_event("bob", 3, 200, event_id="b2"))
        await source.publish(make_event("carol", 3, 100, event_id="c1"))

        sweep = ComparisonSweep(source, store, queue, [3], batch_size=1)
        result = await sweep.run()

        assert result.actors_scanned == 4
        assert result.keys_compared == 4
        assert result.enqueued == 2
        keys = sorted(i.key for i in await queue.list_pending())
        assert keys == [QueueKey("bob", 3), QueueKey("carol", 3)]

    @pytest.mark.asyncio
    async def test_checks_every_watched_kind(self, source, store, queue):
        await store.set_checkpoint("alice", 3, "f1", 100)
        await source.publish(make_event("alice", 3, 100, event_id="f1"))
        await source.publish(make_event("alice", 10000, 100, event_id="m1"))

        result = await ComparisonSweep(source, store, queue, [3, 10000]).run()

        assert result.keys_compared == 2
        assert [i.key for i in await queue.list_pending()] == [QueueKey("alice", 10000)]

    @pytest.mark.asyncio
    async def test_failed_batch_is_skipped(self, source, store, queue):
        for actor in ("alice", "bob", "carol"):
            await store.upsert_edges(actor, "FOLLOWS", {"zed": None}, 1)
            await source.publish(make_event(actor, 3, 100, ["zed"]))
        source.failing_actor = "bob"

        sweep = ComparisonSweep(source, store, queue, [3], batch_size=1)
        result = await sweep.run()

        assert result.failed_batches == 1
        keys = sorted(i.key for i in await queue.list_pending())
        assert keys == [QueueKey("alice", 3), QueueKey("carol", 3)]
        assert sweep.last_result is result
        assert sweep.stats["last_enqueued"] == 2

    @pytest.mark.asyncio
    async def test_failed_marker_write_skips_batch(self, source, store, queue):
        for actor in ("alice", "bob", "carol"):
            await store.upsert_edges(actor, "FOLLOWS", {"zed": None}, 1)
            await source.publish(make_event(actor, 3, 100, ["zed"]))
        queue.failing_actor = "bob"

        result = await ComparisonSweep(source, store, queue, [3], batch_size=1).run()

        assert result.failed_batches == 1
        assert result.enqueued == 2
        keys = sorted(i.key for i in await queue.list_pending())
        assert keys == [QueueKey("alice", 3), QueueKey("carol", 3)]

    @pytest.mark.asyncio
    async def test_sweep_repairs_missed_update(self, source, store, queue):
        """An update the live path never saw converges after sweep + drain."""
        engine = DiffApplyEngine(source, store, default_registry([3]))
        await source.publish(make_event("alice", 3, 100, ["bob"]))
        await queue.enqueue_or_replace(QueueKey("alice", 3))
        await QueueConsumer(queue, engine).run_once()

        await source.publish(make_event("alice", 3, 200, ["carol"]))
        await ComparisonSweep(source, store, queue, [3]).run()
        await QueueConsumer(queue, engine).run_once()

        assert await store.get_edge_targets("alice", "FOLLOWS") == {"carol": None}
        assert await queue.depth() == 0

    @pytest.mark.asyncio
    async def test_empty_graph(self, source, store, queue):
        sweep = ComparisonSweep(source, store, queue, [3])

        result = await sweep.run()

        assert result.actors_scanned == 0
        assert sweep.last_run_at is not None
