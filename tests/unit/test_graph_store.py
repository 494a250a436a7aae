"""
Unit tests for the SQLite graph store.

Tests cover:
- Edge upsert, read and delete
- Monotonic checkpoints
- Actor key iteration
- Bulk load from CSV tables
"""

import csv
import os
import tempfile

import pytest

from socialgraph.graphsync.graph import Checkpoint, SqliteGraphStore


class TestSqliteGraphStore:
    """Tests for SqliteGraphStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        """Create an initialized store."""
        store = SqliteGraphStore(data_dir, wal_mode=False)
        await store.initialize()
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_upsert_and_read_edges(self, store):
        """Upserted edges are readable with their sub-type."""
        written = await store.upsert_edges("alice", "REPORTS", {"bob": "spam", "carol": None}, 100)

        assert written == 2
        assert await store.get_edge_targets("alice", "REPORTS") == {"bob": "spam", "carol": None}
        assert await store.get_edge_targets("alice", "FOLLOWS") == {}

        edges = await store.get_edges("alice", "REPORTS")
        assert [(e.target, e.timestamp) for e in edges] == [("bob", 100), ("carol", 100)]

    @pytest.mark.asyncio
    async def test_upsert_creates_nodes(self, store):
        """Source and target nodes exist after an upsert."""
        await store.upsert_edges("alice", "FOLLOWS", {"bob": None}, 100)

        stats = await store.stats()
        assert stats == {"nodes": 2, "edges": 1, "checkpoints": 0}

    @pytest.mark.asyncio
    async def test_upsert_updates_existing_edge(self, store):
        """Re-upserting an edge replaces sub-type and timestamp, never duplicates."""
        await store.upsert_edges("alice", "REPORTS", {"bob": "spam"}, 100)
        await store.upsert_edges("alice", "REPORTS", {"bob": "illegal"}, 200)

        edges = await store.get_edges("alice", "REPORTS")
        assert len(edges) == 1
        assert edges[0].subtype == "illegal"
        assert edges[0].timestamp == 200

    @pytest.mark.asyncio
    async def test_delete_edges(self, store):
        """Only the named edges are deleted; absent edges count zero."""
        await store.upsert_edges("alice", "FOLLOWS", {"bob": None, "carol": None}, 100)

        deleted = await store.delete_edges("alice", "FOLLOWS", ["bob", "zed"])

        assert deleted == 1
        assert await store.get_edge_targets("alice", "FOLLOWS") == {"carol": None}

    @pytest.mark.asyncio
    async def test_empty_writes_are_noops(self, store):
        assert await store.upsert_edges("alice", "FOLLOWS", {}, 100) == 0
        assert await store.delete_edges("alice", "FOLLOWS", []) == 0
        assert store.write_count == 0

    @pytest.mark.asyncio
    async def test_edge_types_are_independent(self, store):
        """Edges of one type never affect another type."""
        await store.upsert_edges("alice", "FOLLOWS", {"bob": None}, 100)
        await store.upsert_edges("alice", "MUTES", {"bob": None}, 100)

        await store.delete_edges("alice", "MUTES", ["bob"])

        assert await store.get_edge_targets("alice", "FOLLOWS") == {"bob": None}


class TestCheckpoints:
    """Tests for checkpoint monotonicity."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        store = SqliteGraphStore(data_dir, wal_mode=False)
        await store.initialize()
        return store

    @pytest.mark.asyncio
    async def test_first_checkpoint_is_set(self, store):
        assert await store.get_checkpoint("alice", 3) is None

        assert await store.set_checkpoint("alice", 3, "e1", 100) is True

        assert await store.get_checkpoint("alice", 3) == Checkpoint("e1", 100)

    @pytest.mark.asyncio
    async def test_checkpoint_never_moves_backwards(self, store):
        """An older event leaves the checkpoint untouched."""
        await store.set_checkpoint("alice", 3, "e2", 200)

        assert await store.set_checkpoint("alice", 3, "e1", 100) is False
        assert await store.set_checkpoint("alice", 3, "e2", 200) is False

        assert await store.get_checkpoint("alice", 3) == Checkpoint("e2", 200)

    @pytest.mark.asyncio
    async def test_equal_created_at_lowest_id_wins(self, store):
        await store.set_checkpoint("alice", 3, "bbb", 100)

        assert await store.set_checkpoint("alice", 3, "ccc", 100) is False
        assert await store.set_checkpoint("alice", 3, "aaa", 100) is True

        assert (await store.get_checkpoint("alice", 3)).event_id == "aaa"

    @pytest.mark.asyncio
    async def test_checkpoints_are_per_kind(self, store):
        await store.set_checkpoint("alice", 3, "f1", 100)
        await store.set_checkpoint("alice", 10000, "m1", 50)

        assert (await store.get_checkpoint("alice", 3)).event_id == "f1"
        assert (await store.get_checkpoint("alice", 10000)).event_id == "m1"

    @pytest.mark.asyncio
    async def test_get_checkpoints_batch(self, store):
        await store.set_checkpoint("alice", 3, "a1", 100)
        await store.set_checkpoint("bob", 3, "b1", 100)
        await store.set_checkpoint("bob", 10000, "b2", 100)

        checkpoints = await store.get_checkpoints(["alice", "bob", "carol"], 3)

        assert checkpoints == {"alice": Checkpoint("a1", 100), "bob": Checkpoint("b1", 100)}
        assert await store.get_checkpoints([], 3) == {}


class TestActorIteration:
    """Tests for iter_actor_keys."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.mark.asyncio
    async def test_batches_in_key_order(self, data_dir):
        store = SqliteGraphStore(data_dir, wal_mode=False)
        await store.initialize()
        await store.upsert_edges("dave", "FOLLOWS", {"alice": None, "carol": None}, 1)
        await store.set_checkpoint("bob", 3, "b1", 1)
        await store.set_checkpoint("erin", 3, "e1", 1)

        batches = [batch async for batch in store.iter_actor_keys(2)]

        assert batches == [["alice", "bob"], ["carol", "dave"], ["erin"]]

    @pytest.mark.asyncio
    async def test_empty_store_yields_nothing(self, data_dir):
        store = SqliteGraphStore(data_dir, wal_mode=False)
        await store.initialize()

        assert [batch async for batch in store.iter_actor_keys(10)] == []


class TestBulkLoad:
    """Tests for bulk_load."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @staticmethod
    def _write_csv(path, header, rows):
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(header)
            writer.writerows(rows)
        return path

    @pytest.mark.asyncio
    async def test_bulk_load_tables(self, data_dir):
        """Nodes, edges and the newest checkpoint per key are loaded."""
        nodes = self._write_csv(
            os.path.join(data_dir, "nodes.csv"),
            ["actorKey:ID"],
            [["alice"], ["bob"], ["carol"]],
        )
        rels = self._write_csv(
            os.path.join(data_dir, "relationships.csv"),
            [":START_ID", ":END_ID", ":TYPE", "subtype"],
            [
                ["alice", "bob", "FOLLOWS", ""],
                ["alice", "bob", "FOLLOWS", ""],
                ["alice", "carol", "REPORTS", "spam"],
            ],
        )
        events = self._write_csv(
            os.path.join(data_dir, "events.csv"),
            ["actorKey:ID", "kind:int", "eventId", "createdAt:long"],
            [
                ["alice", "3", "old", "100"],
                ["alice", "3", "new", "200"],
                ["alice", "1984", "r1", "150"],
                ["alice", "x", "bad", "1"],
            ],
        )

        store = SqliteGraphStore(os.path.join(data_dir, "db"), wal_mode=False)
        await store.initialize()
        result = await store.bulk_load(nodes, rels, events)

        assert result.nodes == 3
        assert result.edges == 3
        assert await store.get_edge_targets("alice", "FOLLOWS") == {"bob": None}
        assert await store.get_edge_targets("alice", "REPORTS") == {"carol": "spam"}
        assert (await store.get_checkpoint("alice", 3)) == Checkpoint("new", 200)
        assert (await store.get_checkpoint("alice", 1984)) == Checkpoint("r1", 150)
        assert (await store.get_edges("alice", "FOLLOWS"))[0].timestamp == 0
        assert (await store.stats())["edges"] == 2
