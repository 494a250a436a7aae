"""
Integration tests for the ops HTTP server.

Tests cover:
- Health and status endpoints
- Sweep and rebuild triggers are scheduled, not run
- Manual enqueue and input validation
- Backend failures map to 503
"""

import tempfile

import pytest
from aiohttp import test_utils

from socialgraph.graphsync.api import SyncServicer, create_http_app
from socialgraph.graphsync.errors import TransientIOError
from socialgraph.graphsync.graph import SqliteGraphStore
from socialgraph.graphsync.queue import DirectoryRetryQueue, QueueKey
from socialgraph.graphsync.relations import default_registry
from socialgraph.graphsync.schedule import ConvergencePolicy, TaskScheduler, TaskType


class UnavailableStore(SqliteGraphStore):
    """Store whose reads fail as if the database were down."""

    async def stats(self):
        raise TransientIOError("Graph store unavailable", backend="sqlite")


class Setup:
    def __init__(self, data_dir, store_cls=SqliteGraphStore):
        self.store = store_cls(data_dir, wal_mode=False)
        self.queue = DirectoryRetryQueue(f"{data_dir}/queue")
        self.scheduler = TaskScheduler(ConvergencePolicy(3600))
        self.notified = 0
        self.servicer = SyncServicer(
            self.queue,
            self.store,
            self.scheduler,
            default_registry([3, 10000]),
            stats_providers={"consumer": lambda: {"passes": 7}},
            on_enqueue=self._notify,
        )

    def _notify(self):
        self.notified += 1

    async def client(self):
        await self.store.initialize()
        await self.queue.initialize()
        client = test_utils.TestClient(test_utils.TestServer(create_http_app(self.servicer)))
        await client.start_server()
        return client


@pytest.fixture
def data_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
async def setup(data_dir):
    s = Setup(data_dir)
    s.http = await s.client()
    yield s
    await s.http.close()


class TestOpsEndpoints:
    """Tests for the ops HTTP endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, setup):
        resp = await setup.http.get("/v1/health")

        assert resp.status == 200
        assert (await resp.json())["healthy"] is True

    @pytest.mark.asyncio
    async def test_status(self, setup):
        await setup.queue.enqueue_or_replace(QueueKey("alice", 3))
        await setup.store.upsert_edges("alice", "FOLLOWS", {"bob": None}, 100)

        resp = await setup.http.get("/v1/status")
        body = await resp.json()

        assert resp.status == 200
        assert body["queue_depth"] == 1
        assert body["convergence_lag_seconds"] >= 0
        assert body["graph"] == {"nodes": 2, "edges": 1, "checkpoints": 0}
        assert body["watched_kinds"] == [3, 10000]
        assert body["components"] == {"consumer": {"passes": 7}}

    @pytest.mark.asyncio
    async def test_sweep_is_scheduled(self, setup):
        resp = await setup.http.post("/v1/sweep", json={"reason": "operator"})

        assert resp.status == 202
        assert (await resp.json())["scheduled"]["type"] == "incremental_sweep"
        task = setup.scheduler.peek()
        assert task.type == TaskType.INCREMENTAL_SWEEP
        assert task.reason == "operator"

    @pytest.mark.asyncio
    async def test_rebuild_is_scheduled_without_body(self, setup):
        resp = await setup.http.post("/v1/rebuild")

        assert resp.status == 202
        assert setup.scheduler.peek().type == TaskType.FULL_REBUILD

    @pytest.mark.asyncio
    async def test_enqueue(self, setup):
        resp = await setup.http.post("/v1/queue", json={"actor_key": "alice", "kind": 3})

        assert resp.status == 202
        assert (await resp.json())["enqueued"]["actorKey"] == "alice"
        assert [i.key for i in await setup.queue.list_pending()] == [QueueKey("alice", 3)]
        assert setup.notified == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"kind": 3},
            {"actor_key": "alice"},
            {"actor_key": "alice", "kind": "3"},
            {"actor_key": "alice", "kind": 1984},
            {"actor_key": "a/b", "kind": 3},
            [1, 2],
        ],
    )
    async def test_enqueue_rejects_bad_input(self, setup, body):
        resp = await setup.http.post("/v1/queue", json=body)

        assert resp.status == 400
        assert await setup.queue.depth() == 0

    @pytest.mark.asyncio
    async def test_invalid_json(self, setup):
        resp = await setup.http.post(
            "/v1/sweep", data="{nope", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400


class TestBackendFailures:
    """Backend errors surface as 503."""

    @pytest.mark.asyncio
    async def test_unhealthy_store(self, data_dir):
        s = Setup(data_dir, store_cls=UnavailableStore)
        client = await s.client()
        try:
            health = await client.get("/v1/health")
            status = await client.get("/v1/status")

            assert health.status == 503
            assert (await health.json())["error_code"] == "TRANSIENT_IO"
            assert status.status == 503
        finally:
            await client.close()
