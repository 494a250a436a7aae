"""
Integration tests for the admin CLI commands.
"""

import os
import tempfile

import pytest

from socialgraph.graphsync.config import (
    BulkConfig,
    EventSourceBackend,
    QueueConfig,
    StorageConfig,
    SyncConfig,
)
from socialgraph.graphsync.tools import GraphSyncCLI
from tests.factories import make_event


@pytest.fixture
def config():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield SyncConfig(
            event_source=EventSourceBackend.MEMORY,
            storage=StorageConfig(data_dir=tmpdir, wal_mode=False),
            queue=QueueConfig(queue_dir=os.path.join(tmpdir, "queue")),
            bulk=BulkConfig(output_dir=os.path.join(tmpdir, "bulk"), workers=1),
        )


class TestGraphSyncCLI:
    """Tests for GraphSyncCLI."""

    @pytest.mark.asyncio
    async def test_enqueue_then_status(self, config):
        cli = GraphSyncCLI(config)

        marker = await cli.enqueue("alice", 3)
        status = await cli.status()

        assert marker["actorKey"] == "alice"
        assert status["queue_depth"] == 1
        assert status["graph"] == {"nodes": 0, "edges": 0, "checkpoints": 0}

    @pytest.mark.asyncio
    async def test_enqueue_unwatched_kind(self, config):
        with pytest.raises(ValueError):
            await GraphSyncCLI(config).enqueue("alice", 7)

    @pytest.mark.asyncio
    async def test_process_drains_queue(self, config):
        cli = GraphSyncCLI(config)
        await cli.enqueue("alice", 3)

        result = await cli.process()

        # The in-memory source starts empty, so the key resolves as missing
        assert result == {"listed": 1, "succeeded": 1, "failed": 0}
        assert (await cli.status())["queue_depth"] == 0

    @pytest.mark.asyncio
    async def test_extract_and_load(self, config):
        export = os.path.join(config.bulk.output_dir, "export.ndjson")
        os.makedirs(config.bulk.output_dir)
        with open(export, "w", encoding="utf-8") as f:
            f.write(make_event("alice", 3, 100, ["bob"]).to_json() + "\n")
        cli = GraphSyncCLI(config)

        extracted = cli.extract(export, config.bulk.output_dir, workers=1)
        loaded = await cli.load(config.bulk.output_dir)
        status = await cli.status()

        assert extracted["complete"] is True
        assert loaded["checkpoints"] == 1
        assert status["graph"] == {"nodes": 2, "edges": 1, "checkpoints": 1}
