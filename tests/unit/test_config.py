"""
Unit tests for environment configuration.
"""

import pytest

from socialgraph.graphsync.config import (
    EventSourceBackend,
    GraphBackend,
    MissingEventPolicy,
    QueueBackend,
    SyncConfig,
)


class TestSyncConfig:
    """Tests for SyncConfig.from_env."""

    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))

        config = SyncConfig.from_env()

        assert config.event_source == EventSourceBackend.RELAY
        assert config.graph_backend == GraphBackend.SQLITE
        assert config.queue_backend == QueueBackend.DIRECTORY
        assert config.reconcile.watched_kinds == (3, 10000, 1984)
        assert config.reconcile.missing_event_policy == MissingEventPolicy.NOOP
        assert config.queue.max_concurrent == 5
        assert config.http.port == 8081

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("EVENT_SOURCE", "memory")
        monkeypatch.setenv("QUEUE_BACKEND", "SQLITE")
        monkeypatch.setenv("WATCHED_KINDS", "3, 10000")
        monkeypatch.setenv("MISSING_EVENT_POLICY", "revoke")
        monkeypatch.setenv("QUEUE_MAX_CONCURRENT", "8")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("BULK_WORKERS", "3")

        config = SyncConfig.from_env()

        assert config.event_source == EventSourceBackend.MEMORY
        assert config.queue_backend == QueueBackend.SQLITE
        assert config.reconcile.watched_kinds == (3, 10000)
        assert config.reconcile.missing_event_policy == MissingEventPolicy.REVOKE
        assert config.queue.max_concurrent == 8
        assert config.storage.wal_mode is False
        assert config.bulk.workers == 3

    def test_invalid_enum(self, monkeypatch):
        monkeypatch.setenv("GRAPH_BACKEND", "postgres")

        with pytest.raises(ValueError, match="GRAPH_BACKEND"):
            SyncConfig.from_env()

    def test_invalid_relay_url(self, monkeypatch):
        monkeypatch.setenv("RELAY_URL", "http://relay.example")

        with pytest.raises(ValueError, match="RELAY_URL"):
            SyncConfig.from_env()

    def test_relay_url_not_checked_for_memory_source(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("EVENT_SOURCE", "memory")
        monkeypatch.setenv("RELAY_URL", "not-a-url")

        assert SyncConfig.from_env().event_source == EventSourceBackend.MEMORY

    @pytest.mark.parametrize(
        "name,value",
        [
            ("WATCHED_KINDS", "3,follows"),
            ("WATCHED_KINDS", ""),
            ("QUEUE_MAX_CONCURRENT", "0"),
            ("SWEEP_BATCH_SIZE", "0"),
            ("BULK_WORKERS", "-1"),
        ],
    )
    def test_invalid_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ValueError):
            SyncConfig.from_env()

    def test_missing_data_dir_only_warns(self, monkeypatch, tmp_path, caplog):
        monkeypatch.setenv("DATA_DIR", str(tmp_path / "missing"))

        with caplog.at_level("WARNING"):
            SyncConfig.from_env()

        assert "Data directory does not exist" in caplog.text

    def test_log_config_redacts_password(self, monkeypatch, tmp_path, caplog):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("GRAPH_BACKEND", "neo4j")
        monkeypatch.setenv("NEO4J_PASSWORD", "hunter2")
        config = SyncConfig.from_env()
        assert config.neo4j.password == "hunter2"

        with caplog.at_level("INFO"):
            config.log_config()

        record = caplog.records[-1]
        assert record.neo4j_uri == "bolt://localhost:7687"
        assert "hunter2" not in caplog.text
        assert "hunter2" not in str(record.__dict__)
