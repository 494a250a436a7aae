"""
Unit tests for retry queue backends.

Tests cover:
- Coalescing: one marker per key
- Token-guarded acknowledgement
- Attempt counting
- Crash-safe listing
- Corrupt marker quarantine (directory backend)
"""

import json
import tempfile

import pytest

from socialgraph.graphsync.errors import QueueCorruptionError
from socialgraph.graphsync.queue import (
    DirectoryRetryQueue,
    QueueItem,
    QueueKey,
    SqliteRetryQueue,
)


class TestQueueKey:
    """Tests for QueueKey naming."""

    def test_name_round_trip(self):
        key = QueueKey("alice", 10000)
        assert key.name == "alice_10000"
        assert QueueKey.parse(key.name) == key

    @pytest.mark.parametrize("actor_key", ["", "a/b", "a_b", "../etc"])
    def test_rejects_unsafe_actor_keys(self, actor_key):
        with pytest.raises(ValueError):
            QueueKey(actor_key, 3)

    @pytest.mark.parametrize("name", ["alice", "alice_", "alice_x3", "_3"])
    def test_parse_rejects_non_marker_names(self, name):
        with pytest.raises(QueueCorruptionError):
            QueueKey.parse(name)

    def test_item_dict_round_trip(self):
        item = QueueItem(QueueKey("alice", 3), attempts=2, last_error="boom")
        assert QueueItem.from_dict(item.to_dict()) == item


@pytest.fixture(params=["directory", "sqlite"])
async def queue(request):
    """Each test below runs against both backends."""
    with tempfile.TemporaryDirectory() as tmpdir:
        if request.param == "directory":
            q = DirectoryRetryQueue(tmpdir)
        else:
            q = SqliteRetryQueue(tmpdir, wal_mode=False)
        await q.initialize()
        yield q
        await q.close()


class TestRetryQueue:
    """Behaviour shared by every backend."""

    @pytest.mark.asyncio
    async def test_enqueue_coalesces_per_key(self, queue):
        """N enqueues of one key leave one marker."""
        key = QueueKey("alice", 3)
        for _ in range(5):
            await queue.enqueue_or_replace(key)
        await queue.enqueue_or_replace(QueueKey("alice", 10000))

        pending = await queue.list_pending()

        assert sorted(i.key for i in pending) == [QueueKey("alice", 3), QueueKey("alice", 10000)]
        assert await queue.depth() == 2

    @pytest.mark.asyncio
    async def test_replace_issues_new_token_keeps_age(self, queue):
        key = QueueKey("alice", 3)
        first = await queue.enqueue_or_replace(key)
        second = await queue.enqueue_or_replace(key)

        assert second.token != first.token
        assert second.enqueued_at == first.enqueued_at

    @pytest.mark.asyncio
    async def test_ack_removes_marker(self, queue):
        item = await queue.enqueue_or_replace(QueueKey("alice", 3))

        assert await queue.ack(item) is True
        assert await queue.list_pending() == []
        assert await queue.ack(item) is False

    @pytest.mark.asyncio
    async def test_ack_keeps_marker_replaced_during_processing(self, queue):
        """A newer write survives acknowledgement of the older claim."""
        key = QueueKey("alice", 3)
        claimed = await queue.enqueue_or_replace(key)
        await queue.enqueue_or_replace(key)

        assert await queue.ack(claimed) is False
        assert [i.key for i in await queue.list_pending()] == [key]

    @pytest.mark.asyncio
    async def test_record_failure_counts_attempts(self, queue):
        key = QueueKey("alice", 3)
        item = await queue.enqueue_or_replace(key)

        assert await queue.record_failure(item, "relay down") == 1
        assert await queue.record_failure(item, "relay still down") == 2

        [pending] = await queue.list_pending()
        assert pending.attempts == 2
        assert pending.last_error == "relay still down"

    @pytest.mark.asyncio
    async def test_replace_preserves_attempts(self, queue):
        key = QueueKey("alice", 3)
        item = await queue.enqueue_or_replace(key)
        await queue.record_failure(item, "boom")

        replaced = await queue.enqueue_or_replace(key)

        assert replaced.attempts == 1

    @pytest.mark.asyncio
    async def test_listing_oldest_first(self, queue):
        await queue.enqueue_or_replace(QueueKey("bob", 3))
        await queue.enqueue_or_replace(QueueKey("alice", 3))

        pending = await queue.list_pending()

        assert pending[0].enqueued_at <= pending[1].enqueued_at
        assert await queue.oldest_enqueued_at() == pending[0].enqueued_at

    @pytest.mark.asyncio
    async def test_empty_queue(self, queue):
        assert await queue.depth() == 0
        assert await queue.oldest_enqueued_at() is None


class TestQueueDurability:
    """Markers survive a new queue instance on the same storage."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", [DirectoryRetryQueue, SqliteRetryQueue])
    async def test_restart_resumes_pending(self, backend):
        with tempfile.TemporaryDirectory() as tmpdir:
            first = backend(tmpdir)
            await first.initialize()
            item = await first.enqueue_or_replace(QueueKey("alice", 3))
            await first.record_failure(item, "boom")

            second = backend(tmpdir)
            await second.initialize()
            [pending] = await second.list_pending()

            assert pending.key == QueueKey("alice", 3)
            assert pending.attempts == 1
            assert await second.ack(pending) is True


class TestDirectoryQueueCorruption:
    """Tests for unreadable markers in the directory backend."""

    @pytest.fixture
    async def queue(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            q = DirectoryRetryQueue(tmpdir)
            await q.initialize()
            yield q

    @pytest.mark.asyncio
    async def test_corrupt_marker_is_quarantined(self, queue):
        """A bad file is moved aside; other markers still list."""
        await queue.enqueue_or_replace(QueueKey("alice", 3))
        (queue.queue_dir / "bob_3.json").write_text("{not json", encoding="utf-8")

        pending = await queue.list_pending()

        assert [i.key for i in pending] == [QueueKey("alice", 3)]
        assert not (queue.queue_dir / "bob_3.json").exists()
        assert len(queue.quarantined()) == 1
        assert queue.quarantined()[0].startswith("bob_3.json.")

    @pytest.mark.asyncio
    async def test_bad_file_name_is_quarantined(self, queue):
        (queue.queue_dir / "garbage.json").write_text("{}", encoding="utf-8")

        assert await queue.list_pending() == []
        assert len(queue.quarantined()) == 1

    @pytest.mark.asyncio
    async def test_mismatched_content_is_quarantined(self, queue):
        marker = {"actorKey": "carol", "kind": 3, "token": "t", "enqueuedAt": 1.0}
        (queue.queue_dir / "bob_3.json").write_text(json.dumps(marker), encoding="utf-8")

        assert await queue.list_pending() == []
        assert len(queue.quarantined()) == 1

    @pytest.mark.asyncio
    async def test_empty_marker_file_is_read_from_its_name(self, queue):
        """A zero-byte marker is a valid trigger."""
        (queue.queue_dir / "bob_10000.json").write_text("", encoding="utf-8")

        [item] = await queue.list_pending()

        assert item.key == QueueKey("bob", 10000)
        assert item.attempts == 0
        assert await queue.ack(item) is True
        assert await queue.depth() == 0

    @pytest.mark.asyncio
    async def test_enqueue_over_corrupt_marker(self, queue):
        (queue.queue_dir / "bob_3.json").write_text("[]", encoding="utf-8")

        item = await queue.enqueue_or_replace(QueueKey("bob", 3))

        assert item.attempts == 0
        assert [i.token for i in await queue.list_pending()] == [item.token]
        assert len(queue.quarantined()) == 1

    @pytest.mark.asyncio
    async def test_temp_files_are_not_listed(self, queue):
        (queue.queue_dir / ".alice_3.abc.tmp").write_text("{", encoding="utf-8")

        assert await queue.list_pending() == []
        assert await queue.depth() == 0
