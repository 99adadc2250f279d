"""Tests for the offline sync queue."""

from datetime import datetime, timezone

import pytest

from src.alert_engine.config import ConflictStrategy
from src.alert_engine.exceptions import ConflictError
from src.alert_engine.preferences import PreferencesStore
from src.alert_engine.sync import OfflineSyncQueue, merge_records

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeRemote:
    """Remote store that conflicts on chosen keys and fails on others."""

    def __init__(self, conflicts=None, failures=(), put_failures=()):
        self.records = {}
        self.conflicts = dict(conflicts or {})
        self.failures = set(failures)
        self.put_failures = set(put_failures)
        self.pushes = []

    def push(self, key, data, operation):
        self.pushes.append(key)
        if key in self.failures:
            raise ConnectionError("remote unreachable")
        if key in self.conflicts:
            raise ConflictError("changed remotely", key=key, server_data=self.conflicts[key])
        self.records[key] = dict(data)

    def put(self, key, data):
        if key in self.put_failures:
            raise RuntimeError("network down")
        self.records[key] = dict(data)


def _queue(strategy=ConflictStrategy.MERGE, **kwargs):
    return OfflineSyncQueue(strategy=strategy, clock=lambda: NOW, **kwargs)


class TestMergeRecords:
    def test_local_wins_and_keeps_server_created_at(self):
        merged = merge_records(
            {"title": "local", "created_at": "2024-01-01T10:00:00"},
            {"title": "server", "owner": "bob", "created_at": "2023-12-31T09:00:00"},
            NOW,
        )
        assert merged == {
            "title": "local",
            "owner": "bob",
            "created_at": "2023-12-31T09:00:00",
            "updated_at": NOW.isoformat(),
        }


class TestOfflineSyncQueue:
    def test_sync_pushes_pending(self):
        queue = _queue()
        queue.enqueue("a", {"v": 1})
        queue.enqueue("b", {"v": 2})
        remote = FakeRemote()
        report = queue.sync(remote)
        assert report.synced == 2
        assert report.pending == 0
        assert remote.records == {"a": {"v": 1}, "b": {"v": 2}}

    def test_newer_change_replaces_older(self):
        queue = _queue()
        queue.enqueue("a", {"v": 1})
        queue.enqueue("a", {"v": 2})
        assert [i.data for i in queue.get_pending()] == [{"v": 2}]

    def test_failures_retry_then_drop(self):
        queue = _queue(max_retries=2)
        queue.enqueue("a", {"v": 1})
        remote = FakeRemote(failures={"a"})

        first = queue.sync(remote)
        assert (first.failed, first.pending) == (0, 1)
        assert queue.get_pending()[0].last_error == "remote unreachable"

        second = queue.sync(remote)
        assert (second.failed, second.pending) == (1, 0)
        assert [i.key for i in queue.get_failed()] == ["a"]

    @pytest.mark.parametrize("strategy, expected", [
        (ConflictStrategy.LOCAL, {"v": "local"}),
        (ConflictStrategy.MERGE, {"v": "local", "extra": 1, "updated_at": NOW.isoformat()}),
    ])
    def test_conflict_strategies_that_write(self, strategy, expected):
        queue = _queue(strategy)
        queue.enqueue("a", {"v": "local"})
        remote = FakeRemote(conflicts={"a": {"v": "server", "extra": 1}})
        report = queue.sync(remote)
        assert report.conflicts_resolved == 1
        assert remote.records["a"] == expected

    def test_failed_conflict_write_keeps_items_queued(self):
        queue = _queue(ConflictStrategy.LOCAL)
        for key in ("a", "b", "c"):
            queue.enqueue(key, {"v": key})
        remote = FakeRemote(conflicts={"a": {"v": "server"}}, put_failures={"a"})

        report = queue.sync(remote)
        assert report.synced == 2
        assert report.pending == 1
        pending = queue.get_pending()
        assert [i.key for i in pending] == ["a"]
        assert pending[0].last_error == "network down"
        assert remote.records == {"b": {"v": "b"}, "c": {"v": "c"}}

    def test_server_strategy_takes_server_copy(self):
        queue = _queue(ConflictStrategy.SERVER)
        item = queue.enqueue("a", {"v": "local"})
        remote = FakeRemote(conflicts={"a": {"v": "server"}})
        report = queue.sync(remote)
        assert report.conflicts_resolved == 1
        assert item.data == {"v": "server"}
        assert "a" not in remote.records

    def test_manual_strategy(self):
        seen = []
        queue = _queue(ConflictStrategy.MANUAL, resolver=lambda item, server: seen.append(server))
        queue.enqueue("a", {"v": "local"})
        remote = FakeRemote(conflicts={"a": {"v": "server"}})

        report = queue.sync(remote)
        assert report.conflicts_pending == 1
        assert seen == [{"v": "server"}]
        assert [c.key for c in queue.get_conflicts()] == ["a"]

        assert queue.resolve_manually("a", {"v": "chosen"}, remote) is True
        assert remote.records["a"] == {"v": "chosen"}
        assert queue.get_conflicts() == []
        assert queue.resolve_manually("a", {"v": "again"}, remote) is False

    def test_failing_resolver_keeps_conflict(self):
        def resolver(item, server):
            raise RuntimeError("ui closed")

        queue = _queue(ConflictStrategy.MANUAL, resolver=resolver)
        queue.enqueue("a", {"v": "local"})
        queue.enqueue("b", {"v": "b"})
        remote = FakeRemote(conflicts={"a": {"v": "server"}})

        report = queue.sync(remote)
        assert report.conflicts_pending == 1
        assert report.synced == 1
        assert [c.key for c in queue.get_conflicts()] == ["a"]

    def test_track_preferences(self):
        preferences = PreferencesStore()
        queue = _queue()
        unsubscribe = queue.track_preferences(preferences)
        preferences.update_preferences("u1", {"grouping_window_minutes": 30})
        pending = queue.get_pending()
        assert [i.key for i in pending] == ["preferences:u1"]
        assert pending[0].data["grouping_window_minutes"] == 30

        unsubscribe()
        preferences.update_preferences("u2", {"grouping_window_minutes": 30})
        assert len(queue.get_pending()) == 1
