"""Tests for the advisory lock manager."""

import json
import threading
from datetime import datetime, timedelta

import pytest

from taskloop.errors import LockLost
from taskloop.locks import LockManager, is_stale
from taskloop.models import LockConfig, LockRecord


def _lock(heartbeat: datetime) -> LockRecord:
    return LockRecord(task_id="002-001-x", owner="w1", acquired_at=heartbeat, heartbeat_at=heartbeat)


class TestIsStale:
    """Tests for the pure staleness check."""

    def test_fresh_lock_is_not_stale(self):
        now = datetime(2025, 1, 15, 10, 0)
        assert not is_stale(_lock(now - timedelta(seconds=30)), now, timedelta(minutes=10))

    def test_exactly_at_threshold_is_not_stale(self):
        now = datetime(2025, 1, 15, 10, 0)
        assert not is_stale(_lock(now - timedelta(minutes=10)), now, timedelta(minutes=10))

    def test_past_threshold_is_stale(self):
        now = datetime(2025, 1, 15, 10, 0)
        assert is_stale(_lock(now - timedelta(minutes=10, seconds=1)), now, timedelta(minutes=10))


class TestAcquire:
    """Tests for try_acquire()."""

    def test_acquire_free_lock(self, locks: LockManager):
        assert locks.try_acquire("002-001-task", "w1")
        data = json.loads(locks.lock_path("002-001-task").read_text())
        assert data["owner"] == "w1"
        assert data["task_id"] == "002-001-task"

    def test_second_worker_refused_while_fresh(self, locks: LockManager, clock):
        assert locks.try_acquire("002-001-task", "w1")
        clock.advance(seconds=599)
        assert not locks.try_acquire("002-001-task", "w2")
        assert locks.read("002-001-task").owner == "w1"

    def test_reentrant_acquire_refreshes_heartbeat(self, locks: LockManager, clock):
        assert locks.try_acquire("002-001-task", "w1")
        clock.advance(seconds=300)
        assert locks.try_acquire("002-001-task", "w1")
        assert locks.read("002-001-task").heartbeat_at == clock.now

    def test_stale_lock_is_reclaimed(self, locks: LockManager, clock, workspace):
        """Test that a crashed worker's lock becomes reclaimable."""
        assert locks.try_acquire("002-001-task", "crashed")
        clock.advance(seconds=601)

        assert locks.try_acquire("002-001-task", "w2")
        lock = locks.read("002-001-task")
        assert lock.owner == "w2"
        assert lock.heartbeat_at == clock.now
        leftovers = [p.name for p in workspace.locks_dir.iterdir() if p.name != "002-001-task.lock"]
        assert leftovers == []

    def test_reclaim_refused_while_guard_held(self, locks: LockManager, clock):
        assert locks.try_acquire("002-001-task", "crashed")
        clock.advance(seconds=601)
        guard = locks.lock_path("002-001-task").with_name("002-001-task.lock.reclaim")
        guard.write_text("")

        assert not locks.try_acquire("002-001-task", "w2")
        assert locks.read("002-001-task").owner == "crashed"

    def test_shell_style_lock_is_understood(self, locks: LockManager, workspace):
        """Test that KEY=VALUE lock files are parsed for the owner."""
        path = locks.lock_path("002-001-task")
        path.write_text("AGENT_ID=worker-3\nPID=4242\nLOCKED_AT=2025-01-15T09:59:00\n")

        lock = locks.read("002-001-task")
        assert lock.owner == "worker-3"
        assert lock.pid == 4242

    def test_concurrent_acquire_has_one_winner(self, locks: LockManager):
        """Test that racing workers cannot both take a free lock."""
        results: dict[str, bool] = {}
        barrier = threading.Barrier(8)

        def attempt(worker: str) -> None:
            barrier.wait()
            results[worker] = locks.try_acquire("002-001-race", worker)

        threads = [threading.Thread(target=attempt, args=(f"w{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [w for w, ok in results.items() if ok]
        assert len(winners) == 1
        assert locks.read("002-001-race").owner == winners[0]

    def test_concurrent_stale_reclaim_has_one_winner(self, locks: LockManager, clock):
        assert locks.try_acquire("002-001-race", "crashed")
        clock.advance(hours=1)
        results: dict[str, bool] = {}
        barrier = threading.Barrier(6)

        def attempt(worker: str) -> None:
            barrier.wait()
            results[worker] = locks.try_acquire("002-001-race", worker)

        threads = [threading.Thread(target=attempt, args=(f"w{i}",)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [w for w, ok in results.items() if ok]
        assert len(winners) == 1
        assert locks.read("002-001-race").owner == winners[0]


class TestHeartbeatAndRelease:
    """Tests for heartbeat(), release() and release_all()."""

    def test_heartbeat_updates_timestamp(self, locks: LockManager, clock):
        locks.try_acquire("002-001-task", "w1")
        clock.advance(seconds=60)
        refreshed = locks.heartbeat("002-001-task", "w1")
        assert refreshed.heartbeat_at == clock.now

    def test_heartbeat_missing_lock_raises(self, locks: LockManager):
        with pytest.raises(LockLost):
            locks.heartbeat("002-001-task", "w1")

    def test_heartbeat_after_takeover_raises(self, locks: LockManager, clock):
        locks.try_acquire("002-001-task", "w1")
        clock.advance(seconds=601)
        locks.try_acquire("002-001-task", "w2")

        with pytest.raises(LockLost) as exc_info:
            locks.heartbeat("002-001-task", "w1")
        assert exc_info.value.current_owner == "w2"

    def test_release_is_idempotent(self, locks: LockManager):
        locks.try_acquire("002-001-task", "w1")
        assert locks.release("002-001-task", "w1")
        assert not locks.release("002-001-task", "w1")
        assert locks.read("002-001-task") is None

    def test_release_ignores_other_owner(self, locks: LockManager):
        locks.try_acquire("002-001-task", "w1")
        assert not locks.release("002-001-task", "w2")
        assert locks.read("002-001-task").owner == "w1"

    def test_release_all(self, locks: LockManager):
        locks.try_acquire("001-001-a", "w1")
        locks.try_acquire("001-002-b", "w1")
        locks.try_acquire("001-003-c", "w2")

        assert sorted(locks.release_all("w1")) == ["001-001-a", "001-002-b"]
        assert [lock.task_id for lock in locks.list_locks()] == ["001-003-c"]

    def test_rekey_moves_lock(self, locks: LockManager):
        locks.try_acquire("003-004-x", "w1")
        assert locks.rekey("003-004-x", "001-004-x", "w1")
        assert locks.read("003-004-x") is None
        assert locks.read("001-004-x").owner == "w1"

    def test_release_after_takeover_keeps_new_lock(self, locks: LockManager, clock):
        locks.try_acquire("002-001-task", "w1")
        clock.advance(seconds=601)
        locks.try_acquire("002-001-task", "w2")

        assert not locks.release("002-001-task", "w1")
        assert locks.read("002-001-task").owner == "w2"


class TestGuardedUpdates:
    """Tests for heartbeat() and release() racing a stale reclaim."""

    @pytest.fixture
    def reclaimer(self, workspace, clock) -> LockManager:
        return LockManager(workspace, LockConfig(stale_after_seconds=600, heartbeat_seconds=60), clock=clock)

    def _reclaim_before_guard(self, locks: LockManager, reclaimer: LockManager, monkeypatch) -> None:
        """Let w2 reclaim the lock just before w1 takes the guard."""
        take_guard = locks._take_guard

        def reclaim_then_take(task_id: str):
            assert reclaimer.try_acquire(task_id, "w2")
            monkeypatch.setattr(locks, "_take_guard", take_guard)
            return take_guard(task_id)

        monkeypatch.setattr(locks, "_take_guard", reclaim_then_take)

    def test_heartbeat_after_interleaved_reclaim_raises(self, locks, reclaimer, clock, monkeypatch):
        locks.try_acquire("002-001-task", "w1")
        clock.advance(seconds=601)
        self._reclaim_before_guard(locks, reclaimer, monkeypatch)

        with pytest.raises(LockLost) as exc_info:
            locks.heartbeat("002-001-task", "w1")

        assert exc_info.value.current_owner == "w2"
        assert locks.read("002-001-task").owner == "w2"

    def test_release_after_interleaved_reclaim_keeps_new_lock(self, locks, reclaimer, clock, monkeypatch):
        locks.try_acquire("002-001-task", "w1")
        clock.advance(seconds=601)
        self._reclaim_before_guard(locks, reclaimer, monkeypatch)

        assert not locks.release("002-001-task", "w1")
        assert locks.read("002-001-task").owner == "w2"

    def test_heartbeat_waits_out_busy_guard(self, locks: LockManager, clock):
        """Test that a guard held past the wait budget loses the lock without writing."""
        locks.try_acquire("002-001-task", "w1")
        before = locks.lock_path("002-001-task").read_text()
        guard = locks.lock_path("002-001-task").with_name("002-001-task.lock.reclaim")
        guard.write_text("")
        locks.guard_wait_attempts = 3
        locks.guard_wait_seconds = 0
        clock.advance(seconds=60)

        with pytest.raises(LockLost):
            locks.heartbeat("002-001-task", "w1")

        assert locks.lock_path("002-001-task").read_text() == before
        assert guard.exists()

    def test_release_with_busy_guard_leaves_lock(self, locks: LockManager):
        locks.try_acquire("002-001-task", "w1")
        locks.lock_path("002-001-task").with_name("002-001-task.lock.reclaim").write_text("")
        locks.guard_wait_attempts = 2
        locks.guard_wait_seconds = 0

        assert not locks.release("002-001-task", "w1")
        assert locks.read("002-001-task").owner == "w1"

    def test_guard_is_dropped_after_heartbeat(self, locks: LockManager, workspace):
        locks.try_acquire("002-001-task", "w1")
        locks.heartbeat("002-001-task", "w1")
        locks.release("002-001-task", "w1")

        assert list(workspace.locks_dir.iterdir()) == []
