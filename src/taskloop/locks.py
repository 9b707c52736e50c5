"""Advisory per-task locks over a shared directory.

A lock is ``locks/<task-id>.lock``: present means held, its JSON content
names the owner and the last heartbeat. Acquisition is an exclusive
create (hard link of a fully written temp file), so two workers that
both observe "no lock" cannot both succeed. A crashed worker's lock ages
past the staleness threshold and becomes reclaimable; no cleanup daemon
is involved.
"""

import json
import os
import socket
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from .errors import IOFailure, LockLost
from .models import LockConfig, LockRecord
from .workspace import WorkspaceManager, create_exclusive, write_text_atomic

LOCK_SUFFIX = ".lock"
RECLAIM_SUFFIX = ".reclaim"

# A reclaim guard older than this belongs to a worker that died mid-reclaim
RECLAIM_GUARD_TIMEOUT_SECONDS = 30

# Heartbeat and release wait this long for a busy guard before giving up
GUARD_WAIT_ATTEMPTS = 20
GUARD_WAIT_SECONDS = 0.05


def is_stale(lock: LockRecord, now: datetime, threshold: timedelta) -> bool:
    """True if the lock's heartbeat is older than ``threshold`` at ``now``."""
    return now - lock.heartbeat_at > threshold


class LockManager:
    """Acquire, refresh and release task locks for one workspace."""

    def __init__(
        self,
        workspace: WorkspaceManager,
        config: LockConfig,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the lock manager.

        Args:
            workspace: Workspace providing the locks/ directory
            config: Staleness and heartbeat settings
            clock: Time source, injectable for tests
        """
        self.workspace = workspace
        self.config = config
        self.clock = clock
        self.stale_after = timedelta(seconds=config.stale_after_seconds)
        self.guard_wait_attempts = GUARD_WAIT_ATTEMPTS
        self.guard_wait_seconds = GUARD_WAIT_SECONDS
        self._hostname = socket.gethostname()

    def lock_path(self, task_id: str) -> Path:
        return self.workspace.locks_dir / f"{task_id}{LOCK_SUFFIX}"

    # =========================================================================
    # Reading
    # =========================================================================

    def read(self, task_id: str) -> Optional[LockRecord]:
        """Current lock on ``task_id``, or None if free."""
        raw = self._read_raw(task_id)
        if raw is None:
            return None
        return self._parse(task_id, raw)

    def is_stale(self, lock: LockRecord, now: Optional[datetime] = None) -> bool:
        return is_stale(lock, now or self.clock(), self.stale_after)

    def list_locks(self) -> list[LockRecord]:
        locks = []
        try:
            names = sorted(os.listdir(self.workspace.locks_dir))
        except FileNotFoundError:
            return []
        for name in names:
            if name.startswith(".") or not name.endswith(LOCK_SUFFIX):
                continue
            lock = self.read(name[:-len(LOCK_SUFFIX)])
            if lock:
                locks.append(lock)
        return locks

    # =========================================================================
    # Acquire / heartbeat / release
    # =========================================================================

    def try_acquire(self, task_id: str, worker_id: str) -> bool:
        """Attempt to take the lock on ``task_id``.

        Succeeds if no lock exists, if ``worker_id`` already owns it (the
        heartbeat is refreshed) or if the existing lock is stale. Never
        blocks; a lost race returns False.
        """
        self.workspace.locks_dir.mkdir(parents=True, exist_ok=True)
        if self._create(task_id, worker_id):
            return True

        raw = self._read_raw(task_id)
        if raw is None:
            # Released between our create and read; one more exclusive attempt
            return self._create(task_id, worker_id)

        existing = self._parse(task_id, raw)
        if existing.owner == worker_id:
            try:
                self.heartbeat(task_id, worker_id)
            except LockLost:
                return False
            return True

        if not self.is_stale(existing):
            return False
        return self._reclaim(task_id, worker_id, raw)

    def heartbeat(self, task_id: str, worker_id: str) -> LockRecord:
        """Refresh the heartbeat on a held lock.

        The owner check and the write happen under the reclaim guard, so a
        concurrent reclaim either finishes first (and this raises) or waits.

        Raises:
            LockLost: If the lock is missing, owned by another worker, or
                the guard stays busy past the wait budget
        """
        guard = self._wait_for_guard(task_id)
        if guard is None:
            raise LockLost(task_id, worker_id)
        try:
            existing = self.read(task_id)
            if existing is None:
                raise LockLost(task_id, worker_id)
            if existing.owner != worker_id:
                raise LockLost(task_id, worker_id, existing.owner)

            refreshed = existing.model_copy(update={"heartbeat_at": self.clock(), "pid": os.getpid()})
            write_text_atomic(self.lock_path(task_id), refreshed.model_dump_json(indent=2))
            return refreshed
        finally:
            guard.unlink(missing_ok=True)

    def release(self, task_id: str, worker_id: str) -> bool:
        """Release a lock owned by ``worker_id``. Idempotent.

        Returns:
            True if a lock was removed; False if it was not ours or the
            guard stayed busy (the lock then ages out normally)
        """
        guard = self._wait_for_guard(task_id)
        if guard is None:
            return False
        try:
            existing = self.read(task_id)
            if existing is None or existing.owner != worker_id:
                return False
            try:
                self.lock_path(task_id).unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise IOFailure(f"Cannot release lock ({e})", self.lock_path(task_id)) from e
            return True
        finally:
            guard.unlink(missing_ok=True)

    def release_all(self, worker_id: str) -> list[str]:
        """Release every lock ``worker_id`` holds. Returns the task ids."""
        released = []
        for lock in self.list_locks():
            if lock.owner == worker_id and self.release(lock.task_id, worker_id):
                released.append(lock.task_id)
        return released

    def rekey(self, old_task_id: str, new_task_id: str, worker_id: str) -> bool:
        """Move a held lock to a task's new id after reprioritization.

        Returns:
            False if the new id is already locked by someone else
        """
        existing = self.read(old_task_id)
        if existing is None or existing.owner != worker_id:
            raise LockLost(old_task_id, worker_id, existing.owner if existing else None)

        moved = existing.model_copy(update={"task_id": new_task_id, "heartbeat_at": self.clock()})
        try:
            create_exclusive(self.lock_path(new_task_id), moved.model_dump_json(indent=2))
        except FileExistsError:
            return False
        self.release(old_task_id, worker_id)
        return True

    # =========================================================================
    # Internal
    # =========================================================================

    def _new_record(self, task_id: str, worker_id: str) -> LockRecord:
        now = self.clock()
        return LockRecord(
            task_id=task_id,
            owner=worker_id,
            pid=os.getpid(),
            hostname=self._hostname,
            acquired_at=now,
            heartbeat_at=now,
        )

    def _create(self, task_id: str, worker_id: str) -> bool:
        record = self._new_record(task_id, worker_id)
        try:
            create_exclusive(self.lock_path(task_id), record.model_dump_json(indent=2))
        except FileExistsError:
            return False
        return True

    def _reclaim(self, task_id: str, worker_id: str, observed: str) -> bool:
        """Replace a stale lock, serialized against other reclaimers.

        Only one worker at a time may hold the reclaim guard. The stale lock
        is renamed aside and compared with what was observed; if it changed
        (the owner heartbeated, or someone else reclaimed) it is put back.
        """
        path = self.lock_path(task_id)
        guard = self._take_guard(task_id)
        if guard is None:
            return False

        tombstone = path.with_name(f".{path.name}.{os.getpid()}.stale")
        try:
            if self._read_raw(task_id) != observed:
                return False
            try:
                os.rename(path, tombstone)
            except FileNotFoundError:
                return self._create(task_id, worker_id)

            if tombstone.read_text(encoding="utf-8") != observed:
                try:
                    os.link(tombstone, path)
                except FileExistsError:
                    pass
                return False
            return self._create(task_id, worker_id)
        finally:
            tombstone.unlink(missing_ok=True)
            guard.unlink(missing_ok=True)

    def _guard_path(self, task_id: str) -> Path:
        path = self.lock_path(task_id)
        return path.with_name(path.name + RECLAIM_SUFFIX)

    def _take_guard(self, task_id: str) -> Optional[Path]:
        """Create the guard exclusively; None if another worker holds it."""
        guard = self._guard_path(task_id)
        try:
            fd = os.open(str(guard), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            self._expire_guard(guard)
            return None
        except FileNotFoundError:
            # locks/ removed underneath us
            return None
        os.close(fd)
        return guard

    def _wait_for_guard(self, task_id: str) -> Optional[Path]:
        for attempt in range(self.guard_wait_attempts):
            guard = self._take_guard(task_id)
            if guard is not None:
                return guard
            if attempt + 1 < self.guard_wait_attempts:
                time.sleep(self.guard_wait_seconds)
        return None

    def _expire_guard(self, guard: Path) -> None:
        try:
            age = time.time() - guard.stat().st_mtime
        except FileNotFoundError:
            return
        if age > RECLAIM_GUARD_TIMEOUT_SECONDS:
            guard.unlink(missing_ok=True)

    def _read_raw(self, task_id: str) -> Optional[str]:
        path = self.lock_path(task_id)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise IOFailure(f"Cannot read lock ({e})", path) from e

    def _parse(self, task_id: str, raw: str) -> LockRecord:
        """Parse lock content; unreadable locks age from their mtime."""
        try:
            return LockRecord.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            pass

        # KEY=VALUE lock files written by shell tooling
        fields = dict(
            line.split("=", 1) for line in raw.splitlines() if "=" in line
        )
        try:
            mtime = datetime.fromtimestamp(self.lock_path(task_id).stat().st_mtime)
        except FileNotFoundError:
            mtime = self.clock()
        stamp = mtime
        if fields.get("LOCKED_AT"):
            try:
                stamp = datetime.fromisoformat(fields["LOCKED_AT"].strip())
            except ValueError:
                stamp = mtime
        return LockRecord(
            task_id=task_id,
            owner=fields.get("AGENT_ID", "").strip() or "unknown",
            pid=int(fields["PID"]) if fields.get("PID", "").strip().isdigit() else 0,
            acquired_at=stamp,
            heartbeat_at=max(stamp, mtime) if stamp.tzinfo is None else mtime,
        )
