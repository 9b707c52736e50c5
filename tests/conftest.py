"""Shared fixtures for taskloop tests."""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import pytest

from taskloop.locks import LockManager
from taskloop.models import LockConfig, Priority, RunEventType, TaskId, TaskRecord, TaskState
from taskloop.task_store import TaskStore
from taskloop.workspace import WorkspaceManager


class FakeClock:
    """Settable clock for lock staleness and checkpoint expiry."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 1, 15, 10, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def workspace(tmp_path: Path) -> WorkspaceManager:
    ws = WorkspaceManager(tmp_path)
    ws.ensure_structure()
    return ws


@pytest.fixture
def store(workspace: WorkspaceManager) -> TaskStore:
    return TaskStore(workspace)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def locks(workspace: WorkspaceManager, clock: FakeClock) -> LockManager:
    return LockManager(workspace, LockConfig(stale_after_seconds=600, heartbeat_seconds=60), clock=clock)


def make_task(
    store: TaskStore,
    priority: int,
    sequence: int,
    slug: str,
    state: TaskState = TaskState.TODO,
    blocked_by: Optional[list[str]] = None,
    title: Optional[str] = None,
    assigned_to: Optional[str] = None,
) -> TaskRecord:
    """Create a task record in the store and return it."""
    record = TaskRecord(
        id=TaskId(priority=Priority(priority), sequence=sequence, slug=slug),
        title=title or slug.replace("-", " ").capitalize(),
        state=state,
        blocked_by=blocked_by or [],
        assigned_to=assigned_to,
        body="## Context\n\nSome free-form description.",
    )
    return store.create(record)


class RecordingEvents:
    """EventLog that keeps events in memory."""

    def __init__(self):
        self.events: list[tuple[RunEventType, dict]] = []

    def log_event(self, event_type: RunEventType, **fields) -> None:
        self.events.append((event_type, fields))

    def of_type(self, event_type: RunEventType) -> list[dict]:
        return [fields for t, fields in self.events if t == event_type]
