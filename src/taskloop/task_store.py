"""Durable task records held in state-named directories.

Each record is ``tasks/<n.state>/<id>.md``. A state transition is one
``os.rename`` between sibling directories; every content change is a
temp-file write followed by ``os.replace``. Readers therefore see a record
in exactly one state and never see a partially written file.
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from .errors import AlreadyExists, IOFailure, NotFound, StoreCorruption
from .models import Priority, TaskId, TaskRecord, TaskState, WorkLogEntry
from .task_format import (
    TaskFormatError, append_log_entry, format_priority, format_timestamp,
    parse, read_metadata, render, set_fields,
)
from .workspace import WorkspaceManager, create_exclusive, write_text_atomic

TASK_SUFFIX = ".md"


class TaskStore:
    """Filesystem-backed task store.

    No index is kept: ordering is derived from the ids in filenames, and
    the directory a file sits in is its state.
    """

    def __init__(self, workspace: WorkspaceManager):
        """Initialize the store.

        Args:
            workspace: Workspace providing the tasks/ directory layout
        """
        self.workspace = workspace

    def path_for(self, task_id: str, state: TaskState) -> Path:
        return self.workspace.state_path(state) / f"{task_id}{TASK_SUFFIX}"

    # =========================================================================
    # Queries
    # =========================================================================

    def list_ids(self, state: TaskState) -> list[TaskId]:
        """Task ids in ``state`` ordered by (priority, sequence, slug).

        Files whose names are not task ids are not records and are ignored.
        """
        directory = self.workspace.state_path(state)
        try:
            names = os.listdir(directory)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise IOFailure(f"Cannot list {state.value} ({e})", directory) from e

        ids = []
        for name in names:
            if name.startswith(".") or not name.endswith(TASK_SUFFIX):
                continue
            try:
                ids.append(TaskId.parse(name[:-len(TASK_SUFFIX)]))
            except ValueError:
                continue
        return sorted(ids, key=lambda t: t.sort_key)

    def list(self, state: TaskState) -> list[TaskRecord]:
        """Records in ``state`` in stable priority order.

        A record removed by another worker between listing and reading is
        skipped rather than reported.
        """
        records = []
        for task_id in self.list_ids(state):
            try:
                records.append(self.get(str(task_id), state))
            except NotFound:
                continue
        return records

    def exists(self, task_id: str, state: TaskState) -> bool:
        return self.path_for(task_id, state).exists()

    def get(self, task_id: str, state: TaskState) -> TaskRecord:
        """Read one record.

        Raises:
            NotFound: If the record is not in ``state``
            StoreCorruption: If the file cannot be parsed
        """
        text = self._read(task_id, state)
        try:
            return parse(text, TaskId.parse(task_id), state)
        except (TaskFormatError, ValueError) as e:
            raise StoreCorruption(
                f"Unreadable task record {task_id}: {e}",
                [self.path_for(task_id, state)]
            ) from e

    def locate(self, task_id: str) -> TaskState:
        """Find the single state holding ``task_id``.

        Raises:
            NotFound: If no state holds it
            StoreCorruption: If more than one state holds it
        """
        found = [s for s in TaskState if self.exists(task_id, s)]
        if not found:
            raise NotFound(task_id)
        if len(found) > 1:
            raise StoreCorruption(
                f"Task {task_id} present in multiple states",
                [self.path_for(task_id, s) for s in found]
            )
        return found[0]

    def find(self, task_id: str) -> TaskRecord:
        return self.get(task_id, self.locate(task_id))

    def check_integrity(self) -> None:
        """Verify no id appears in more than one state.

        Raises:
            StoreCorruption: Naming every duplicated record
        """
        seen: dict[str, list[TaskState]] = {}
        for state in TaskState:
            for task_id in self.list_ids(state):
                seen.setdefault(str(task_id), []).append(state)
        duplicates = {tid: states for tid, states in seen.items() if len(states) > 1}
        if duplicates:
            paths = [self.path_for(tid, s) for tid, states in duplicates.items() for s in states]
            raise StoreCorruption(
                f"Duplicate task ids across states: {', '.join(sorted(duplicates))}",
                paths
            )

    def counts(self) -> dict[TaskState, int]:
        return {state: len(self.list_ids(state)) for state in TaskState}

    def is_done(self, task_id: str) -> bool:
        return self.exists(task_id, TaskState.DONE)

    def dependencies_met(self, record: TaskRecord) -> bool:
        return all(self.is_done(dep) for dep in record.blocked_by)

    def read_field(self, task_id: str, state: TaskState, field: str) -> Optional[str]:
        """Raw metadata value with formatting backticks removed, or None."""
        value = read_metadata(self._read(task_id, state)).get(field)
        if value is None:
            return None
        return value.replace("`", "").strip() or None

    def read_text(self, task_id: str, state: TaskState) -> str:
        return self._read(task_id, state)

    # =========================================================================
    # Mutations
    # =========================================================================

    def create(self, record: TaskRecord) -> TaskRecord:
        """Write a new record into its state directory.

        Raises:
            AlreadyExists: If the id exists in any state
        """
        task_id = record.task_id
        for state in TaskState:
            if self.exists(task_id, state):
                raise AlreadyExists(task_id, self.path_for(task_id, state))

        if record.created is None:
            record = record.model_copy(update={"created": datetime.now()})
        path = self.path_for(task_id, record.state)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            create_exclusive(path, render(record))
        except FileExistsError as e:
            raise AlreadyExists(task_id, path) from e
        return record

    def next_sequence(self) -> int:
        """One past the highest sequence number used in any state."""
        highest = 0
        for state in TaskState:
            for task_id in self.list_ids(state):
                highest = max(highest, task_id.sequence)
        return highest + 1

    def move(self, task_id: str, from_state: TaskState, to_state: TaskState) -> None:
        """Move a record between states with a single rename.

        The Status row is rewritten in the source directory first, so the
        record never appears in the destination with a stale status. Callers
        hold the task lock; content rewrites racing a rename would otherwise
        resurrect the file in its old state.

        Raises:
            NotFound: If the record is not in ``from_state``
            AlreadyExists: If the destination already holds the id
            IOFailure: On any other filesystem error
        """
        if from_state == to_state:
            return
        src = self.path_for(task_id, from_state)
        dst = self.path_for(task_id, to_state)
        if dst.exists():
            raise AlreadyExists(task_id, dst)
        self.update_fields(task_id, from_state, {"Status": f"`{to_state.value}`"})
        try:
            os.rename(src, dst)
        except FileNotFoundError as e:
            raise NotFound(task_id, from_state.value) from e
        except OSError as e:
            raise IOFailure(f"Move {from_state.value} -> {to_state.value} failed ({e})", src) from e

    def update_fields(self, task_id: str, state: TaskState, values: dict[str, str]) -> None:
        """Atomically rewrite metadata rows with pre-rendered cell values."""
        text = self._read(task_id, state)
        try:
            updated = set_fields(text, values)
        except TaskFormatError as e:
            raise StoreCorruption(str(e), [self.path_for(task_id, state)]) from e
        write_text_atomic(self.path_for(task_id, state), updated)

    def write_field(self, task_id: str, state: TaskState, field: str, value: Optional[str]) -> None:
        """Set one metadata field. ``None`` clears it."""
        self.update_fields(task_id, state, {field: f"`{value}`" if value else ""})

    def assign(self, task_id: str, state: TaskState, worker_id: str, when: Optional[datetime] = None) -> None:
        when = when or datetime.now()
        values = {
            "Assigned To": f"`{worker_id}`",
            "Assigned At": f"`{format_timestamp(when)}`",
        }
        if state == TaskState.DOING and not self.read_field(task_id, state, "Started"):
            values["Started"] = f"`{format_timestamp(when)}`"
        self.update_fields(task_id, state, values)

    def unassign(self, task_id: str, state: TaskState) -> None:
        self.update_fields(task_id, state, {"Assigned To": "", "Assigned At": ""})

    def mark_completed(self, task_id: str, when: Optional[datetime] = None) -> None:
        self.update_fields(task_id, TaskState.DONE, {
            "Completed": f"`{format_timestamp(when or datetime.now())}`",
            "Assigned To": "",
            "Assigned At": "",
        })

    def append_work_log(self, task_id: str, state: TaskState, title: str, body: str = "") -> None:
        """Append an entry to the task's Work Log section."""
        text = self._read(task_id, state)
        entry = WorkLogEntry(timestamp=datetime.now(), title=title, body=body)
        write_text_atomic(self.path_for(task_id, state), append_log_entry(text, entry))

    def reprioritize(self, task_id: str, state: TaskState, priority: Priority) -> str:
        """Change a task's priority class, renaming the file and metadata together.

        The record with its new ID and Priority rows is created exclusively
        under the new name before the old file is removed, so no path ever
        holds metadata that disagrees with its filename and an existing
        destination is never overwritten.

        Returns:
            The new task id

        Raises:
            NotFound: If the task is not in ``state``
            AlreadyExists: If the new id is taken in any state
        """
        old = TaskId.parse(task_id)
        new = old.with_priority(priority)
        new_id = str(new)
        if new_id == task_id:
            return task_id
        for s in TaskState:
            if self.exists(new_id, s):
                raise AlreadyExists(new_id, self.path_for(new_id, s))

        src = self.path_for(task_id, state)
        dst = self.path_for(new_id, state)
        text = self._read(task_id, state)
        try:
            updated = set_fields(text, {"ID": f"`{new_id}`", "Priority": format_priority(priority)})
        except TaskFormatError as e:
            raise StoreCorruption(str(e), [src]) from e

        try:
            create_exclusive(dst, updated)
        except FileExistsError as e:
            raise AlreadyExists(new_id, dst) from e
        try:
            src.unlink()
        except FileNotFoundError:
            # Moved or removed while we copied it; undo the new name
            dst.unlink(missing_ok=True)
            raise NotFound(task_id, state.value)
        except OSError as e:
            raise IOFailure(f"Cannot remove old task file ({e})", src) from e
        return new_id

    # =========================================================================
    # Internal
    # =========================================================================

    def _read(self, task_id: str, state: TaskState) -> str:
        path = self.path_for(task_id, state)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise NotFound(task_id, state.value) from e
        except UnicodeDecodeError as e:
            raise StoreCorruption(f"Task record {task_id} is not valid UTF-8", [path]) from e
        except OSError as e:
            raise IOFailure(f"Cannot read task {task_id} ({e})", path) from e
