"""Task selection for one worker.

Decides which single task a worker should operate on next:
1. its own locked doing task (resume, no prompting)
2. the first todo task, in priority order, whose dependencies are done
3. the first orphaned doing task (no lock or a stale one), after an
   optional resume prompt that defaults to "yes" on timeout
Otherwise there is no available work, which is not an error.

Every state change happens while the selecting worker holds the task's
lock; a lost lock race only moves the scan on to the next candidate.
"""

import queue
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Collection, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from .errors import AlreadyExists, NotFound
from .locks import LockManager
from .models import LockRecord, OrchestratorConfig, OrphanConfig, RunEventType, TaskRecord, TaskState
from .protocols import EventLog, OrphanPrompter, TaskCommitter
from .task_store import TaskStore

console = Console()


class SelectionReason(str, Enum):
    OWN = "own"
    TODO = "todo"
    ORPHAN = "orphan"
    NAMED = "named"


@dataclass
class Selection:
    """A task the worker now holds the lock on, and why it was chosen."""
    record: TaskRecord
    reason: SelectionReason

    @property
    def task_id(self) -> str:
        return self.record.task_id


# =============================================================================
# Orphan prompting
# =============================================================================

class AutoResumePrompter:
    """Non-interactive policy: always resume orphans."""

    def confirm_resume(self, record: TaskRecord, lock: Optional[LockRecord]) -> bool:
        return True


class TimedConsolePrompter:
    """Ask on the console whether to resume an orphan, defaulting to yes.

    One daemon reader thread serves every prompt so the wait can time out
    without leaving a blocked reader behind per question. Lines typed
    after a prompt timed out are discarded before the next prompt.
    """

    def __init__(self, timeout_seconds: float = 60, input_func=input):
        self.timeout_seconds = timeout_seconds
        self._input = input_func
        self._answers: "queue.Queue[str]" = queue.Queue()
        self._wanted = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._closed = False

    def _read_lines(self) -> None:
        while True:
            self._wanted.wait()
            self._wanted.clear()
            try:
                line = self._input()
            except EOFError:
                self._closed = True
                self._answers.put("")
                return
            self._answers.put(line)

    def _drain(self) -> None:
        while True:
            try:
                self._answers.get_nowait()
            except queue.Empty:
                return

    def confirm_resume(self, record: TaskRecord, lock: Optional[LockRecord]) -> bool:
        owner = lock.owner if lock else "none"
        heartbeat = lock.heartbeat_at.strftime("%Y-%m-%d %H:%M") if lock else "-"
        console.print(Panel(
            f"[bold]{escape(record.task_id)}[/bold] {escape(record.title)}\n"
            f"Previous owner: {escape(owner)}  Last heartbeat: {heartbeat}",
            title="Orphaned task",
            border_style="yellow",
        ))

        self._drain()
        if self._closed:
            console.print("[dim]No console input - resuming[/dim]")
            return True
        if self._reader is None:
            self._reader = threading.Thread(target=self._read_lines, name="taskloop-prompt", daemon=True)
            self._reader.start()
        self._wanted.set()

        console.print(
            escape(f"Resume this task? [Y/n] (auto-yes in {int(self.timeout_seconds)}s) "),
            end="",
        )
        try:
            answer = self._answers.get(timeout=self.timeout_seconds)
        except queue.Empty:
            console.print("\n[dim]No response - resuming[/dim]")
            return True
        return answer.strip().lower() not in ("n", "no")


def create_prompter(config: OrphanConfig, interactive: Optional[bool] = None) -> OrphanPrompter:
    """Pick the orphan prompter for this run.

    Args:
        config: Orphan handling settings
        interactive: Whether stdin is a terminal (detected when None)
    """
    if interactive is None:
        interactive = sys.stdin is not None and sys.stdin.isatty()
    if config.auto_resume or not interactive:
        return AutoResumePrompter()
    return TimedConsolePrompter(timeout_seconds=config.prompt_timeout_seconds)


# =============================================================================
# Selector
# =============================================================================

class TaskSelector:
    """Chooses and claims the next task for a worker.

    Dependencies are injected for testability:
    - TaskStore: task records
    - LockManager: per-task advisory locks
    - OrphanPrompter: resume decision for orphans
    - EventLog: optional structured event sink
    - TaskCommitter: optional commit of task moves
    """

    def __init__(
        self,
        store: TaskStore,
        locks: LockManager,
        config: OrchestratorConfig,
        prompter: Optional[OrphanPrompter] = None,
        events: Optional[EventLog] = None,
        committer: Optional[TaskCommitter] = None,
    ):
        self.store = store
        self.locks = locks
        self.config = config
        self.prompter = prompter or create_prompter(config.orphans)
        self.events = events
        self.committer = committer

    def _event(self, event_type: RunEventType, **fields: Any) -> None:
        if self.events:
            self.events.log_event(event_type, **fields)

    def _commit(self, message: str, task_id: str) -> None:
        if self.committer:
            self.committer.commit_task_files(message, task_id)

    def select(self, worker_id: str, exclude: Collection[str] = ()) -> Optional[Selection]:
        """Return the task ``worker_id`` should work on, locked and in doing.

        Args:
            worker_id: Identity of the requesting worker
            exclude: Doing-state task ids to pass over, such as tasks that
                already failed earlier in this run

        Returns:
            Selection, or None when no work is available
        """
        own = self._find_own(worker_id, exclude)
        if own:
            return self._selected(own, SelectionReason.OWN, worker_id)

        if self.config.promote_unblocked:
            self.promote_unblocked(worker_id)

        picked = self._pick_todo(worker_id)
        if picked:
            return self._selected(picked, SelectionReason.TODO, worker_id)

        orphan = self._recover_orphan(worker_id, exclude)
        if orphan:
            return self._selected(orphan, SelectionReason.ORPHAN, worker_id)

        self._event(RunEventType.NO_WORK, counts={s.value: n for s, n in self.store.counts().items()})
        return None

    def claim(self, task_id: str, worker_id: str) -> Optional[Selection]:
        """Claim a specific task by id.

        Todo tasks need their dependencies met; doing tasks must be this
        worker's own or orphaned. Blocked and done tasks are never claimed.

        Returns:
            Selection, or None if the task is not claimable right now
        """
        state = self.store.locate(task_id)
        if state in (TaskState.BLOCKED, TaskState.DONE):
            return None

        if state == TaskState.TODO:
            record = self.store.get(task_id, state)
            if not self.store.dependencies_met(record):
                return None
            claimed = self._take_todo(record, worker_id)
            return self._selected(claimed, SelectionReason.NAMED, worker_id) if claimed else None

        if not self.locks.try_acquire(task_id, worker_id):
            return None
        try:
            self.store.assign(task_id, TaskState.DOING, worker_id)
            record = self.store.get(task_id, TaskState.DOING)
        except NotFound:
            self.locks.release(task_id, worker_id)
            return None
        return self._selected(record, SelectionReason.NAMED, worker_id)

    def promote_unblocked(self, worker_id: str) -> list[str]:
        """Move blocked tasks whose blockers are all done into todo.

        Each move is made under the task's lock so it cannot interleave
        with another worker's promotion.
        """
        promoted = []
        for record in self.store.list(TaskState.BLOCKED):
            if not self.store.dependencies_met(record):
                continue
            if not self.locks.try_acquire(record.task_id, worker_id):
                continue
            try:
                self.store.move(record.task_id, TaskState.BLOCKED, TaskState.TODO)
                promoted.append(record.task_id)
            except (NotFound, AlreadyExists):
                pass
            finally:
                self.locks.release(record.task_id, worker_id)
        if promoted:
            self._event(RunEventType.SELECTION, action="promoted", task_ids=promoted)
        return promoted

    # =========================================================================
    # Steps
    # =========================================================================

    def _find_own(self, worker_id: str, exclude: Collection[str] = ()) -> Optional[TaskRecord]:
        for task_id in self.store.list_ids(TaskState.DOING):
            tid = str(task_id)
            if tid in exclude:
                continue
            lock = self.locks.read(tid)
            if lock is None or lock.owner != worker_id:
                continue
            if not self.locks.try_acquire(tid, worker_id):
                continue
            try:
                return self.store.get(tid, TaskState.DOING)
            except NotFound:
                self.locks.release(tid, worker_id)
        return None

    def _pick_todo(self, worker_id: str) -> Optional[TaskRecord]:
        for record in self.store.list(TaskState.TODO):
            if not self.store.dependencies_met(record):
                self._event(
                    RunEventType.SELECTION, action="skipped", task_id=record.task_id,
                    reason="blocked_by", blocked_by=record.blocked_by,
                )
                continue
            claimed = self._take_todo(record, worker_id)
            if claimed:
                return claimed
        return None

    def _take_todo(self, record: TaskRecord, worker_id: str) -> Optional[TaskRecord]:
        task_id = record.task_id
        if not self.locks.try_acquire(task_id, worker_id):
            self._event(RunEventType.SELECTION, action="race_lost", task_id=task_id)
            return None
        try:
            self.store.move(task_id, TaskState.TODO, TaskState.DOING)
        except (NotFound, AlreadyExists) as e:
            # Left todo after we listed it; the lock we took is not needed
            self.locks.release(task_id, worker_id)
            self._event(RunEventType.SELECTION, action="race_lost", task_id=task_id, reason=str(e))
            return None
        self.store.assign(task_id, TaskState.DOING, worker_id)
        self._commit("chore: Start task", task_id)
        return self.store.get(task_id, TaskState.DOING)

    def _recover_orphan(self, worker_id: str, exclude: Collection[str] = ()) -> Optional[TaskRecord]:
        for task_id in self.store.list_ids(TaskState.DOING):
            tid = str(task_id)
            if tid in exclude:
                continue
            lock = self.locks.read(tid)
            if lock is not None and not self.locks.is_stale(lock):
                continue
            if not self.locks.try_acquire(tid, worker_id):
                continue
            try:
                record = self.store.get(tid, TaskState.DOING)
            except NotFound:
                self.locks.release(tid, worker_id)
                continue

            resume = self.prompter.confirm_resume(record, lock)
            self._event(
                RunEventType.ORPHAN, task_id=tid, resume=resume,
                previous_owner=lock.owner if lock else None,
                last_heartbeat=lock.heartbeat_at if lock else None,
            )
            if resume:
                self.store.assign(tid, TaskState.DOING, worker_id)
                return self.store.get(tid, TaskState.DOING)

            self.store.unassign(tid, TaskState.DOING)
            self.store.move(tid, TaskState.DOING, TaskState.TODO)
            self._commit("chore: Move orphaned task back to todo", tid)
            self.locks.release(tid, worker_id)
            console.print(f"[yellow]Returned {tid} to todo[/yellow]")
        return None

    def _selected(self, record: TaskRecord, reason: SelectionReason, worker_id: str) -> Selection:
        self._event(RunEventType.SELECTION, action="selected", task_id=record.task_id, reason=reason.value)
        return Selection(record=record, reason=reason)
