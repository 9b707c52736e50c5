"""Protocol definitions for dependency injection.

These protocols define the seams between the orchestrator core and its
external collaborators, so each can be replaced by a mock in tests:
- AgentRunner: the opaque agent process
- OrphanPrompter: the yes/no decision on resuming an orphaned task
- ChangeDetector: evidence that a phase modified files
- EventLog: structured run events
- TaskCommitter: version-control record of task state transitions
"""

from typing import Any, Optional, Protocol, runtime_checkable

from .models import AgentResult, LockRecord, RunEventType, TaskRecord


@runtime_checkable
class AgentRunner(Protocol):
    """One agent binary driven with one model.

    The orchestrator never branches on which agent this is.
    """

    name: str
    model: Optional[str]

    async def invoke(
        self,
        phase_input: str,
        timeout: float,
        resume_handle: Optional[str] = None,
    ) -> AgentResult:
        """Run the agent on ``phase_input`` for at most ``timeout`` seconds."""
        ...


@runtime_checkable
class OrphanPrompter(Protocol):
    """Decides whether an orphaned doing-task should be resumed."""

    def confirm_resume(self, record: TaskRecord, lock: Optional[LockRecord]) -> bool:
        """Return True to resume, False to send the task back to todo."""
        ...


@runtime_checkable
class ChangeDetector(Protocol):
    """Reports whether the working tree changed since the last baseline."""

    def is_git_repo(self) -> bool:
        ...

    def mark_baseline(self) -> None:
        ...

    def has_changes(self) -> bool:
        ...


@runtime_checkable
class EventLog(Protocol):
    """Sink for structured run events."""

    def log_event(self, event_type: RunEventType, **fields: Any) -> None:
        ...


@runtime_checkable
class TaskCommitter(Protocol):
    """Records task state transitions in version control."""

    def commit_task_files(self, message: str, task_id: str) -> bool:
        ...
