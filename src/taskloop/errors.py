"""Exception hierarchy for taskloop.

Expected outcomes are not exceptions: losing a lock race is a ``False``
return from ``LockManager.try_acquire`` and an unanswered orphan prompt
is an implicit "resume".
"""

from pathlib import Path
from typing import Optional


class TaskloopError(Exception):
    """Base class for all taskloop errors."""


class ConfigError(TaskloopError):
    """Invalid or unreadable configuration."""


# =============================================================================
# Task store
# =============================================================================

class StoreError(TaskloopError):
    """Base class for task store failures."""


class NotFound(StoreError):
    def __init__(self, task_id: str, where: str = ""):
        self.task_id = task_id
        suffix = f" in {where}" if where else ""
        super().__init__(f"Task {task_id} not found{suffix}")


class AlreadyExists(StoreError):
    def __init__(self, task_id: str, path: Path):
        self.task_id = task_id
        self.path = path
        super().__init__(f"Task {task_id} already exists at {path}")


class IOFailure(StoreError):
    """Filesystem failure while touching the store. Always propagated."""

    def __init__(self, message: str, path: Optional[Path] = None):
        self.path = path
        super().__init__(f"{message}: {path}" if path else message)


class StoreCorruption(TaskloopError):
    """Duplicate id across states or an unreadable record. Fatal."""

    def __init__(self, message: str, paths: Optional[list[Path]] = None):
        self.paths = paths or []
        detail = ", ".join(str(p) for p in self.paths)
        super().__init__(f"{message} ({detail})" if detail else message)


# =============================================================================
# Locks
# =============================================================================

class LockLost(TaskloopError):
    """A held lock disappeared or changed owner."""

    def __init__(self, task_id: str, worker_id: str, current_owner: Optional[str] = None):
        self.task_id = task_id
        self.worker_id = worker_id
        self.current_owner = current_owner
        owner = f"now owned by {current_owner}" if current_owner else "lock file missing"
        super().__init__(f"Worker {worker_id} lost lock on {task_id} ({owner})")


# =============================================================================
# Phases
# =============================================================================

class PhaseFailure(TaskloopError):
    """A single failed phase attempt. Recovered locally by the retry controller."""

    def __init__(self, task_id: str, phase: str, attempt: int, detail: str = ""):
        self.task_id = task_id
        self.phase = phase
        self.attempt = attempt
        self.detail = detail
        super().__init__(self._describe())

    def _describe(self) -> str:
        return f"{self.task_id} phase {self.phase} attempt {self.attempt} failed: {self.detail}"


class PhaseTimeout(PhaseFailure):
    def _describe(self) -> str:
        return f"{self.task_id} phase {self.phase} attempt {self.attempt} timed out ({self.detail})"


class PhaseNonzeroExit(PhaseFailure):
    pass


class QualityGateFailed(PhaseFailure):
    pass


class PhaseExhausted(TaskloopError):
    """Retries for a required phase ran out. The task stays in doing."""

    def __init__(self, task_id: str, phase: str, attempts: int, last_error: str = ""):
        self.task_id = task_id
        self.phase = phase
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{task_id} phase {phase} exhausted after {attempts} attempts: {last_error}"
        )


class CircuitOpen(TaskloopError):
    """The circuit breaker tripped. Fatal for the run."""

    def __init__(self, reason: str, task_id: Optional[str] = None, phase: Optional[str] = None):
        self.reason = reason
        self.task_id = task_id
        self.phase = phase
        where = f" at {task_id}/{phase}" if task_id and phase else ""
        super().__init__(f"Circuit breaker open{where}: {reason}")


class InvalidPhaseTransition(TaskloopError):
    """A phase was completed out of pipeline order."""

    def __init__(self, expected: Optional[str], got: str):
        self.expected = expected
        self.got = got
        super().__init__(f"Cannot complete phase {got}; next phase is {expected or 'none (pipeline done)'}")


class StopRequested(TaskloopError):
    """Graceful shutdown was requested between phases."""
