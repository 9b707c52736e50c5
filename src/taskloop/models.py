"""Data models for the taskloop orchestrator.

Uses Pydantic for validation. Configuration models are frozen so a value loaded
once per run cannot drift while components hold references to it.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskState(str, Enum):
    """State of a task, mirrored by the directory holding its record."""
    BLOCKED = "blocked"
    TODO = "todo"
    DOING = "doing"
    DONE = "done"

    @property
    def folder(self) -> str:
        """Directory name under tasks/ (numbered so listings sort by lifecycle)."""
        return _STATE_FOLDERS[self]


_STATE_FOLDERS = {
    TaskState.BLOCKED: "1.blocked",
    TaskState.TODO: "2.todo",
    TaskState.DOING: "3.doing",
    TaskState.DONE: "4.done",
}


class Priority(int, Enum):
    """Priority class encoded in the first segment of a task id."""
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()


class Phase(str, Enum):
    """Pipeline phases, in execution order."""
    EXPAND = "expand"
    TRIAGE = "triage"
    PLAN = "plan"
    IMPLEMENT = "implement"
    TEST = "test"
    DOCS = "docs"
    REVIEW = "review"
    VERIFY = "verify"

    @property
    def index(self) -> int:
        return PHASE_ORDER.index(self)


PHASE_ORDER: list[Phase] = list(Phase)


class ErrorCategory(str, Enum):
    """Classification of agent failures for retry decisions.

    Categories determine whether to retry, how long to wait and whether
    to switch to a fallback agent immediately.
    """
    TRANSIENT = "transient"      # Network, 5xx - retry with backoff
    RATE_LIMIT = "rate_limit"    # 429, overloaded - fall back immediately
    TIMEOUT = "timeout"          # Phase wall-clock timeout - retry
    AGENT_CRASH = "agent_crash"  # Nonzero exit without a known cause - retry
    BILLING = "billing"          # Out of credits - stop
    AUTH = "auth"                # Invalid API key - stop
    UNKNOWN = "unknown"          # Unexpected - retry until the ceiling


class CircuitState(str, Enum):
    """Circuit breaker state."""
    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


# =============================================================================
# Task records
# =============================================================================

TASK_ID_PATTERN = re.compile(r"^(?P<priority>\d{3})-(?P<sequence>\d{3,})-(?P<slug>[a-z0-9][a-z0-9-]*)$")


class TaskId(BaseModel):
    """Parsed task identifier of the form PPP-SSS-slug.

    Ordering is (priority, sequence, slug), which is also the order the
    selector scans a state directory in.
    """
    model_config = ConfigDict(frozen=True)

    priority: Priority
    sequence: int = Field(ge=0)
    slug: str

    @classmethod
    def parse(cls, value: str) -> "TaskId":
        """Parse a task id string.

        Raises:
            ValueError: If the string is not a well-formed task id
        """
        match = TASK_ID_PATTERN.match(value)
        if not match:
            raise ValueError(f"Invalid task id: {value!r}")
        return cls(
            priority=Priority(int(match.group("priority"))),
            sequence=int(match.group("sequence")),
            slug=match.group("slug"),
        )

    @property
    def sort_key(self) -> tuple[int, int, str]:
        return (self.priority.value, self.sequence, self.slug)

    def with_priority(self, priority: Priority) -> "TaskId":
        return TaskId(priority=priority, sequence=self.sequence, slug=self.slug)

    def __str__(self) -> str:
        return f"{self.priority.value:03d}-{self.sequence:03d}-{self.slug}"


class WorkLogEntry(BaseModel):
    """One entry of a task's append-only work log."""
    timestamp: datetime = Field(default_factory=datetime.now)
    title: str
    body: str = ""


class TaskRecord(BaseModel):
    """A persisted work item.

    The body is free-form markdown and irrelevant to orchestration; only
    the metadata fields and the work log are interpreted.
    """
    id: TaskId
    title: str = ""
    state: TaskState = TaskState.TODO
    created: Optional[datetime] = None
    started: Optional[datetime] = None
    completed: Optional[datetime] = None
    blocked_by: list[str] = Field(default_factory=list)
    blocks: list[str] = Field(default_factory=list)
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    body: str = ""
    work_log: list[WorkLogEntry] = Field(default_factory=list)

    @property
    def task_id(self) -> str:
        return str(self.id)

    @property
    def sort_key(self) -> tuple[int, int, str]:
        return self.id.sort_key


class LockRecord(BaseModel):
    """Advisory lock held by one worker on one task id."""
    task_id: str
    owner: str
    pid: int = 0
    hostname: str = ""
    acquired_at: datetime
    heartbeat_at: datetime


# =============================================================================
# Checkpoints and confidence
# =============================================================================

class ConfidenceEntry(BaseModel):
    """Confidence evaluation recorded for one completed phase."""
    phase: Phase
    score: int = Field(ge=0, le=100)
    status_block: bool = False
    keyword_match: bool = False
    confident: bool = False
    recorded_at: datetime = Field(default_factory=datetime.now)


class Checkpoint(BaseModel):
    """Resumable per-task progress snapshot.

    Created on first phase entry and rewritten after every attempt so a
    crashed worker's successor can continue mid-pipeline.
    """
    task_id: str
    run_id: str = ""
    agent: str = ""
    model: str = ""
    last_completed_phase: int = Field(default=-1, ge=-1, le=len(PHASE_ORDER) - 1)
    retries: dict[str, int] = Field(default_factory=dict)
    session_handle: Optional[str] = None
    confidence_history: list[ConfidenceEntry] = Field(default_factory=list)
    failure_context: Optional[str] = None
    phase_summaries: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def record_retry(self, phase: Phase) -> int:
        self.retries[phase.value] = self.retries.get(phase.value, 0) + 1
        self.updated_at = datetime.now()
        return self.retries[phase.value]

    def complete_phase(self, phase: Phase, summary: str = "") -> None:
        self.last_completed_phase = max(self.last_completed_phase, phase.index)
        self.failure_context = None
        if summary:
            self.phase_summaries[phase.value] = summary
        self.updated_at = datetime.now()


# =============================================================================
# Configuration
# =============================================================================

class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class AgentSelection(_FrozenModel):
    """An agent binary plus the model it should run."""
    agent: str = "claude"
    model: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.agent}/{self.model}" if self.model else self.agent


class PhaseSettings(_FrozenModel):
    """Per-phase execution settings."""
    timeout_seconds: int = Field(default=900, gt=0)
    skip: bool = False
    gate: bool = Field(
        default=False,
        description="Run the configured quality commands after this phase"
    )


DEFAULT_PHASE_TIMEOUTS: dict[Phase, int] = {
    Phase.EXPAND: 900,
    Phase.TRIAGE: 540,
    Phase.PLAN: 900,
    Phase.IMPLEMENT: 5400,
    Phase.TEST: 1800,
    Phase.DOCS: 900,
    Phase.REVIEW: 1800,
    Phase.VERIFY: 900,
}

GATED_PHASES = frozenset({Phase.IMPLEMENT, Phase.TEST})


def default_phase_settings() -> dict[Phase, PhaseSettings]:
    return {
        phase: PhaseSettings(timeout_seconds=timeout, gate=phase in GATED_PHASES)
        for phase, timeout in DEFAULT_PHASE_TIMEOUTS.items()
    }


class QualityConfig(_FrozenModel):
    """Quality gate commands run after gated phases. Empty means no gate."""
    test_command: Optional[str] = None
    lint_command: Optional[str] = None
    build_command: Optional[str] = None
    timeout_seconds: int = Field(default=600, gt=0)

    @property
    def commands(self) -> list[tuple[str, str]]:
        return [
            (name, command)
            for name, command in (
                ("build", self.build_command),
                ("lint", self.lint_command),
                ("test", self.test_command),
            )
            if command
        ]


class RetryConfig(_FrozenModel):
    """Configuration for retry logic with exponential backoff."""
    max_retries: int = Field(
        default=2, ge=0,
        description="Retries per phase after the fallback chain is exhausted"
    )
    base_delay_seconds: float = Field(default=5.0, ge=0)
    max_delay_seconds: float = Field(default=60.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1.0)
    jitter_factor: float = Field(
        default=0.1, ge=0, le=1,
        description="Random jitter factor (0.1 = +/- 10%)"
    )
    fallback_after: int = Field(
        default=1, ge=1,
        description="Failures on one agent/model before moving down the fallback chain"
    )
    gate_retry_ceiling: int = Field(
        default=2, ge=0,
        description="Re-invocations allowed after a failing quality gate"
    )
    retryable_categories: list[ErrorCategory] = Field(
        default_factory=lambda: [
            ErrorCategory.TRANSIENT,
            ErrorCategory.RATE_LIMIT,
            ErrorCategory.TIMEOUT,
            ErrorCategory.AGENT_CRASH,
            ErrorCategory.UNKNOWN,
        ]
    )


class LockConfig(_FrozenModel):
    """Lock staleness settings."""
    stale_after_seconds: int = Field(default=10800, gt=0)
    heartbeat_seconds: int = Field(default=3600, gt=0)


class CircuitBreakerConfig(_FrozenModel):
    """Run-halting thresholds."""
    enabled: bool = True
    failure_threshold: int = Field(
        default=3, ge=1,
        description="Consecutive exhausted phases (retries and fallbacks spent) that open the breaker"
    )
    same_error_threshold: int = Field(
        default=5, ge=1,
        description="Repeats of one error signature that open the breaker"
    )
    no_progress_threshold: int = Field(
        default=3, ge=1,
        description="Consecutive tasks without file changes or with declining output that open the breaker"
    )
    output_decline_percent: int = Field(
        default=70, ge=0, le=100,
        description="Task output below this percent of the recent average counts as no progress; 0 disables"
    )
    cooldown_minutes: float = Field(default=5.0, ge=0)


class ConfidenceConfig(_FrozenModel):
    threshold: int = Field(default=70, ge=0, le=100)
    warn_after: int = Field(
        default=3, ge=1,
        description="Consecutive low-confidence phases before escalating"
    )


class RateLimitConfig(_FrozenModel):
    enabled: bool = True
    calls_per_hour: int = Field(default=80, ge=1)
    warn_percent: int = Field(default=80, ge=1, le=100)


class OrphanConfig(_FrozenModel):
    auto_resume: bool = False
    prompt_timeout_seconds: int = Field(default=60, ge=0)


class GitConfig(_FrozenModel):
    commit_task_files: bool = Field(
        default=True,
        description="Commit the tasks directory when a task starts, completes or returns to todo"
    )


class OrchestratorConfig(_FrozenModel):
    """Immutable configuration for one run.

    Built once by the config loader and handed to every component
    constructor. Never re-read mid-run.
    """
    agent: AgentSelection = Field(default_factory=AgentSelection)
    fallbacks: list[AgentSelection] = Field(
        default_factory=list,
        description="Ordered fallback agents/models tried after the primary"
    )
    use_default_fallback: bool = Field(
        default=True,
        description="Append the agent's built-in cheaper model to the chain"
    )
    phases: dict[Phase, PhaseSettings] = Field(default_factory=default_phase_settings)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    locks: LockConfig = Field(default_factory=LockConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    confidence: ConfidenceConfig = Field(default_factory=ConfidenceConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    orphans: OrphanConfig = Field(default_factory=OrphanConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    checkpoint_max_age_hours: float = Field(default=72.0, gt=0)
    promote_unblocked: bool = True
    dry_run: bool = False

    def phase(self, phase: Phase) -> PhaseSettings:
        return self.phases.get(phase) or PhaseSettings(
            timeout_seconds=DEFAULT_PHASE_TIMEOUTS[phase],
            gate=phase in GATED_PHASES,
        )


# =============================================================================
# Agent invocation and run events
# =============================================================================

class AgentResult(BaseModel):
    """Outcome of one agent invocation.

    Only the exit code, the raw output and the optional session handle are
    interpreted by the orchestrator.
    """
    exit_code: int
    output: str = ""
    session_handle: Optional[str] = None
    timed_out: bool = False
    duration_seconds: float = 0.0
    agent: str = ""
    model: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class RunEventType(str, Enum):
    """Types of entries in a run's JSONL event log."""
    RUN_START = "run_start"
    RUN_END = "run_end"
    SELECTION = "selection"
    NO_WORK = "no_work"
    ORPHAN = "orphan"
    PHASE_START = "phase_start"
    PHASE_END = "phase_end"
    PHASE_SKIPPED = "phase_skipped"
    RETRY = "retry"
    FALLBACK = "fallback"
    QUALITY_GATE = "quality_gate"
    CONFIDENCE = "confidence"
    CIRCUIT = "circuit"
    RATE_LIMIT = "rate_limit"
    TASK_END = "task_end"
    WARNING = "warning"
    ERROR = "error"
