"""Retry and recovery policy.

Cross-cutting policy consulted by the phase executor:
- classify_error: maps failure output to an ErrorCategory
- RetryController: exponential backoff and the agent/model fallback chain
- CircuitBreaker: halts the run after repeated failures
- InvocationRateLimiter: rolling hourly cap on agent invocations
"""

import asyncio
import contextlib
import hashlib
import json
import os
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError
from rich.console import Console

from .errors import CircuitOpen
from .models import (
    AgentSelection, CircuitBreakerConfig, CircuitState, ErrorCategory,
    OrchestratorConfig, RateLimitConfig, RetryConfig, RunEventType,
)
from .protocols import EventLog
from .workspace import write_text_atomic

console = Console()

# Cheaper model each agent falls back to when its primary keeps failing
DEFAULT_FALLBACK_MODELS: dict[str, str] = {
    "claude": "sonnet",
    "codex": "o4-mini",
    "gemini": "gemini-2.5-flash",
    "copilot": "claude-sonnet-4",
    "opencode": "claude-sonnet-4",
}


def classify_error(error_text: Optional[str], timed_out: bool = False) -> ErrorCategory:
    """Classify agent failure output to determine retry strategy.

    Args:
        error_text: Tail of the agent output or an error message
        timed_out: True when the phase hit its wall-clock timeout

    Returns:
        ErrorCategory indicating what type of failure occurred
    """
    if timed_out:
        return ErrorCategory.TIMEOUT
    if not error_text:
        return ErrorCategory.UNKNOWN

    error_lower = error_text.lower()

    # Billing/credit errors - non-recoverable on this agent
    if any(phrase in error_lower for phrase in [
        "credit balance",
        "insufficient credits",
        "billing",
        "payment required",
        "quota exceeded",
    ]):
        return ErrorCategory.BILLING

    # Authentication errors - non-recoverable on this agent
    if any(phrase in error_lower for phrase in [
        "authentication",
        "unauthorized",
        "invalid api key",
        "401",
        "403 forbidden",
    ]):
        return ErrorCategory.AUTH

    # Rate limits and capacity - switch agent/model immediately
    if any(phrase in error_lower for phrase in [
        "rate limit",
        "rate-limit",
        "ratelimit",
        "429",
        "too many requests",
        "overloaded",
        "capacity",
        "quota",
        "throttl",
    ]):
        return ErrorCategory.RATE_LIMIT

    # Transient network / upstream errors
    if any(phrase in error_lower for phrase in [
        "timeout",
        "timed out",
        "connection",
        "network",
        "unreachable",
        "temporarily unavailable",
        "500",
        "502",
        "503",
        "504",
        "internal server error",
        "service unavailable",
        "gateway",
    ]):
        return ErrorCategory.TRANSIENT

    if any(phrase in error_lower for phrase in [
        "exit code",
        "exited with code",
        "segmentation fault",
        "killed",
        "traceback",
    ]):
        return ErrorCategory.AGENT_CRASH

    return ErrorCategory.UNKNOWN


def error_signature(output: str, tail_lines: int = 20) -> str:
    """Stable hash of the last lines of failure output."""
    tail = "\n".join(output.strip().splitlines()[-tail_lines:])
    return hashlib.sha1(tail.encode("utf-8", errors="replace")).hexdigest()[:12] if tail else ""


# =============================================================================
# Backoff and fallback
# =============================================================================

def build_fallback_chain(config: OrchestratorConfig) -> list[AgentSelection]:
    """Primary agent, configured fallbacks, then the agent's default cheaper model."""
    chain = [config.agent]
    for selection in config.fallbacks:
        if selection not in chain:
            chain.append(selection)
    default_model = DEFAULT_FALLBACK_MODELS.get(config.agent.agent)
    if config.use_default_fallback and default_model and default_model != config.agent.model:
        default = AgentSelection(agent=config.agent.agent, model=default_model)
        if default not in chain:
            chain.append(default)
    return chain


class RetryAction(str, Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    EXHAUSTED = "exhausted"


@dataclass
class RetryDecision:
    action: RetryAction
    delay_seconds: float = 0.0
    selection: Optional[AgentSelection] = None
    category: ErrorCategory = ErrorCategory.UNKNOWN
    reason: str = ""


class RetryController:
    """Decides what happens after a failed phase attempt.

    Failures are first absorbed by moving down the fallback chain (each
    entry gets ``fallback_after`` failures; rate limits and non-retryable
    errors move on at once). Only once the chain is exhausted do failures
    count against ``max_retries``. The chain position survives across
    phases for the rest of the run; retry counts reset per phase.
    """

    def __init__(
        self,
        config: RetryConfig,
        chain: list[AgentSelection],
        rng: Optional[random.Random] = None,
    ):
        if not chain:
            raise ValueError("Fallback chain needs at least one agent")
        self.config = config
        self.chain = chain
        self.position = 0
        self._rng = rng or random.Random()
        self._entry_failures = 0
        self.phase_attempts = 0
        self.retries_used = 0

    @property
    def current(self) -> AgentSelection:
        return self.chain[self.position]

    @property
    def has_fallback(self) -> bool:
        return self.position + 1 < len(self.chain)

    def start_phase(self) -> None:
        self.phase_attempts = 0
        self.retries_used = 0
        self._entry_failures = 0

    def calculate_delay(self, attempt: int, category: ErrorCategory = ErrorCategory.UNKNOWN) -> float:
        """Calculate delay for exponential backoff with jitter.

        Args:
            attempt: Current retry attempt (0-indexed)
            category: Failure category; rate limits wait twice as long

        Returns:
            Delay in seconds
        """
        delay = self.config.base_delay_seconds * (self.config.exponential_base ** attempt)
        if category == ErrorCategory.RATE_LIMIT:
            delay *= 2

        delay = min(delay, self.config.max_delay_seconds)

        jitter = delay * self.config.jitter_factor
        delay += self._rng.uniform(-jitter, jitter)

        return max(0, delay)

    def on_failure(self, category: ErrorCategory) -> RetryDecision:
        """Record a failed attempt and decide the next step."""
        self.phase_attempts += 1
        self._entry_failures += 1
        retryable = category in self.config.retryable_categories

        wants_fallback = (
            category == ErrorCategory.RATE_LIMIT
            or not retryable
            or self._entry_failures >= self.config.fallback_after
        )
        if wants_fallback and self.has_fallback:
            self.position += 1
            self._entry_failures = 0
            return RetryDecision(
                action=RetryAction.FALLBACK,
                selection=self.current,
                category=category,
                reason=f"{category.value} on {self.chain[self.position - 1]}",
            )

        if not retryable:
            return RetryDecision(
                action=RetryAction.EXHAUSTED, category=category,
                reason=f"{category.value} is not retryable",
            )

        if self.has_fallback:
            # Still working through the chain; not counted against the ceiling
            return RetryDecision(
                action=RetryAction.RETRY,
                delay_seconds=self.calculate_delay(self._entry_failures - 1, category),
                selection=self.current,
                category=category,
            )

        self.retries_used += 1
        if self.retries_used > self.config.max_retries:
            return RetryDecision(
                action=RetryAction.EXHAUSTED, category=category,
                reason=f"{self.config.max_retries} retries used",
            )
        return RetryDecision(
            action=RetryAction.RETRY,
            delay_seconds=self.calculate_delay(self.retries_used - 1, category),
            selection=self.current,
            category=category,
        )


# =============================================================================
# Circuit breaker
# =============================================================================

class CircuitSnapshot(BaseModel):
    """Persisted circuit breaker state for one agent."""
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    same_error_count: int = 0
    last_error_signature: str = ""
    no_progress_count: int = 0
    output_sizes: list[int] = Field(default_factory=list)
    opened_at: Optional[datetime] = None
    reason: str = ""
    updated_at: datetime = Field(default_factory=datetime.now)


class CircuitBreaker:
    """Halts the run after repeated failures or stalled progress.

    Failures count per exhausted phase, not per attempt: a phase that
    recovers within its retry budget never touches the breaker. It opens
    when consecutive exhausted phases reach ``failure_threshold``, when one
    error signature repeats ``same_error_threshold`` times, or when
    ``no_progress_threshold`` tasks in a row finish without file changes
    or with output shrinking below ``output_decline_percent`` of the
    recent average. An open breaker persists across runs until the
    cooldown passes, then allows one trial (half-open); a success closes
    it, a failure reopens it.
    """

    # Recent task output sizes kept for the decline check
    OUTPUT_WINDOW = 5

    def __init__(
        self,
        config: CircuitBreakerConfig,
        state_file: Optional[Path] = None,
        clock: Callable[[], datetime] = datetime.now,
        events: Optional[EventLog] = None,
    ):
        self.config = config
        self.state_file = state_file
        self.clock = clock
        self.events = events
        self.snapshot = self._load()

    @property
    def state(self) -> CircuitState:
        return self.snapshot.state

    def _load(self) -> CircuitSnapshot:
        if self.state_file is None or not self.state_file.exists():
            return CircuitSnapshot()
        try:
            return CircuitSnapshot.model_validate(json.loads(self.state_file.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError):
            console.print(f"[yellow]Ignoring unreadable circuit state {self.state_file}[/yellow]")
            return CircuitSnapshot()

    def _save(self) -> None:
        self.snapshot.updated_at = self.clock()
        if self.state_file is not None:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            write_text_atomic(self.state_file, self.snapshot.model_dump_json(indent=2))

    def _transition(self, new_state: CircuitState, reason: str = "") -> None:
        old = self.snapshot.state
        if old == new_state:
            return
        self.snapshot.state = new_state
        self.snapshot.reason = reason
        if new_state == CircuitState.OPEN:
            self.snapshot.opened_at = self.clock()
        if self.events:
            self.events.log_event(RunEventType.CIRCUIT, old=old.value, new=new_state.value, reason=reason)
        console.print(f"[yellow]Circuit breaker: {old.value} -> {new_state.value}[/yellow]"
                      + (f" ({reason})" if reason else ""))

    def check(self, task_id: Optional[str] = None, phase: Optional[str] = None) -> None:
        """Raise if the breaker forbids another attempt.

        An open breaker stays open for the rest of the run; only a new run
        past the cooldown gets a half-open trial.

        Raises:
            CircuitOpen: While open
        """
        if not self.config.enabled:
            return
        if self.snapshot.state == CircuitState.OPEN:
            raise CircuitOpen(self.snapshot.reason or "too many failures", task_id, phase)

    def resume_after_cooldown(self) -> None:
        """At run start, let a persisted open breaker go half-open once cooled down."""
        if self.snapshot.state != CircuitState.OPEN:
            return
        opened = self.snapshot.opened_at or self.clock()
        if self.clock() - opened >= timedelta(minutes=self.config.cooldown_minutes):
            self.snapshot.consecutive_failures = 0
            self.snapshot.no_progress_count = 0
            self._transition(CircuitState.HALF_OPEN, "cooldown elapsed")
            self._save()

    def record_success(self) -> None:
        self.snapshot.consecutive_failures = 0
        if self.snapshot.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED, "trial succeeded")
        self._save()

    def record_failure(self, output: str = "") -> None:
        """Count one exhausted phase; may open the breaker."""
        if not self.config.enabled:
            return
        self.snapshot.consecutive_failures += 1
        signature = error_signature(output)
        if signature and signature == self.snapshot.last_error_signature:
            self.snapshot.same_error_count += 1
        else:
            self.snapshot.same_error_count = 1 if signature else 0
            self.snapshot.last_error_signature = signature

        if self.snapshot.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, "failed during half-open trial")
        elif self.snapshot.consecutive_failures >= self.config.failure_threshold:
            self._transition(
                CircuitState.OPEN,
                f"{self.snapshot.consecutive_failures} consecutive phase failures",
            )
        elif self.snapshot.same_error_count >= self.config.same_error_threshold:
            self._transition(CircuitState.OPEN, f"same error repeated {self.snapshot.same_error_count} times")
        self._save()

    def output_declining(self, output_size: int) -> bool:
        """True if ``output_size`` falls below the decline percent of recent tasks."""
        sizes = self.snapshot.output_sizes
        if not self.config.output_decline_percent or len(sizes) < 2:
            return False
        average = sum(sizes) / len(sizes)
        return output_size < average * self.config.output_decline_percent / 100

    def record_progress(self, files_changed: bool, output_size: int) -> None:
        """Count one finished task toward the no-progress trigger.

        A task that changed files with output in line with recent tasks
        resets the count; anything else increments it.
        """
        if not self.config.enabled:
            return
        declining = self.output_declining(output_size)
        self.snapshot.output_sizes = (self.snapshot.output_sizes + [output_size])[-self.OUTPUT_WINDOW:]
        if files_changed and not declining:
            self.snapshot.no_progress_count = 0
        else:
            self.snapshot.no_progress_count += 1
            if self.snapshot.no_progress_count >= self.config.no_progress_threshold:
                cause = "output declining" if declining else "no file changes"
                self._transition(
                    CircuitState.OPEN,
                    f"{self.snapshot.no_progress_count} consecutive tasks without progress ({cause})",
                )
        self._save()

    def reset(self) -> None:
        self.snapshot = CircuitSnapshot()
        self._save()


# =============================================================================
# Invocation rate limiter
# =============================================================================

class InvocationRateLimiter:
    """Rolling one-hour cap on agent invocations, shared by a workspace.

    Timestamps persist in a JSON file so successive runs and concurrent
    workers share the budget. Each read-modify-write of that file happens
    under an exclusively created ``<file>.guard``; a guard older than
    ``GUARD_STALE_SECONDS`` belongs to a dead process and is removed.
    """

    WINDOW = timedelta(hours=1)
    GUARD_STALE_SECONDS = 5.0
    GUARD_POLL_SECONDS = 0.05

    def __init__(
        self,
        config: RateLimitConfig,
        state_file: Optional[Path] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        events: Optional[EventLog] = None,
    ):
        self.config = config
        self.state_file = state_file
        self.clock = clock
        self._sleep = sleep
        self.events = events
        self._warned = False

    @property
    def guard_file(self) -> Optional[Path]:
        if self.state_file is None:
            return None
        return self.state_file.with_name(self.state_file.name + ".guard")

    @contextlib.asynccontextmanager
    async def _guarded(self) -> AsyncIterator[None]:
        guard = self.guard_file
        if guard is None:
            yield
            return
        guard.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(str(guard), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                try:
                    age = time.time() - guard.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age > self.GUARD_STALE_SECONDS:
                    guard.unlink(missing_ok=True)
                else:
                    await asyncio.sleep(self.GUARD_POLL_SECONDS)
                continue
            os.close(fd)
            break
        try:
            yield
        finally:
            guard.unlink(missing_ok=True)

    def _load(self) -> list[datetime]:
        if self.state_file is None or not self.state_file.exists():
            return []
        try:
            raw = json.loads(self.state_file.read_text(encoding="utf-8"))
            return [datetime.fromisoformat(s) for s in raw.get("calls", [])]
        except (json.JSONDecodeError, ValueError, AttributeError):
            return []

    def _save(self, calls: list[datetime]) -> None:
        if self.state_file is None:
            return
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        write_text_atomic(self.state_file, json.dumps({"calls": [c.isoformat() for c in calls]}))

    def _window(self) -> list[datetime]:
        cutoff = self.clock() - self.WINDOW
        return [c for c in self._load() if c > cutoff]

    def remaining(self) -> int:
        return max(0, self.config.calls_per_hour - len(self._window()))

    async def acquire(self) -> None:
        """Wait until an invocation is allowed, then record it."""
        if not self.config.enabled:
            return
        while True:
            async with self._guarded():
                calls = self._window()
                if len(calls) < self.config.calls_per_hour:
                    self._warn_if_close(len(calls) + 1)
                    calls.append(self.clock())
                    self._save(calls)
                    return
                wait = (min(calls) + self.WINDOW - self.clock()).total_seconds()

            console.print(f"[yellow]Rate limit reached ({self.config.calls_per_hour}/hour) - "
                          f"waiting {wait:.0f}s[/yellow]")
            if self.events:
                self.events.log_event(RunEventType.RATE_LIMIT, action="wait", wait_seconds=round(wait, 1))
            await self._sleep(max(wait, 0))

    def _warn_if_close(self, used: int) -> None:
        if self._warned or used * 100 < self.config.calls_per_hour * self.config.warn_percent:
            return
        self._warned = True
        console.print(f"[yellow]Invocation budget at {used}/{self.config.calls_per_hour} this hour[/yellow]")
        if self.events:
            self.events.log_event(RunEventType.RATE_LIMIT, action="warn", used=used)
