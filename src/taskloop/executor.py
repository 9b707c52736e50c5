"""Phase executor - drives one task through the phase pipeline.

For each pending phase:
1. Check lock ownership, shutdown and the circuit breaker
2. Render the phase input (task file, prior phase summaries, failure context)
3. Invoke the agent under the phase timeout
4. On failure consult the retry controller (backoff, fallback or exhaustion)
5. On gated phases run the quality commands; a failing gate re-invokes
   the phase with the failure output appended
6. Score completion confidence and advance the checkpoint

A background heartbeat keeps the task lock fresh for the whole run.
"""

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console

from . import confidence
from .checkpoint import CheckpointStore
from .confidence import CompletionGate, ConfidenceEvidence, ConfidenceReport, GateDecision
from .errors import (
    CircuitOpen, LockLost, PhaseExhausted, PhaseFailure, PhaseNonzeroExit, PhaseTimeout,
    QualityGateFailed, StopRequested,
)
from .locks import LockManager
from .models import (
    PHASE_ORDER, AgentResult, AgentSelection, Checkpoint, OrchestratorConfig,
    Phase, RunEventType, TaskRecord, TaskState,
)
from .phases import PhaseMachine, phase_complete_title
from .protocols import AgentRunner, ChangeDetector, EventLog, TaskCommitter
from .quality import QualityGate
from .retry import CircuitBreaker, InvocationRateLimiter, RetryAction, RetryController, classify_error
from .task_store import TaskStore
from .workspace import WorkspaceManager

console = Console()

# Characters of output kept as a phase summary for later phases
SUMMARY_CHARS = 1500
# Lines of failing output used for classification and failure context
FAILURE_TAIL_LINES = 40

STATUS_INSTRUCTIONS = f"""When you finish, end your response with this block:

{confidence.STATUS_MARKER}
  PHASE_COMPLETE: true|false
  FILES_MODIFIED: <count>
  TESTS_STATUS: pass|fail|skip
  CONFIDENCE: high|medium|low
  REMAINING_WORK: <none or short description>
"""


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    LOCK_LOST = "lock_lost"


@dataclass
class TaskOutcome:
    """Result of driving one task."""
    task_id: str
    status: OutcomeStatus
    phases_completed: list[str] = field(default_factory=list)
    failed_phase: Optional[str] = None
    error: Optional[str] = None
    low_confidence_phases: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED


@dataclass
class PhaseRun:
    result: AgentResult
    report: ConfidenceReport
    decision: GateDecision
    attempts: int


def _tail(text: str, lines: int = FAILURE_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


def render_phase_input(
    phase: Phase,
    task_text: str,
    summaries: dict[str, str],
    failure_context: Optional[str] = None,
    instructions: Optional[str] = None,
) -> str:
    """Assemble the text handed to the agent for one phase attempt."""
    parts = [f"# Phase {phase.index + 1}/{len(PHASE_ORDER)}: {phase.value.upper()}"]
    if instructions:
        parts.append(instructions.strip())
    parts.append("## Task\n\n" + task_text.strip())

    prior = [(p, summaries[p.value]) for p in PHASE_ORDER[:phase.index] if summaries.get(p.value)]
    if prior:
        parts.append("## Prior phases\n\n" + "\n\n".join(f"### {p.value}\n{text}" for p, text in prior))

    if failure_context:
        parts.append("## Previous attempt failed\n\nFix the following before continuing:\n\n" + failure_context)

    parts.append(STATUS_INSTRUCTIONS)
    return "\n\n".join(parts)


class PhaseExecutor:
    """Drives a selected task from its resume phase to done.

    Dependencies are injected for testability:
    - TaskStore, LockManager, CheckpointStore: persistent state
    - agent_factory: builds an AgentRunner for an AgentSelection
    - RetryController, CircuitBreaker: failure policy
    - QualityGate, ChangeDetector, InvocationRateLimiter, EventLog, TaskCommitter: optional
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        store: TaskStore,
        locks: LockManager,
        checkpoints: CheckpointStore,
        agent_factory: Callable[[AgentSelection], AgentRunner],
        retry: RetryController,
        breaker: CircuitBreaker,
        quality: Optional[QualityGate] = None,
        changes: Optional[ChangeDetector] = None,
        rate_limiter: Optional[InvocationRateLimiter] = None,
        events: Optional[EventLog] = None,
        committer: Optional[TaskCommitter] = None,
        workspace: Optional[WorkspaceManager] = None,
        run_id: str = "",
        shutdown_check: Optional[Callable[[], bool]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.store = store
        self.locks = locks
        self.checkpoints = checkpoints
        self.agent_factory = agent_factory
        self.retry = retry
        self.breaker = breaker
        self.quality = quality
        self.changes = changes
        self.rate_limiter = rate_limiter
        self.events = events
        self.committer = committer
        self.workspace = workspace
        self.run_id = run_id
        self.shutdown_check = shutdown_check or (lambda: False)
        self._sleep = sleep
        self._agents: dict[AgentSelection, AgentRunner] = {}
        self._lock_lost: Optional[LockLost] = None
        self._files_changed = False
        self._output_chars = 0

    def _event(self, event_type: RunEventType, **fields: Any) -> None:
        if self.events:
            self.events.log_event(event_type, **fields)

    def _agent(self, selection: AgentSelection) -> AgentRunner:
        if selection not in self._agents:
            self._agents[selection] = self.agent_factory(selection)
        return self._agents[selection]

    # =========================================================================
    # Task lifecycle
    # =========================================================================

    async def execute(self, record: TaskRecord, worker_id: str) -> TaskOutcome:
        """Run every remaining phase of ``record``.

        The task lock is released on every exit path. A task that fails
        stays in doing with a work-log annotation so the next selector pass
        treats it as an orphan.

        Raises:
            CircuitOpen: The breaker tripped; the run must halt
            asyncio.CancelledError: After the checkpoint has been flushed
        """
        task_id = record.task_id
        checkpoint = self._load_checkpoint(task_id)
        machine = PhaseMachine.for_task(self.config, checkpoint, record.work_log)
        gate = CompletionGate(self.config.confidence)
        outcome = TaskOutcome(task_id=task_id, status=OutcomeStatus.COMPLETED)

        if checkpoint.last_completed_phase < machine.last_completed:
            checkpoint.last_completed_phase = machine.last_completed
        if machine.last_completed >= 0 and machine.current is not None:
            console.print(f"[cyan]Resuming {task_id} at phase {machine.current.value}[/cyan]")

        self._lock_lost = None
        self._files_changed = False
        self._output_chars = 0
        heartbeat = asyncio.create_task(self._heartbeat_loop(task_id, worker_id))
        phase: Optional[Phase] = None
        try:
            while not machine.is_done:
                phase = machine.current
                assert phase is not None
                if machine.is_skipped(phase):
                    machine.skip(phase)
                    self._event(RunEventType.PHASE_SKIPPED, task_id=task_id, phase=phase.value)
                    continue

                run = await self._run_phase(record, phase, checkpoint, gate)
                machine.complete(phase)
                summary = _tail(run.result.output, 30)[-SUMMARY_CHARS:]
                checkpoint.complete_phase(phase, summary)
                self.checkpoints.save(checkpoint)
                self._log_work(
                    task_id,
                    phase_complete_title(phase),
                    f"Attempts: {run.attempts}. Confidence: {run.report.score}"
                    + ("" if run.decision.confident else f" (low: {run.decision.warning})"),
                )
                outcome.phases_completed.append(phase.value)
                if not run.decision.confident:
                    outcome.low_confidence_phases.append(phase.value)

            self._finish_success(task_id)
            self._record_progress()
            console.print(f"[green]Task {task_id} complete[/green]")
            return outcome

        except PhaseExhausted as e:
            self.checkpoints.save(checkpoint)
            # One breaker failure per exhausted phase, however many attempts it took
            self.breaker.record_failure(e.last_error)
            self._record_progress()
            self._log_work(
                task_id,
                f"Phase {e.phase} failed - needs attention",
                f"Attempts: {e.attempts}\n\nLast error:\n\n```\n{_tail(e.last_error, 20)}\n```",
            )
            console.print(f"[red]Task {task_id} failed in phase {e.phase}: {e.last_error[:200]}[/red]")
            outcome.status = OutcomeStatus.FAILED
            outcome.failed_phase = e.phase
            outcome.error = str(e)
            return outcome

        except StopRequested:
            self.checkpoints.save(checkpoint)
            self._log_work(task_id, "Interrupted", f"Stopped before phase {phase.value if phase else '-'}")
            outcome.status = OutcomeStatus.INTERRUPTED
            return outcome

        except LockLost as e:
            outcome.status = OutcomeStatus.LOCK_LOST
            outcome.error = str(e)
            console.print(f"[red]{e} - abandoning task[/red]")
            return outcome

        except CircuitOpen as e:
            self.checkpoints.save(checkpoint)
            self._log_work(task_id, "Run halted", str(e))
            outcome.status = OutcomeStatus.INTERRUPTED
            outcome.error = str(e)
            raise

        except asyncio.CancelledError:
            self.checkpoints.save(checkpoint)
            outcome.status = OutcomeStatus.INTERRUPTED
            raise

        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            self.locks.release(task_id, worker_id)
            self._event(
                RunEventType.TASK_END, task_id=task_id, status=outcome.status.value,
                phases_completed=outcome.phases_completed, failed_phase=outcome.failed_phase,
            )

    def _load_checkpoint(self, task_id: str) -> Checkpoint:
        checkpoint = self.checkpoints.load(task_id)
        if checkpoint is None:
            checkpoint = Checkpoint(
                task_id=task_id,
                run_id=self.run_id,
                agent=self.retry.current.agent,
                model=self.retry.current.model or "",
            )
            self.checkpoints.save(checkpoint)
        else:
            checkpoint.run_id = self.run_id
        return checkpoint

    def _finish_success(self, task_id: str) -> None:
        state = self.store.locate(task_id)
        if state != TaskState.DONE:
            self.store.move(task_id, state, TaskState.DONE)
        self.store.mark_completed(task_id, datetime.now())
        self.store.append_work_log(task_id, TaskState.DONE, "Task complete", f"Run: {self.run_id}")
        self.checkpoints.archive(task_id)
        if self.committer:
            self.committer.commit_task_files("chore: Complete task", task_id)

    def _record_progress(self) -> None:
        """Feed the finished task's file changes and output size to the breaker."""
        if self.config.dry_run or self.changes is None or not self.changes.is_git_repo():
            return
        self.breaker.record_progress(self._files_changed, self._output_chars)

    def _log_work(self, task_id: str, title: str, body: str = "") -> None:
        self.store.append_work_log(task_id, self.store.locate(task_id), title, body)

    async def _heartbeat_loop(self, task_id: str, worker_id: str) -> None:
        interval = self.config.locks.heartbeat_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self.locks.heartbeat(task_id, worker_id)
            except LockLost as e:
                self._lock_lost = e
                self._event(RunEventType.ERROR, task_id=task_id, error=str(e))
                return

    def _check_can_continue(self, task_id: str, phase: Phase) -> None:
        if self._lock_lost:
            raise self._lock_lost
        if self.shutdown_check():
            raise StopRequested(f"Shutdown requested before {task_id}/{phase.value}")
        self.breaker.check(task_id, phase.value)

    # =========================================================================
    # One phase
    # =========================================================================

    async def _run_phase(
        self,
        record: TaskRecord,
        phase: Phase,
        checkpoint: Checkpoint,
        gate: CompletionGate,
    ) -> PhaseRun:
        """Run one phase to success or exhaustion.

        Raises:
            PhaseExhausted: Retries and fallbacks ran out
            CircuitOpen: The breaker was open before an attempt
        """
        task_id = record.task_id
        settings = self.config.phase(phase)
        self.retry.start_phase()
        gate_failures = 0
        attempt = 0
        failure_context = checkpoint.failure_context

        while True:
            attempt += 1
            self._check_can_continue(task_id, phase)

            selection = self.retry.current
            agent = self._agent(selection)
            phase_input = render_phase_input(
                phase,
                self.store.read_text(task_id, self.store.locate(task_id)),
                checkpoint.phase_summaries,
                failure_context,
                self._instructions(phase),
            )

            if self.rate_limiter:
                await self.rate_limiter.acquire()
            if self.changes:
                self.changes.mark_baseline()

            console.print(f"[bold]{task_id}[/bold] phase [cyan]{phase.value}[/cyan] "
                          f"attempt {attempt} ({selection})")
            self._event(RunEventType.PHASE_START, task_id=task_id, phase=phase.value,
                        attempt=attempt, agent=selection.agent, model=selection.model)

            result = await agent.invoke(phase_input, settings.timeout_seconds, checkpoint.session_handle)
            self._write_phase_log(task_id, phase, attempt, result)
            self._output_chars += len(result.output)
            if result.session_handle:
                checkpoint.session_handle = result.session_handle

            if not result.succeeded:
                failure: PhaseFailure
                if result.timed_out:
                    failure = PhaseTimeout(task_id, phase.value, attempt, f"{settings.timeout_seconds}s")
                else:
                    failure = PhaseNonzeroExit(task_id, phase.value, attempt, f"exit code {result.exit_code}")
                failure_context = self._agent_failure_context(result, settings.timeout_seconds)
                self._record_failure(checkpoint, phase, failure_context)
                self._event(RunEventType.PHASE_END, task_id=task_id, phase=phase.value, attempt=attempt,
                            success=False, exit_code=result.exit_code, timed_out=result.timed_out,
                            error=str(failure), output=_tail(result.output))

                category = classify_error(_tail(result.output), result.timed_out)
                decision = self.retry.on_failure(category)
                if decision.action == RetryAction.EXHAUSTED:
                    raise PhaseExhausted(task_id, phase.value, attempt, failure_context)

                if decision.action == RetryAction.FALLBACK:
                    checkpoint.session_handle = None
                    console.print(f"[yellow]Falling back to {decision.selection} ({decision.reason})[/yellow]")
                    self._event(RunEventType.FALLBACK, task_id=task_id, phase=phase.value, attempt=attempt,
                                category=category.value, to=str(decision.selection))
                else:
                    console.print(f"[yellow]Retry {attempt} for {task_id}/{phase.value}[/yellow] "
                                  f"- Error: {category.value} - Waiting {decision.delay_seconds:.1f}s...")
                    self._event(RunEventType.RETRY, task_id=task_id, phase=phase.value, attempt=attempt,
                                category=category.value, delay_seconds=round(decision.delay_seconds, 2))
                if decision.delay_seconds:
                    await self._sleep(decision.delay_seconds)
                continue

            if settings.gate and self.quality and self.quality.configured:
                report = await asyncio.to_thread(self.quality.run)
                self._event(RunEventType.QUALITY_GATE, task_id=task_id, phase=phase.value, attempt=attempt,
                            passed=report.passed, failures=[r.name for r in report.failures])
                if not report.passed:
                    gate_failures += 1
                    failure = QualityGateFailed(
                        task_id, phase.value, attempt, ", ".join(r.name for r in report.failures),
                    )
                    failure_context = report.failure_context()
                    self._record_failure(checkpoint, phase, failure_context)
                    self._event(RunEventType.PHASE_END, task_id=task_id, phase=phase.value, attempt=attempt,
                                success=False, error=str(failure))
                    if gate_failures > self.config.retry.gate_retry_ceiling:
                        raise PhaseExhausted(task_id, phase.value, attempt, failure_context)
                    console.print(f"[yellow]Quality gate failed for {task_id}/{phase.value} "
                                  f"({gate_failures}/{self.config.retry.gate_retry_ceiling}) - re-running phase[/yellow]")
                    continue

            self.breaker.record_success()
            report, decision = self._evaluate_confidence(task_id, phase, result, gate, checkpoint)
            self._event(RunEventType.PHASE_END, task_id=task_id, phase=phase.value, attempt=attempt,
                        success=True, duration_seconds=result.duration_seconds)
            return PhaseRun(result=result, report=report, decision=decision, attempts=attempt)

    def _agent_failure_context(self, result: AgentResult, timeout: float) -> str:
        if result.timed_out:
            headline = f"The previous attempt timed out after {timeout:.0f}s."
        else:
            headline = f"The previous attempt exited with code {result.exit_code}."
        return f"{headline}\n\n```\n{_tail(result.output)}\n```"

    def _record_failure(self, checkpoint: Checkpoint, phase: Phase, context: str) -> None:
        checkpoint.record_retry(phase)
        checkpoint.failure_context = context
        self.checkpoints.save(checkpoint)

    def _evaluate_confidence(
        self,
        task_id: str,
        phase: Phase,
        result: AgentResult,
        gate: CompletionGate,
        checkpoint: Checkpoint,
    ) -> tuple[ConfidenceReport, GateDecision]:
        evidence = ConfidenceEvidence(
            files_changed=self.changes.has_changes() if self.changes else False,
            task_in_done=self.store.is_done(task_id),
        )
        self._files_changed = self._files_changed or evidence.files_changed
        report = confidence.score(result.output, evidence)
        decision = gate.evaluate(report, evidence)
        checkpoint.confidence_history.append(gate.to_entry(phase, report, decision))

        self._event(RunEventType.CONFIDENCE, task_id=task_id, phase=phase.value, score=report.score,
                    reasons=report.reasons, confident=decision.confident, warning=decision.warning,
                    escalate=decision.escalate)
        if not decision.confident:
            console.print(f"[yellow]Low completion confidence for {task_id}/{phase.value} "
                          f"({report.score}): {decision.warning}[/yellow]")
            self._event(RunEventType.WARNING, task_id=task_id, phase=phase.value,
                        message=f"low confidence {report.score}: {decision.warning}")
        if decision.escalate:
            console.print(f"[red]{gate.consecutive_low} consecutive low-confidence phases - "
                          f"review {task_id} manually[/red]")
        return report, decision

    def _instructions(self, phase: Phase) -> Optional[str]:
        """Project-provided phase instructions from .taskloop/phases/<phase>.md."""
        if self.workspace is None:
            return None
        path = self.workspace.root / "phases" / f"{phase.value}.md"
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _write_phase_log(self, task_id: str, phase: Phase, attempt: int, result: AgentResult) -> None:
        if self.workspace is None or not self.run_id:
            return
        path = self.workspace.phase_log_path(self.run_id, task_id, phase.value, attempt)
        path.write_text(result.output, encoding="utf-8")
