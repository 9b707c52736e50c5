"""Run orchestration for one worker process.

Handles:
- Wiring the store, locks, selector and executor from one config
- Signal handlers for graceful shutdown (SIGINT, SIGTERM)
- File-based stop signal detection
- The select-execute loop, bounded by an optional task count
- Releasing every lock this worker holds on the way out
"""

import asyncio
import os
import signal
import socket
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console
from rich.panel import Panel

from .agents import create_agent
from .checkpoint import CheckpointStore
from .errors import CircuitOpen, StoreCorruption
from .executor import OutcomeStatus, PhaseExecutor, TaskOutcome
from .git_manager import GitManager
from .locks import LockManager
from .models import AgentSelection, OrchestratorConfig
from .protocols import AgentRunner, ChangeDetector, OrphanPrompter
from .quality import QualityGate
from .retry import CircuitBreaker, InvocationRateLimiter, RetryController, build_fallback_chain
from .run_log import RunLogger
from .selector import TaskSelector
from .task_store import TaskStore
from .workspace import WorkspaceManager

console = Console()


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    NO_WORK = "no_work"
    CIRCUIT_OPEN = "circuit_open"
    INTERRUPTED = "interrupted"
    CORRUPTION = "corruption"


# Process exit codes per run outcome
EXIT_CODES = {
    RunOutcome.COMPLETED: 0,
    RunOutcome.NO_WORK: 0,
    RunOutcome.CIRCUIT_OPEN: 3,
    RunOutcome.CORRUPTION: 4,
    RunOutcome.INTERRUPTED: 130,
}


@dataclass
class RunReport:
    """Summary of one worker run."""
    run_id: str
    worker_id: str
    outcome: RunOutcome = RunOutcome.COMPLETED
    reason: Optional[str] = None
    tasks: list[TaskOutcome] = field(default_factory=list)

    @property
    def completed(self) -> list[str]:
        return [t.task_id for t in self.tasks if t.status == OutcomeStatus.COMPLETED]

    @property
    def failed(self) -> list[str]:
        return [t.task_id for t in self.tasks if t.status == OutcomeStatus.FAILED]

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.outcome]


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def new_run_id() -> str:
    return f"{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


class Orchestrator:
    """Selects and executes tasks for a single worker until told to stop.

    Dependencies are injected for testability:
    - agent_factory: builds AgentRunners (defaults to create_agent)
    - OrphanPrompter: resume decision for orphans
    - ChangeDetector: git evidence for confidence (defaults to GitManager)
    - sleep: backoff sleeps
    """

    def __init__(
        self,
        project_path: Path,
        config: OrchestratorConfig,
        worker_id: Optional[str] = None,
        workspace: Optional[WorkspaceManager] = None,
        agent_factory: Optional[Callable[[AgentSelection], AgentRunner]] = None,
        prompter: Optional[OrphanPrompter] = None,
        changes: Optional[ChangeDetector] = None,
        run_id: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.project_path = Path(project_path)
        self.config = config
        self.worker_id = worker_id or default_worker_id()
        self.run_id = run_id or new_run_id()
        self.workspace = workspace or WorkspaceManager(self.project_path)
        self.workspace.ensure_structure()

        self.logger = RunLogger(self.workspace, self.run_id, self.worker_id)
        self.store = TaskStore(self.workspace)
        self.locks = LockManager(self.workspace, config.locks)
        self.checkpoints = CheckpointStore(self.workspace, config.checkpoint_max_age_hours)
        git = GitManager(self.project_path, self.workspace.tasks_dir)
        committer = git if config.git.commit_task_files else None
        self.selector = TaskSelector(
            self.store, self.locks, config, prompter=prompter, events=self.logger, committer=committer,
        )

        self.retry = RetryController(config.retry, build_fallback_chain(config))
        self.breaker = CircuitBreaker(
            config.circuit_breaker,
            self.workspace.circuit_state_file(config.agent.agent),
            events=self.logger,
        )
        self.rate_limiter = InvocationRateLimiter(
            config.rate_limit, self.workspace.rate_limit_file, sleep=sleep, events=self.logger,
        )
        self.executor = PhaseExecutor(
            config,
            self.store,
            self.locks,
            self.checkpoints,
            agent_factory or self._create_agent,
            self.retry,
            self.breaker,
            quality=QualityGate(self.project_path, config.quality),
            changes=changes or git,
            rate_limiter=self.rate_limiter,
            events=self.logger,
            committer=committer,
            workspace=self.workspace,
            run_id=self.run_id,
            shutdown_check=self.is_shutdown_requested,
            sleep=sleep,
        )

        self._shutdown_requested = False
        self._stopped_by_file = False
        self._main_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_handlers: dict[int, Any] = {}

    def _create_agent(self, selection: AgentSelection) -> AgentRunner:
        return create_agent(selection, cwd=self.project_path, dry_run=self.config.dry_run)

    # =========================================================================
    # Shutdown
    # =========================================================================

    def setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown.

        On Windows, only SIGINT (Ctrl+C) is supported.
        On Unix, both SIGINT and SIGTERM are handled.
        """
        self._previous_handlers[signal.SIGINT] = signal.signal(signal.SIGINT, self._handle_shutdown_signal)

        # SIGTERM is not available on Windows
        if sys.platform != "win32":
            self._previous_handlers[signal.SIGTERM] = signal.signal(signal.SIGTERM, self._handle_shutdown_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_shutdown_signal(self, signum: int, frame: Any) -> None:
        """First signal finishes the current phase; a second SIGINT cancels the run.

        Args:
            signum: Signal number received
            frame: Current stack frame (unused)
        """
        signal_name = signal.Signals(signum).name if hasattr(signal, 'Signals') else str(signum)
        if self._shutdown_requested and signum == signal.SIGINT:
            console.print(f"\n[red]Second {signal_name} - cancelling run...[/red]")
            if self._loop and self._main_task:
                self._loop.call_soon_threadsafe(self._main_task.cancel)
            return
        console.print(f"\n[yellow]Shutdown signal received ({signal_name}) - finishing current phase...[/yellow]")
        self._shutdown_requested = True

    def is_shutdown_requested(self) -> bool:
        """Check the signal flag and the stop request file."""
        if self._shutdown_requested:
            return True
        if self.workspace.stop_file.exists():
            console.print("[yellow]Stop request file detected...[/yellow]")
            self._shutdown_requested = True
            self._stopped_by_file = True
            return True
        return False

    def request_stop(self, reason: str = "User requested stop") -> Path:
        """Ask every worker on this workspace to stop between phases.

        Returns:
            Path to the created stop file
        """
        return request_stop(self.workspace, reason)

    def _clear_stop_request(self) -> None:
        """Remove the stop file once no worker holds a task lock any more."""
        try:
            self.workspace.stop_file.unlink()
            console.print("[dim]Cleared stop request file[/dim]")
        except FileNotFoundError:
            pass

    # =========================================================================
    # Run loop
    # =========================================================================

    async def run(
        self,
        max_tasks: Optional[int] = None,
        task_id: Optional[str] = None,
        install_signal_handlers: bool = True,
    ) -> RunReport:
        """Run until no work remains, ``max_tasks`` tasks ran, or shutdown.

        Args:
            max_tasks: Upper bound on tasks executed (None for no bound)
            task_id: Work only on this task
            install_signal_handlers: Install SIGINT/SIGTERM handlers for the run

        Returns:
            RunReport; its outcome maps to the process exit code
        """
        report = RunReport(run_id=self.run_id, worker_id=self.worker_id)
        self._main_task = asyncio.current_task()
        self._loop = asyncio.get_running_loop()
        if install_signal_handlers:
            self.setup_signal_handlers()

        console.print(Panel(
            f"[bold]Worker:[/bold] {self.worker_id}\n"
            f"[bold]Agent:[/bold] {self.retry.current}\n"
            f"[bold]Project:[/bold] {self.project_path.name}"
            + ("\n[yellow]Dry run - agents are not invoked[/yellow]" if self.config.dry_run else ""),
            title=f"taskloop run {self.run_id}",
        ))
        self.logger.log_run_start(self.config.model_dump(mode="json"), max_tasks)

        try:
            await self._loop_tasks(report, max_tasks, task_id)
        except CircuitOpen as e:
            report.outcome = RunOutcome.CIRCUIT_OPEN
            report.reason = str(e)
            console.print(f"[red]Circuit breaker open - halting run: {e}[/red]")
        except StoreCorruption as e:
            report.outcome = RunOutcome.CORRUPTION
            report.reason = str(e)
            console.print(f"[red]Task store corruption: {e}[/red]")
        except asyncio.CancelledError:
            report.outcome = RunOutcome.INTERRUPTED
            report.reason = "cancelled"
        finally:
            released = self.locks.release_all(self.worker_id)
            if released:
                console.print(f"[dim]Released locks: {', '.join(released)}[/dim]")
            if install_signal_handlers:
                self.restore_signal_handlers()
            if self._stopped_by_file and not self.locks.list_locks():
                self._clear_stop_request()
            self.logger.log_run_end(
                report.outcome.value,
                report.reason,
                completed=report.completed,
                failed=report.failed,
            )
            self.logger.close()

        self._print_summary(report)
        return report

    async def _loop_tasks(self, report: RunReport, max_tasks: Optional[int], task_id: Optional[str]) -> None:
        self.store.check_integrity()
        self.breaker.resume_after_cooldown()
        self.breaker.check()

        attempted: set[str] = set()
        while max_tasks is None or len(report.tasks) < max_tasks:
            if self.is_shutdown_requested():
                report.outcome = RunOutcome.INTERRUPTED
                report.reason = "shutdown requested"
                return
            # Exhausted phases and stalled tasks open the breaker between tasks
            self.breaker.check()

            if task_id:
                selection = None if task_id in attempted else self.selector.claim(task_id, self.worker_id)
            else:
                selection = self.selector.select(self.worker_id, exclude=attempted)
            if selection is None:
                if not report.tasks:
                    report.outcome = RunOutcome.NO_WORK
                    report.reason = f"task {task_id} is not claimable" if task_id else "no available work"
                    console.print(f"[yellow]No available work ({report.reason})[/yellow]")
                return

            console.print(f"\n{'='*60}")
            console.print(f"Task {selection.task_id} ({selection.reason.value})")
            console.print(f"{'='*60}")

            attempted.add(selection.task_id)
            try:
                outcome = await self.executor.execute(selection.record, self.worker_id)
            except CircuitOpen as e:
                report.tasks.append(TaskOutcome(selection.task_id, OutcomeStatus.INTERRUPTED, error=str(e)))
                raise
            report.tasks.append(outcome)
            if outcome.status == OutcomeStatus.INTERRUPTED:
                report.outcome = RunOutcome.INTERRUPTED
                report.reason = "shutdown requested"
                return

    def _print_summary(self, report: RunReport) -> None:
        lines = [
            f"[bold]Outcome:[/bold] {report.outcome.value}",
            f"[bold]Tasks run:[/bold] {len(report.tasks)}",
            f"[bold]Completed:[/bold] {', '.join(report.completed) or '-'}",
        ]
        if report.failed:
            lines.append(f"[bold]Failed:[/bold] [red]{', '.join(report.failed)}[/red]")
        if report.reason:
            lines.append(f"[bold]Reason:[/bold] {report.reason}")
        lines.append(f"[dim]Log: {self.logger.log_file}[/dim]")
        console.print(Panel("\n".join(lines), title="Summary"))


def request_stop(workspace: WorkspaceManager, reason: str = "User requested stop") -> Path:
    """Create the stop request file picked up by running workers."""
    workspace.stop_file.parent.mkdir(parents=True, exist_ok=True)
    workspace.stop_file.write_text(f"{datetime.now().isoformat()}\n{reason}", encoding="utf-8")
    return workspace.stop_file
