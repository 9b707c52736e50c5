"""CLI interface for taskloop."""

import asyncio
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .agents import AGENT_CLASSES
from .cli_utils import is_available
from .checkpoint import CheckpointStore
from .config import load_config
from .errors import AlreadyExists, ConfigError, NotFound, StoreCorruption, TaskloopError
from .locks import LockManager
from .models import OrchestratorConfig, Priority, TaskId, TaskRecord, TaskState
from .orchestrator import EXIT_CODES, Orchestrator, RunOutcome, request_stop
from .task_store import TaskStore
from .workspace import WorkspaceManager

console = Console()

# Windows-compatible symbols (cp1252 doesn't support Unicode checkmarks)
if sys.platform == "win32":
    SYM_OK = "[OK]"
    SYM_FAIL = "[X]"
else:
    SYM_OK = "✓"
    SYM_FAIL = "✗"

EXIT_CONFIG_ERROR = 1

AGENT_NAMES = sorted(AGENT_CLASSES)

MANIFEST_TEMPLATE = """\
# taskloop manifest - see `taskloop --help`
agent:
  name: claude
  # model: opus
  # fallbacks:
  #   - agent: codex
  #     model: gpt-5
quality:
  # test_command: pytest -q
  # lint_command: ruff check .
  # build_command: python -m build
# timeouts:
#   implement: 5400
# skip_phases:
#   docs: true
# circuit_breaker:
#   no_progress_threshold: 3
#   output_decline_percent: 70
# git:
#   commit_task_files: true
"""

STATE_COLORS = {
    TaskState.BLOCKED: "red",
    TaskState.TODO: "white",
    TaskState.DOING: "yellow",
    TaskState.DONE: "green",
}

PRIORITY_CHOICES = [p.name.lower() for p in Priority] + [str(p.value) for p in Priority]


def _parse_priority(value: str) -> Priority:
    if value.isdigit():
        return Priority(int(value))
    return Priority[value.upper()]


def _slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:50].rstrip("-") or "task"


def _workspace(project_path: str) -> WorkspaceManager:
    return WorkspaceManager(Path(project_path))


def _build_config(
    workspace: WorkspaceManager,
    agent: Optional[str] = None,
    model: Optional[str] = None,
    dry_run: bool = False,
    no_prompt: bool = False,
) -> OrchestratorConfig:
    overrides: dict = {}
    if agent or model:
        overrides["agent"] = {}
        if agent:
            overrides["agent"]["agent"] = agent
        if model:
            overrides["agent"]["model"] = model
    if dry_run:
        overrides["dry_run"] = True
    if no_prompt:
        overrides["orphans"] = {"auto_resume": True}
    return load_config(workspace.manifest_file, overrides=overrides)


def _run_orchestrator(
    project_path: str,
    agent: Optional[str],
    model: Optional[str],
    dry_run: bool,
    no_prompt: bool,
    worker_id: Optional[str],
    max_tasks: Optional[int] = None,
    task_id: Optional[str] = None,
) -> int:
    workspace = _workspace(project_path)
    try:
        config = _build_config(workspace, agent, model, dry_run, no_prompt)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        return EXIT_CONFIG_ERROR

    orchestrator = Orchestrator(Path(project_path), config, worker_id=worker_id, workspace=workspace)
    try:
        report = asyncio.run(orchestrator.run(max_tasks=max_tasks, task_id=task_id))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return EXIT_CODES[RunOutcome.INTERRUPTED]
    except TaskloopError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1
    return report.exit_code


def run_options(func):
    """Options shared by `run` and `task`."""
    func = click.option('--project', '-p', 'project_path', default='.', type=click.Path(exists=True, file_okay=False),
                        help='Project directory containing .taskloop/')(func)
    func = click.option('--agent', type=click.Choice(AGENT_NAMES + ["mock"]), help='Agent CLI to use')(func)
    func = click.option('--model', help='Model for the agent')(func)
    func = click.option('--dry-run', is_flag=True, help='Walk the pipeline without invoking agents')(func)
    func = click.option('--no-prompt', is_flag=True, help='Resume orphaned tasks without asking')(func)
    func = click.option('--worker-id', help='Worker identity (defaults to hostname-pid)')(func)
    return func


@click.group()
@click.version_option()
def main():
    """taskloop - phase-pipeline task runner for autonomous coding agents."""
    pass


@main.command()
@click.argument('max_tasks', required=False, type=click.IntRange(min=1))
@run_options
def run(
    max_tasks: Optional[int],
    project_path: str,
    agent: Optional[str],
    model: Optional[str],
    dry_run: bool,
    no_prompt: bool,
    worker_id: Optional[str],
):
    """Pick up and execute tasks until no work remains.

    MAX_TASKS bounds how many tasks this worker runs (default: no bound).
    Run several workers against the same project to work in parallel.
    """
    sys.exit(_run_orchestrator(project_path, agent, model, dry_run, no_prompt, worker_id, max_tasks=max_tasks))


@main.command()
@click.argument('task_id')
@run_options
def task(
    task_id: str,
    project_path: str,
    agent: Optional[str],
    model: Optional[str],
    dry_run: bool,
    no_prompt: bool,
    worker_id: Optional[str],
):
    """Execute one specific task.

    The task must be in todo with its dependencies done, or an orphaned
    (or this worker's own) task in doing.
    """
    sys.exit(_run_orchestrator(project_path, agent, model, dry_run, no_prompt, worker_id, max_tasks=1,
                               task_id=task_id))


@main.command()
@click.argument('project_path', default='.', type=click.Path(exists=True, file_okay=False))
def init(project_path: str):
    """Create the .taskloop/ workspace in a project."""
    workspace = _workspace(project_path)
    workspace.ensure_structure()
    console.print(f"[green]{SYM_OK}[/green] Workspace at {workspace.root}")

    if not workspace.manifest_file.exists():
        workspace.manifest_file.write_text(MANIFEST_TEMPLATE, encoding="utf-8")
        console.print(f"[green]{SYM_OK}[/green] Wrote {workspace.manifest_file}")
    if workspace.update_gitignore():
        console.print(f"[green]{SYM_OK}[/green] Updated .gitignore")


@main.command()
@click.argument('title')
@click.option('--project', '-p', 'project_path', default='.', type=click.Path(exists=True, file_okay=False))
@click.option('--priority', type=click.Choice(PRIORITY_CHOICES, case_sensitive=False), default='medium',
              help='Priority class')
@click.option('--blocked-by', multiple=True, help='Task id that must be done first (repeatable)')
@click.option('--description', '-d', default='', help='Task body text')
def add(title: str, project_path: str, priority: str, blocked_by: tuple[str, ...], description: str):
    """Create a new task."""
    workspace = _workspace(project_path)
    workspace.ensure_structure()
    store = TaskStore(workspace)

    for dep in blocked_by:
        try:
            TaskId.parse(dep)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--blocked-by") from None

    record = TaskRecord(
        id=TaskId(priority=_parse_priority(priority), sequence=store.next_sequence(), slug=_slugify(title)),
        title=title,
        blocked_by=list(blocked_by),
        body=description,
    )
    if not store.dependencies_met(record):
        record = record.model_copy(update={"state": TaskState.BLOCKED})

    try:
        created = store.create(record)
    except AlreadyExists as e:
        console.print(f"[red]{SYM_FAIL} {e}[/red]")
        sys.exit(1)
    console.print(f"[green]{SYM_OK}[/green] Created {created.task_id} in {created.state.value}")


@main.command()
@click.argument('task_id')
@click.argument('priority', type=click.Choice(PRIORITY_CHOICES, case_sensitive=False))
@click.option('--project', '-p', 'project_path', default='.', type=click.Path(exists=True, file_okay=False))
def reprioritize(task_id: str, priority: str, project_path: str):
    """Change a task's priority class (renames the task)."""
    workspace = _workspace(project_path)
    store = TaskStore(workspace)
    config = load_config(workspace.manifest_file)
    locks = LockManager(workspace, config.locks)
    worker_id = f"cli-reprioritize-{datetime.now().strftime('%H%M%S%f')}"

    new_id = task_id
    if not locks.try_acquire(task_id, worker_id):
        console.print(f"[red]{SYM_FAIL} {task_id} is locked by another worker[/red]")
        sys.exit(1)
    try:
        state = store.locate(task_id)
        new_id = store.reprioritize(task_id, state, _parse_priority(priority))
        if new_id != task_id:
            locks.rekey(task_id, new_id, worker_id)
            CheckpointStore(workspace, config.checkpoint_max_age_hours).rekey(task_id, new_id)
    except (NotFound, AlreadyExists, StoreCorruption) as e:
        console.print(f"[red]{SYM_FAIL} {e}[/red]")
        sys.exit(1)
    finally:
        locks.release(new_id, worker_id)
        locks.release(task_id, worker_id)
    console.print(f"[green]{SYM_OK}[/green] {task_id} -> {new_id}")


@main.command()
@click.option('--project', '-p', 'project_path', default='.', type=click.Path(exists=True, file_okay=False))
def status(project_path: str):
    """Show task counts and every task by state."""
    workspace = _workspace(project_path)
    if not workspace.exists():
        console.print(f"[red]No workspace at {workspace.root}. Run 'taskloop init' first.[/red]")
        sys.exit(1)

    store = TaskStore(workspace)
    locks = LockManager(workspace, load_config(workspace.manifest_file).locks)

    table = Table(title=f"Tasks: {workspace.project_path.name}")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Assigned To")
    table.add_column("Lock")

    for state in TaskState:
        color = STATE_COLORS[state]
        for record in store.list(state):
            lock = locks.read(record.task_id)
            if lock is None:
                lock_text = "-"
            elif locks.is_stale(lock):
                lock_text = f"[red]stale ({lock.owner})[/red]"
            else:
                lock_text = lock.owner
            table.add_row(
                record.task_id,
                record.title,
                f"[{color}]{state.value}[/{color}]",
                record.id.priority.label,
                record.assigned_to or "-",
                lock_text,
            )

    console.print(table)

    counts = store.counts()
    console.print(
        "\n" + "  ".join(f"[{STATE_COLORS[s]}]{s.value.capitalize()}:[/{STATE_COLORS[s]}] {counts[s]}"
                         for s in TaskState)
    )

    agents = "  ".join(
        f"[green]{SYM_OK}[/green] {name}" if is_available(cls.executable[0]) else f"[dim]{SYM_FAIL} {name}[/dim]"
        for name, cls in sorted(AGENT_CLASSES.items())
    )
    console.print(f"[bold]Agents:[/bold] {agents}")


@main.command()
@click.option('--project', '-p', 'project_path', default='.', type=click.Path(exists=True, file_okay=False))
def locks(project_path: str):
    """List task locks and whether they are stale."""
    workspace = _workspace(project_path)
    manager = LockManager(workspace, load_config(workspace.manifest_file).locks)
    records = manager.list_locks()
    if not records:
        console.print("[dim]No locks held[/dim]")
        return

    now = datetime.now()
    table = Table(title="Locks")
    table.add_column("Task", style="cyan")
    table.add_column("Owner")
    table.add_column("PID", justify="right")
    table.add_column("Host")
    table.add_column("Heartbeat Age", justify="right")
    table.add_column("State")
    for lock in records:
        age = int((now - lock.heartbeat_at).total_seconds())
        stale = manager.is_stale(lock, now)
        table.add_row(
            lock.task_id,
            lock.owner,
            str(lock.pid),
            lock.hostname,
            f"{age}s",
            "[red]stale[/red]" if stale else "[green]active[/green]",
        )
    console.print(table)


@main.command()
@click.option('--project', '-p', 'project_path', default='.', type=click.Path(exists=True, file_okay=False))
@click.option('--reason', default='User requested stop', help='Reason recorded in the stop file')
def stop(project_path: str, reason: str):
    """Ask running workers to stop after their current phase."""
    path = request_stop(_workspace(project_path), reason)
    console.print(f"[green]{SYM_OK}[/green] Stop requested ({path})")


if __name__ == "__main__":
    main()
