"""Git evidence for the confidence score, and task-file commits.

A phase counts as having changed files when the working tree has
uncommitted changes outside the workspace directory, or when HEAD moved
because the agent committed its own work.

Task state transitions can be committed so that clones of the project
see which tasks were started or finished. Those commits only ever cover
the tasks directory and never fail a run.
"""

import subprocess
from pathlib import Path
from typing import Optional

from rich.console import Console

from .workspace import WORKSPACE_DIR

console = Console()


class GitManager:
    """Git queries for the project, plus task-file commits."""

    def __init__(self, project_path: Path, tasks_dir: Optional[Path] = None):
        self.project_path = Path(project_path)
        self.tasks_dir = Path(tasks_dir) if tasks_dir else self.project_path / WORKSPACE_DIR / "tasks"
        self._baseline: Optional[str] = None

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command."""
        return subprocess.run(
            ["git", *args],
            cwd=self.project_path,
            capture_output=True,
            text=True,
            check=check
        )

    def is_git_repo(self) -> bool:
        """Check if the project is a git repository."""
        try:
            result = self._run("rev-parse", "--git-dir", check=False)
        except FileNotFoundError:
            return False
        return result.returncode == 0

    def head(self) -> Optional[str]:
        result = self._run("rev-parse", "HEAD", check=False)
        return result.stdout.strip() if result.returncode == 0 else None

    def mark_baseline(self) -> None:
        """Remember HEAD so commits made during a phase count as changes."""
        self._baseline = self.head() if self.is_git_repo() else None

    def changed_files(self) -> list[str]:
        """Uncommitted changes, ignoring the taskloop workspace itself."""
        result = self._run("status", "--porcelain", check=False)
        if result.returncode != 0:
            return []
        files = []
        for line in result.stdout.splitlines():
            if len(line) < 4:
                continue
            filename = line[3:].strip().strip('"')
            if filename.startswith(f"{WORKSPACE_DIR}/"):
                continue
            files.append(filename)
        return files

    def has_changes(self) -> bool:
        if not self.is_git_repo():
            return False
        if self.changed_files():
            return True
        return self._baseline is not None and self.head() != self._baseline

    def commit_task_files(self, message: str, task_id: str) -> bool:
        """Commit pending changes under the tasks directory.

        Skipped outside a git repository or when nothing under the tasks
        directory changed. Git errors are reported as warnings.

        Returns:
            True if a commit was made
        """
        if not self.is_git_repo():
            return False
        pathspec = str(self.tasks_dir)
        added = self._run("add", "--all", "--", pathspec, check=False)
        if added.returncode != 0:
            console.print(f"[yellow]Warning: could not stage task files: {added.stderr.strip()}[/yellow]")
            return False
        if self._run("diff", "--cached", "--quiet", "--", pathspec, check=False).returncode == 0:
            return False
        committed = self._run(
            "commit", "--no-verify", "-m", f"{message} [{task_id}]", "--", pathspec, check=False,
        )
        if committed.returncode != 0:
            console.print(f"[yellow]Warning: could not commit task files: {committed.stderr.strip()}[/yellow]")
            return False
        return True
