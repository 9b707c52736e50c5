"""Workspace management for the .taskloop/ directory structure.

Handles creation of the shared directory tree every worker cooperates
over, and the atomic write primitive every mutation goes through.
"""

import os
import tempfile
from pathlib import Path
from typing import Optional

from .errors import IOFailure
from .models import TaskState

WORKSPACE_DIR = ".taskloop"

# Temp files never end in .md or .lock so listings ignore them
TEMP_SUFFIX = ".tmp"


def write_text_atomic(path: Path, text: str) -> None:
    """Write a file so readers see either the old or the new content.

    The temp file lives in the destination directory so ``os.replace`` is a
    same-filesystem rename.

    Raises:
        IOFailure: If the write or rename fails
    """
    try:
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=TEMP_SUFFIX, dir=str(path.parent))
    except OSError as e:
        raise IOFailure(f"Cannot create temp file ({e})", path.parent) from e
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except OSError as e:
        raise IOFailure(f"Atomic write failed ({e})", path) from e
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def create_exclusive(path: Path, text: str) -> None:
    """Create a file that must not already exist, fully written.

    The content is written to a temp file first and hard-linked into place,
    so the destination appears with its final content and the link fails
    if another process created it first.

    Raises:
        FileExistsError: If ``path`` already exists
        IOFailure: On any other filesystem error
    """
    try:
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=TEMP_SUFFIX, dir=str(path.parent))
    except OSError as e:
        raise IOFailure(f"Cannot create temp file ({e})", path.parent) from e
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.link(tmp, path)
    except FileExistsError:
        raise
    except OSError as e:
        raise IOFailure(f"Exclusive create failed ({e})", path) from e
    finally:
        os.unlink(tmp)


class WorkspaceManager:
    """Manages the .taskloop/ workspace directory structure.

    Directory structure:
        .taskloop/
        ├── manifest.yaml           # Project configuration
        ├── stop-requested          # Present while a graceful stop is pending
        ├── tasks/
        │   ├── 1.blocked/          # {id}.md task records
        │   ├── 2.todo/
        │   ├── 3.doing/
        │   └── 4.done/
        ├── locks/                  # {id}.lock advisory locks
        ├── state/
        │   ├── checkpoints/        # {id}.json resumable progress
        │   │   └── archive/
        │   ├── circuit-{agent}.json
        │   └── rate-limit.json
        └── logs/
            └── {run_id}.jsonl      # Run event logs
    """

    def __init__(self, project_path: Path, root: Optional[Path] = None):
        """Initialize workspace manager.

        Args:
            project_path: Path to the project directory
            root: Override for the workspace directory (defaults to
                project_path/.taskloop)
        """
        self.project_path = Path(project_path).resolve()
        self.root = Path(root).resolve() if root else self.project_path / WORKSPACE_DIR
        self.tasks_dir = self.root / "tasks"
        self.locks_dir = self.root / "locks"
        self.state_dir = self.root / "state"
        self.checkpoints_dir = self.state_dir / "checkpoints"
        self.checkpoint_archive_dir = self.checkpoints_dir / "archive"
        self.logs_dir = self.root / "logs"

        self.manifest_file = self.root / "manifest.yaml"
        self.stop_file = self.root / "stop-requested"
        self.rate_limit_file = self.state_dir / "rate-limit.json"

    def ensure_structure(self) -> None:
        """Create the .taskloop/ directory structure if it doesn't exist."""
        for state in TaskState:
            self.state_path(state).mkdir(parents=True, exist_ok=True)
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        self.checkpoint_archive_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        """Check if the workspace exists."""
        return self.tasks_dir.exists()

    def state_path(self, state: TaskState) -> Path:
        return self.tasks_dir / state.folder

    def circuit_state_file(self, agent: str) -> Path:
        return self.state_dir / f"circuit-{agent}.json"

    def run_log_path(self, run_id: str) -> Path:
        return self.logs_dir / f"{run_id}.jsonl"

    def phase_log_path(self, run_id: str, task_id: str, phase: str, attempt: int) -> Path:
        """Raw agent output for one phase attempt."""
        directory = self.logs_dir / run_id / task_id
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{phase}-{attempt}.log"

    def update_gitignore(self) -> bool:
        """Ignore locks, state and logs; task records stay tracked.

        Returns:
            True if .gitignore was modified
        """
        gitignore = self.project_path / ".gitignore"
        entries = [
            f"{WORKSPACE_DIR}/locks/",
            f"{WORKSPACE_DIR}/state/",
            f"{WORKSPACE_DIR}/logs/",
            f"{WORKSPACE_DIR}/stop-requested",
        ]
        existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
        missing = [e for e in entries if e not in existing.splitlines()]
        if not missing:
            return False

        block = "\n# taskloop runtime state\n" + "\n".join(missing) + "\n"
        if existing and not existing.endswith("\n"):
            block = "\n" + block
        with open(gitignore, "a", encoding="utf-8") as f:
            f.write(block)
        return True
