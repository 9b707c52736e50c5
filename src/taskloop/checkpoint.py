"""Per-task checkpoint persistence.

A checkpoint is rewritten after every phase attempt so a successor worker
can resume mid-pipeline with the same agent session. Completed tasks have
their checkpoint archived; checkpoints older than the configured age are
archived on load and treated as absent.
"""

import json
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError
from rich.console import Console

from .errors import IOFailure
from .models import Checkpoint
from .workspace import WorkspaceManager, write_text_atomic

console = Console()


class CheckpointStore:
    """Loads, saves and archives task checkpoints."""

    def __init__(
        self,
        workspace: WorkspaceManager,
        max_age_hours: float = 72.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.workspace = workspace
        self.max_age = timedelta(hours=max_age_hours)
        self.clock = clock

    def path_for(self, task_id: str) -> Path:
        return self.workspace.checkpoints_dir / f"{task_id}.json"

    def load(self, task_id: str) -> Optional[Checkpoint]:
        """Load the checkpoint for a task.

        Returns:
            Checkpoint, or None if absent, expired or unreadable
        """
        path = self.path_for(task_id)
        if not path.exists():
            return None

        try:
            checkpoint = Checkpoint.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as e:
            console.print(f"[yellow]Discarding unreadable checkpoint for {task_id}: {e}[/yellow]")
            self.archive(task_id, suffix="corrupt")
            return None

        if self.is_expired(checkpoint):
            console.print(f"[dim]Checkpoint for {task_id} expired - starting fresh[/dim]")
            self.archive(task_id, suffix="expired")
            return None
        return checkpoint

    def is_expired(self, checkpoint: Checkpoint) -> bool:
        return self.clock() - checkpoint.updated_at > self.max_age

    def save(self, checkpoint: Checkpoint) -> None:
        checkpoint.updated_at = self.clock()
        self.workspace.checkpoints_dir.mkdir(parents=True, exist_ok=True)
        write_text_atomic(self.path_for(checkpoint.task_id), checkpoint.model_dump_json(indent=2))

    def archive(self, task_id: str, suffix: str = "") -> Optional[Path]:
        """Move a checkpoint into the archive directory.

        Returns:
            Archived path, or None if there was nothing to archive
        """
        path = self.path_for(task_id)
        if not path.exists():
            return None
        self.workspace.checkpoint_archive_dir.mkdir(parents=True, exist_ok=True)
        stamp = self.clock().strftime("%Y%m%d-%H%M%S")
        name = f"{task_id}_{stamp}{'_' + suffix if suffix else ''}.json"
        target = self.workspace.checkpoint_archive_dir / name
        try:
            os.replace(path, target)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise IOFailure(f"Cannot archive checkpoint ({e})", path) from e
        return target

    def rekey(self, old_task_id: str, new_task_id: str) -> None:
        checkpoint = self.load(old_task_id)
        if checkpoint is None:
            return
        checkpoint.task_id = new_task_id
        self.save(checkpoint)
        self.path_for(old_task_id).unlink(missing_ok=True)

    def clear(self, task_id: str) -> bool:
        """Delete a checkpoint without archiving it."""
        path = self.path_for(task_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
