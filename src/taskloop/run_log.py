"""Run logging for JSONL-based observability.

Every decision a worker takes is written as one JSON line, including:
- Run start/end
- Task selection and orphan handling
- Phase start/end, retries and fallbacks
- Quality gate and confidence results
- Circuit breaker and rate limiter events

Logs are written with immediate flush (os.fsync) so a tail on the file
follows the run live, and a crashed worker leaves a complete trail.
"""

import json
import os
from datetime import datetime
from typing import Any, Optional

from .models import RunEventType
from .workspace import WorkspaceManager


class RunLogger:
    """JSONL run logger with real-time flush.

    Example output:
        {"type": "run_start", "timestamp": "...", "run_id": "...", "worker_id": "w1"}
        {"type": "selection", "timestamp": "...", "task_id": "002-001-sample", "reason": "todo"}
        {"type": "phase_end", "timestamp": "...", "phase": "plan", "attempt": 1, "success": true}
        {"type": "run_end", "timestamp": "...", "outcome": "completed", "duration_seconds": 12.5}

    Output truncation:
        Agent output attached to events is truncated at 4KB; full output goes
        to the per-attempt phase log instead.
    """

    DEFAULT_TRUNCATION_LIMIT = 4000

    def __init__(
        self,
        workspace: WorkspaceManager,
        run_id: str,
        worker_id: str,
        output_truncation_limit: int = DEFAULT_TRUNCATION_LIMIT,
    ):
        """Initialize run logger.

        Args:
            workspace: WorkspaceManager instance
            run_id: Unique run identifier
            worker_id: Identity of the worker process
            output_truncation_limit: Max chars of output per event (0 disables)
        """
        self.workspace = workspace
        self.run_id = run_id
        self.worker_id = worker_id
        self.output_truncation_limit = output_truncation_limit

        workspace.logs_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = workspace.run_log_path(run_id)

        self._started_at = datetime.now()
        self._counts: dict[str, int] = {}
        self._file_handle: Optional[Any] = None

    def _write_entry(self, entry: dict) -> None:
        """Write a log entry with immediate flush.

        Args:
            entry: Dict to write as JSON line
        """
        if "timestamp" not in entry:
            entry["timestamp"] = datetime.now().isoformat()

        if self._file_handle is None:
            self._file_handle = open(self.log_file, "a", encoding="utf-8")

        self._file_handle.write(json.dumps(entry, default=str) + "\n")
        self._file_handle.flush()

        try:
            os.fsync(self._file_handle.fileno())
        except (OSError, AttributeError):
            pass  # Some filesystems don't support fsync

    def truncate(self, text: Optional[str]) -> Optional[str]:
        limit = self.output_truncation_limit
        if text is None or limit <= 0 or len(text) <= limit:
            return text
        return text[-limit:]

    def log_event(self, event_type: RunEventType, **fields: Any) -> None:
        """Log a structured event.

        Args:
            event_type: Kind of event
            **fields: Event payload (task_id, phase, attempt, ...)
        """
        self._counts[event_type.value] = self._counts.get(event_type.value, 0) + 1
        if "output" in fields:
            fields["output"] = self.truncate(fields["output"])
        self._write_entry({"type": event_type.value, "worker_id": self.worker_id, **fields})

    def log_run_start(self, config: Optional[dict] = None, max_tasks: Optional[int] = None) -> None:
        self.log_event(
            RunEventType.RUN_START,
            run_id=self.run_id,
            pid=os.getpid(),
            max_tasks=max_tasks,
            config=config or {},
        )

    def log_run_end(self, outcome: str, reason: Optional[str] = None, **fields: Any) -> None:
        """Log run end with the event counts seen during the run.

        Args:
            outcome: completed, no_work, circuit_open, interrupted or error
            reason: Human-readable detail
        """
        duration = (datetime.now() - self._started_at).total_seconds()
        self.log_event(
            RunEventType.RUN_END,
            run_id=self.run_id,
            outcome=outcome,
            reason=reason,
            duration_seconds=round(duration, 2),
            event_counts=dict(self._counts),
            **fields,
        )

    def close(self) -> None:
        """Close the log file handle."""
        if self._file_handle is not None:
            self._file_handle.close()
            self._file_handle = None

    def __enter__(self) -> "RunLogger":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def read_run_log(path) -> list[dict]:
    """Parse a JSONL run log, skipping a torn final line."""
    entries = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return entries
