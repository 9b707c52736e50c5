"""The 8-phase pipeline as an explicit finite-state machine.

The machine is a plain value: it knows the transition table, which phases
are skipped and the last completed phase, and is testable without invoking
any agent. Resume position after a crash is the furthest point proven by
either the checkpoint or the task's work log.
"""

import re
from typing import Iterable, Optional

from .errors import InvalidPhaseTransition
from .models import PHASE_ORDER, Checkpoint, OrchestratorConfig, Phase, WorkLogEntry

# Each phase leads to the next; verify leads to the terminal state (None)
TRANSITIONS: dict[Phase, Optional[Phase]] = {
    phase: (PHASE_ORDER[i + 1] if i + 1 < len(PHASE_ORDER) else None)
    for i, phase in enumerate(PHASE_ORDER)
}

PHASE_COMPLETE_TITLE = "Phase {phase} complete"
_PHASE_COMPLETE_RE = re.compile(r"^Phase (?P<phase>[a-z]+) complete\b", re.IGNORECASE)


def phase_complete_title(phase: Phase) -> str:
    return PHASE_COMPLETE_TITLE.format(phase=phase.value)


def work_log_evidence(entries: Iterable[WorkLogEntry]) -> int:
    """Index of the furthest phase the work log records as complete, or -1."""
    furthest = -1
    for entry in entries:
        match = _PHASE_COMPLETE_RE.match(entry.title)
        if not match:
            continue
        try:
            furthest = max(furthest, Phase(match.group("phase").lower()).index)
        except ValueError:
            continue
    return furthest


def resume_index(checkpoint: Optional[Checkpoint], entries: Iterable[WorkLogEntry]) -> int:
    """Last completed phase index from checkpoint and log evidence combined."""
    from_checkpoint = checkpoint.last_completed_phase if checkpoint else -1
    return max(from_checkpoint, work_log_evidence(entries))


class PhaseMachine:
    """Linear pipeline state: the current phase or done.

    Only the current phase can be completed or skipped; there is no
    branching and no going back.
    """

    def __init__(self, skipped: Iterable[Phase] = (), last_completed: int = -1):
        if not -1 <= last_completed < len(PHASE_ORDER):
            raise ValueError(f"last_completed out of range: {last_completed}")
        self.skipped = frozenset(skipped)
        self.last_completed = last_completed

    @classmethod
    def for_task(
        cls,
        config: OrchestratorConfig,
        checkpoint: Optional[Checkpoint],
        entries: Iterable[WorkLogEntry] = (),
    ) -> "PhaseMachine":
        skipped = [phase for phase in PHASE_ORDER if config.phase(phase).skip]
        return cls(skipped=skipped, last_completed=resume_index(checkpoint, entries))

    @property
    def current(self) -> Optional[Phase]:
        if self.last_completed + 1 >= len(PHASE_ORDER):
            return None
        return PHASE_ORDER[self.last_completed + 1]

    @property
    def is_done(self) -> bool:
        return self.current is None

    def is_skipped(self, phase: Phase) -> bool:
        return phase in self.skipped

    def remaining(self) -> list[Phase]:
        return PHASE_ORDER[self.last_completed + 1:]

    def complete(self, phase: Phase) -> Optional[Phase]:
        """Mark the current phase complete and return the next one.

        Raises:
            InvalidPhaseTransition: If ``phase`` is not the current phase
        """
        current = self.current
        if phase != current:
            raise InvalidPhaseTransition(current.value if current else None, phase.value)
        self.last_completed = phase.index
        return TRANSITIONS[phase]

    def skip(self, phase: Phase) -> Optional[Phase]:
        """Pass over a configured-skip phase."""
        if phase not in self.skipped:
            raise InvalidPhaseTransition(self.current.value if self.current else None, phase.value)
        return self.complete(phase)
