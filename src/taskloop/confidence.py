"""Exit-confidence scoring for phase output.

Agents are asked to end each phase with a structured block:

    PHASE_STATUS:
      PHASE_COMPLETE: true
      FILES_MODIFIED: 3
      TESTS_STATUS: pass
      CONFIDENCE: high
      REMAINING_WORK: none

The score combines that block with keyword and filesystem evidence. It is
a pure function of its inputs: the same output and evidence always give
the same score.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from .models import ConfidenceConfig, ConfidenceEntry, Phase

STATUS_MARKER = "PHASE_STATUS:"

COMPLETION_KEYWORDS = re.compile(
    r"(all.*complete|implementation.*finished|task.*done|tests.*pass(ing|ed)|successfully.*complet)",
    re.IGNORECASE,
)

# Score weights
WEIGHT_STATUS_BLOCK = 30
WEIGHT_PHASE_COMPLETE = 20
WEIGHT_FILES_CHANGED = 15
WEIGHT_TERMINAL_STATE = 20
WEIGHT_KEYWORDS = 10
WEIGHT_TESTS_PASS = 5


@dataclass
class StatusBlock:
    """Parsed structured completion block."""
    phase_complete: Optional[bool] = None
    files_modified: Optional[str] = None
    tests_status: Optional[str] = None
    confidence: Optional[str] = None
    remaining_work: Optional[str] = None


@dataclass
class ConfidenceEvidence:
    """Facts gathered outside the agent output."""
    files_changed: bool = False
    task_in_done: bool = False


@dataclass
class ConfidenceReport:
    score: int
    status: Optional[StatusBlock]
    keyword_match: bool
    reasons: list[str] = field(default_factory=list)

    @property
    def has_status_block(self) -> bool:
        return self.status is not None

    @property
    def says_complete(self) -> bool:
        return self.status is not None and self.status.phase_complete is True


def _parse_bool(value: str) -> Optional[bool]:
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "1"):
        return True
    if lowered in ("false", "no", "0"):
        return False
    return None


def parse_status_block(output: str) -> Optional[StatusBlock]:
    """Find the last status block in ``output``.

    The block is the marker line followed by indented ``KEY: value``
    lines; an empty or unindented line ends it.
    """
    lines = output.splitlines()
    start = None
    for i, line in enumerate(lines):
        if STATUS_MARKER in line:
            start = i
    if start is None:
        return None

    block = StatusBlock()
    for line in lines[start + 1:]:
        if not line.strip() or not line[0].isspace():
            break
        key, sep, value = line.strip().partition(":")
        if not sep:
            continue
        key = key.strip().upper()
        value = value.strip()
        if key == "PHASE_COMPLETE":
            block.phase_complete = _parse_bool(value)
        elif key == "FILES_MODIFIED":
            block.files_modified = value
        elif key == "TESTS_STATUS":
            block.tests_status = value.lower()
        elif key == "CONFIDENCE":
            block.confidence = value.lower()
        elif key == "REMAINING_WORK":
            block.remaining_work = value
    return block


def has_completion_keywords(output: str) -> bool:
    return any(COMPLETION_KEYWORDS.search(line) for line in output.splitlines())


def score(output: str, evidence: ConfidenceEvidence) -> ConfidenceReport:
    """Compute a 0-100 completion confidence for one phase's output."""
    total = 0
    reasons = []

    status = parse_status_block(output)
    if status is not None:
        total += WEIGHT_STATUS_BLOCK
        reasons.append(f"status_block:+{WEIGHT_STATUS_BLOCK}")
        if status.phase_complete is True:
            total += WEIGHT_PHASE_COMPLETE
            reasons.append(f"phase_complete:+{WEIGHT_PHASE_COMPLETE}")
        if status.tests_status == "pass":
            total += WEIGHT_TESTS_PASS
            reasons.append(f"tests_pass:+{WEIGHT_TESTS_PASS}")

    if evidence.files_changed:
        total += WEIGHT_FILES_CHANGED
        reasons.append(f"files_modified:+{WEIGHT_FILES_CHANGED}")

    if evidence.task_in_done:
        total += WEIGHT_TERMINAL_STATE
        reasons.append(f"task_in_done:+{WEIGHT_TERMINAL_STATE}")

    keyword_match = has_completion_keywords(output)
    if keyword_match:
        total += WEIGHT_KEYWORDS
        reasons.append(f"keywords:+{WEIGHT_KEYWORDS}")

    return ConfidenceReport(
        score=min(total, 100),
        status=status,
        keyword_match=keyword_match,
        reasons=reasons,
    )


@dataclass
class GateDecision:
    confident: bool
    warning: Optional[str] = None
    escalate: bool = False


class CompletionGate:
    """Dual-condition completion gate.

    A phase is confidently complete only when the structured block says so,
    a heuristic signal agrees (keywords or the task reaching done), and the
    score meets the threshold. Anything less is a warning; after
    ``warn_after`` consecutive warnings the decision is escalated.
    """

    def __init__(self, config: ConfidenceConfig):
        self.config = config
        self.consecutive_low = 0

    def evaluate(self, report: ConfidenceReport, evidence: ConfidenceEvidence) -> GateDecision:
        structured = report.says_complete
        heuristic = report.keyword_match or evidence.task_in_done
        above = report.score >= self.config.threshold

        if structured and heuristic and above:
            self.consecutive_low = 0
            return GateDecision(confident=True)

        self.consecutive_low += 1
        if not report.has_status_block:
            warning = "no structured status block in output"
        elif not structured:
            warning = "status block does not report PHASE_COMPLETE: true"
        elif not heuristic:
            warning = "structured status not corroborated by completion keywords"
        else:
            warning = f"score {report.score} below threshold {self.config.threshold}"

        return GateDecision(
            confident=False,
            warning=warning,
            escalate=self.consecutive_low >= self.config.warn_after,
        )

    def to_entry(self, phase: Phase, report: ConfidenceReport, decision: GateDecision) -> ConfidenceEntry:
        return ConfidenceEntry(
            phase=phase,
            score=report.score,
            status_block=report.has_status_block,
            keyword_match=report.keyword_match,
            confident=decision.confident,
        )
