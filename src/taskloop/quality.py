"""Quality gate commands run after gated phases.

The configured build, lint and test commands must all exit 0 for a gated
phase (implement and test by default) to count as successful. Failure
output is fed back into the next attempt of the same phase.
"""

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .models import QualityConfig

# Failure output kept for the retry prompt
DETAIL_LIMIT = 4000


@dataclass
class GateResult:
    """Result of a single gate command."""
    name: str
    command: str
    passed: bool
    message: str
    details: Optional[str] = None


@dataclass
class GateReport:
    """Aggregated results from all gate commands."""
    results: list[GateResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    @property
    def failures(self) -> list[GateResult]:
        return [r for r in self.results if not r.passed]

    def failure_context(self) -> str:
        """Text appended to the next phase attempt after a failing gate."""
        sections = []
        for r in self.failures:
            sections.append(f"### {r.name}: `{r.command}`\n{r.message}\n\n```\n{r.details or ''}\n```")
        return "\n\n".join(sections)


class QualityGate:
    """Runs the configured gate commands in the project directory."""

    def __init__(self, project_path: Path, config: QualityConfig):
        self.project_path = Path(project_path)
        self.config = config

    @property
    def configured(self) -> bool:
        return bool(self.config.commands)

    def run(self) -> GateReport:
        """Run build, lint and test commands in that order, stopping at the first failure."""
        report = GateReport()
        for name, command in self.config.commands:
            result = self._run_command(name, command)
            report.results.append(result)
            if not result.passed:
                break
        return report

    def _run_command(self, name: str, command: str) -> GateResult:
        """Run a shell command and check its exit code.

        Args:
            name: Gate name (build, lint, test)
            command: Shell command to execute

        Returns:
            GateResult indicating pass/fail
        """
        timeout = self.config.timeout_seconds
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=self.project_path,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return GateResult(
                name=name,
                command=command,
                passed=False,
                message=f"Timed out after {timeout} seconds",
            )

        if result.returncode == 0:
            return GateResult(name=name, command=command, passed=True, message="Passed")

        # Keep the tail; test runners print the summary last
        output = (result.stdout + result.stderr).strip()
        if len(output) > DETAIL_LIMIT:
            output = "... (truncated)\n" + output[-DETAIL_LIMIT:]
        return GateResult(
            name=name,
            command=command,
            passed=False,
            message=f"Failed (exit code {result.returncode})",
            details=output,
        )
