"""Agent runners - one class per agent CLI behind a single invoke interface.

Provides:
- BaseAgent: Abstract base with subprocess, timeout and cancellation handling
- ClaudeAgent, CodexAgent, GeminiAgent, CopilotAgent, OpencodeAgent, CursorAgent
- MockAgent: Scripted agent for tests and dry runs
- create_agent: Factory keyed by agent name

The orchestrator only reads the exit code, the output text and an optional
session handle from any of them.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from .cli_utils import find_executable
from .errors import ConfigError
from .models import AgentResult, AgentSelection

# Conventional shell exit codes for synthesized results
EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127


# =============================================================================
# Base Agent (Abstract)
# =============================================================================

class BaseAgent(ABC):
    """Abstract base class for agent CLI runners.

    Provides common functionality:
    - Process launch with the project as working directory
    - Wall-clock timeout that kills the process
    - Cancellation that kills the process and re-raises

    Subclasses only describe the command line.
    """

    name: str = ""
    executable: Sequence[str] = ()
    default_model: Optional[str] = None

    def __init__(
        self,
        model: Optional[str] = None,
        cwd: Optional[Path] = None,
        extra_args: Sequence[str] = (),
        env: Optional[dict[str, str]] = None,
    ):
        self.model = model or self.default_model
        self.cwd = Path(cwd) if cwd else None
        self.extra_args = list(extra_args)
        self.env = env

    @abstractmethod
    def build_command(self, prompt: str, resume_handle: Optional[str] = None) -> list[str]:
        """Full argv for one non-interactive, fully autonomous invocation."""
        pass

    def normalize_output(self, raw: str) -> str:
        """Plain text used for status-block and keyword scanning."""
        return raw

    def extract_session_handle(self, raw: str) -> Optional[str]:
        return None

    async def invoke(
        self,
        phase_input: str,
        timeout: float,
        resume_handle: Optional[str] = None,
    ) -> AgentResult:
        """Run the agent once.

        Args:
            phase_input: Rendered phase prompt
            timeout: Wall-clock limit in seconds
            resume_handle: Session handle from an earlier phase, if any

        Returns:
            AgentResult; a timeout is reported as ``timed_out`` rather than raised
        """
        command = self.build_command(phase_input, resume_handle)
        resolved = find_executable(command[0])
        if resolved:
            command[0] = resolved
        started = time.monotonic()
        chunks: list[bytes] = []

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.cwd) if self.cwd else None,
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            return self._result(EXIT_NOT_FOUND, f"{command[0]}: command not found", started)

        try:
            await asyncio.wait_for(self._drain(proc, chunks), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raw = b"".join(chunks).decode("utf-8", errors="replace")
            return self._result(
                EXIT_TIMEOUT,
                raw + f"\n[taskloop] {self.name} timed out after {timeout:.0f}s",
                started,
                timed_out=True,
            )
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        raw = b"".join(chunks).decode("utf-8", errors="replace")
        return self._result(proc.returncode or 0, raw, started)

    async def _drain(self, proc: asyncio.subprocess.Process, chunks: list[bytes]) -> None:
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(65536)
            if not chunk:
                break
            chunks.append(chunk)
        await proc.wait()

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()

    def _result(self, exit_code: int, raw: str, started: float, timed_out: bool = False) -> AgentResult:
        return AgentResult(
            exit_code=exit_code,
            output=self.normalize_output(raw),
            session_handle=self.extract_session_handle(raw),
            timed_out=timed_out,
            duration_seconds=round(time.monotonic() - started, 2),
            agent=self.name,
            model=self.model,
        )


# =============================================================================
# Agent CLI implementations
# =============================================================================

class ClaudeAgent(BaseAgent):
    """Claude CLI in stream-json mode; supports resuming a prior session."""

    name = "claude"
    executable = ("claude",)
    default_model = "opus"

    def build_command(self, prompt: str, resume_handle: Optional[str] = None) -> list[str]:
        cmd = [*self.executable, "--dangerously-skip-permissions", "--permission-mode", "bypassPermissions"]
        if self.model:
            cmd += ["--model", self.model]
        cmd += ["--output-format", "stream-json", "--verbose"]
        if resume_handle:
            cmd += ["--resume", resume_handle]
        return cmd + self.extra_args + ["-p", prompt]

    @staticmethod
    def _events(raw: str):
        for line in raw.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue

    def normalize_output(self, raw: str) -> str:
        texts = []
        for event in self._events(raw):
            if event.get("type") == "assistant":
                for block in event.get("message", {}).get("content", []) or []:
                    if isinstance(block, dict) and block.get("type") == "text":
                        texts.append(block.get("text", ""))
            elif event.get("type") == "result" and isinstance(event.get("result"), str):
                texts.append(event["result"])
        return "\n".join(texts) if texts else raw

    def extract_session_handle(self, raw: str) -> Optional[str]:
        handle = None
        for event in self._events(raw):
            if event.get("session_id"):
                handle = event["session_id"]
        return handle


class CodexAgent(BaseAgent):
    name = "codex"
    executable = ("codex", "exec")
    default_model = "gpt-5"

    def build_command(self, prompt: str, resume_handle: Optional[str] = None) -> list[str]:
        cmd = [*self.executable, "--dangerously-bypass-approvals-and-sandbox"]
        if self.model:
            cmd += ["-m", self.model]
        return cmd + self.extra_args + [prompt]


class GeminiAgent(BaseAgent):
    name = "gemini"
    executable = ("gemini",)
    default_model = "gemini-2.5-pro"

    def build_command(self, prompt: str, resume_handle: Optional[str] = None) -> list[str]:
        cmd = [*self.executable, "--yolo"]
        if self.model:
            cmd += ["-m", self.model]
        return cmd + self.extra_args + ["-p", prompt]


class CopilotAgent(BaseAgent):
    name = "copilot"
    executable = ("copilot",)
    default_model = "claude-sonnet-4.5"

    def build_command(self, prompt: str, resume_handle: Optional[str] = None) -> list[str]:
        cmd = [*self.executable, "--allow-all-tools", "--allow-all-paths"]
        if self.model:
            cmd += ["-m", self.model]
        return cmd + self.extra_args + ["-p", prompt]


class OpencodeAgent(BaseAgent):
    name = "opencode"
    executable = ("opencode", "run")
    default_model = "claude-sonnet-4"

    def build_command(self, prompt: str, resume_handle: Optional[str] = None) -> list[str]:
        cmd = [*self.executable, "--auto-approve"]
        if self.model:
            cmd += ["--model", self.model]
        return cmd + self.extra_args + [prompt]


class CursorAgent(BaseAgent):
    name = "cursor"
    executable = ("cursor", "agent")
    default_model = "claude-sonnet-4"

    def build_command(self, prompt: str, resume_handle: Optional[str] = None) -> list[str]:
        cmd = list(self.executable)
        if self.model:
            cmd += ["--model", self.model]
        return cmd + self.extra_args + ["-p", prompt]


# =============================================================================
# Mock Agent (for testing and dry runs)
# =============================================================================

MOCK_COMPLETE_OUTPUT = """[MOCK] Phase work simulated. All tasks complete.

PHASE_STATUS:
  PHASE_COMPLETE: true
  FILES_MODIFIED: 0
  TESTS_STATUS: pass
  CONFIDENCE: high
  REMAINING_WORK: none
"""

MockResponse = Union[AgentResult, Callable[[str], AgentResult], BaseException]


class MockAgent:
    """Scripted agent without any external process.

    Responses are consumed in order; the last one repeats. A response may
    be an AgentResult, a callable receiving the phase input, or an
    exception to raise. ``delay`` makes each call sleep, for timeout tests.
    """

    def __init__(
        self,
        responses: Optional[Sequence[MockResponse]] = None,
        name: str = "mock",
        model: Optional[str] = None,
        delay: float = 0.0,
    ):
        self.name = name
        self.model = model
        self.delay = delay
        self.responses = list(responses) if responses else [
            AgentResult(exit_code=0, output=MOCK_COMPLETE_OUTPUT)
        ]
        self.calls: list[dict] = []

    async def invoke(
        self,
        phase_input: str,
        timeout: float,
        resume_handle: Optional[str] = None,
    ) -> AgentResult:
        self.calls.append({"input": phase_input, "timeout": timeout, "resume_handle": resume_handle})
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        response = self.responses[index]

        if self.delay:
            try:
                await asyncio.wait_for(asyncio.sleep(self.delay), timeout=timeout)
            except asyncio.TimeoutError:
                return AgentResult(exit_code=EXIT_TIMEOUT, output="[MOCK] timed out", timed_out=True,
                                   agent=self.name, model=self.model)

        if isinstance(response, BaseException):
            raise response
        result = response(phase_input) if callable(response) else response
        return result.model_copy(update={"agent": result.agent or self.name, "model": result.model or self.model})


# =============================================================================
# Factory
# =============================================================================

AGENT_CLASSES: dict[str, type[BaseAgent]] = {
    cls.name: cls
    for cls in (ClaudeAgent, CodexAgent, GeminiAgent, CopilotAgent, OpencodeAgent, CursorAgent)
}


def create_agent(
    selection: AgentSelection,
    cwd: Optional[Path] = None,
    dry_run: bool = False,
):
    """Create the runner for an agent selection.

    Args:
        selection: Agent name and model
        cwd: Project directory the agent works in
        dry_run: Return a MockAgent that reports success without running anything

    Raises:
        ConfigError: If the agent name is unknown
    """
    if dry_run or selection.agent == "mock":
        return MockAgent(name=selection.agent, model=selection.model)
    try:
        cls = AGENT_CLASSES[selection.agent]
    except KeyError:
        known = ", ".join(sorted(AGENT_CLASSES))
        raise ConfigError(f"Unknown agent {selection.agent!r} (known: {known})") from None
    return cls(model=selection.model, cwd=cwd)
