"""Agent session backends: spawn a coding session for a task and poll it."""

import itertools
import json
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from operator_hub.config import Config
from operator_hub.db.models import Task

logger = logging.getLogger(__name__)

SESSION_STATES = ("running", "completed", "failed")


class SessionSpawnError(Exception):
    """Raised when a session could not be started."""


@dataclass
class SessionStatus:
    state: str
    error: str | None = None
    summary: str | None = None

    @property
    def finished(self) -> bool:
        return self.state != "running"


# ── Prompt Construction ──────────────────────────────────────────────────────


def build_task_prompt(slot: str, task: Task) -> str:
    """Build the instructions handed to a session for one task."""
    parts = [f"You are {slot} for the Operator Hub team.", "", f"**Task**: {task.title}", ""]

    if task.description:
        parts += [task.description, ""]
    if task.problem:
        parts += [f"**Problem**: {task.problem}", ""]
    if task.scope:
        parts += [f"**Scope**: {task.scope}", ""]
    if task.acceptance_criteria:
        parts.append("**Acceptance Criteria**:")
        parts += [f"- {criterion}" for criterion in task.acceptance_criteria]
        parts.append("")
    if task.working_dir:
        parts += [f"**Working directory**: {task.working_dir}", ""]

    parts += [
        f"**Task ID**: {task.id}",
        "",
        "**Steps**:",
        "1. Complete the task as described",
        "2. Test your work",
        "3. Git add, commit",
        '4. Update task to "review"',
        "5. Report completion",
        "",
    ]
    return "\n".join(parts)


# ── Backends ─────────────────────────────────────────────────────────────────


class SessionBackend:
    """Interface every session backend implements."""

    def spawn(self, slot: str, task: Task, prompt: str) -> str:
        """Start a session and return its id. Raises SessionSpawnError."""
        raise NotImplementedError

    def status(self, session_id: str) -> SessionStatus | None:
        """Current state of a session, or None when the backend does not know it."""
        raise NotImplementedError

    def kill(self, session_id: str) -> None:
        raise NotImplementedError


class ClaudeSessionBackend(SessionBackend):
    """Runs ``claude -p`` as a background process with output captured to a file."""

    def __init__(
        self,
        output_dir: Path,
        model: str | None = "sonnet",
        permission_mode: str | None = "acceptEdits",
        max_turns: int | None = None,
        executable: str = "claude",
    ):
        self.output_dir = Path(output_dir)
        self.model = model
        self.permission_mode = permission_mode
        self.max_turns = max_turns
        self.executable = executable
        self._processes: dict[str, tuple[subprocess.Popen, Path]] = {}

    def _command(self, prompt: str) -> list[str]:
        cmd = [self.executable, "-p", prompt, "--output-format", "json"]
        if self.model:
            cmd += ["--model", self.model]
        if self.permission_mode:
            cmd += ["--permission-mode", self.permission_mode]
        if self.max_turns:
            cmd += ["--max-turns", str(self.max_turns)]
        return cmd

    def spawn(self, slot: str, task: Task, prompt: str) -> str:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        session_id = f"{slot}-{task.id}-{timestamp}"
        output_file = self.output_dir / f"session-{session_id}.json"

        try:
            with open(output_file, "w") as f:
                proc = subprocess.Popen(
                    self._command(prompt),
                    cwd=task.working_dir or None,
                    stdout=f,
                    stderr=subprocess.STDOUT,
                )
        except OSError as e:
            raise SessionSpawnError(f"Failed to start {self.executable}: {e}") from e

        self._processes[session_id] = (proc, output_file)
        logger.info("Spawned session %s (PID %s)", session_id, proc.pid)
        return session_id

    def status(self, session_id: str) -> SessionStatus | None:
        entry = self._processes.get(session_id)
        if entry is None:
            return None
        proc, output_file = entry
        exit_code = proc.poll()
        if exit_code is None:
            return SessionStatus("running")
        self._processes.pop(session_id, None)
        return self._read_result(output_file, exit_code)

    def _read_result(self, output_file: Path, exit_code: int) -> SessionStatus:
        """Turn the captured output and exit code into a final status."""
        summary = None
        is_error = exit_code != 0
        try:
            content = output_file.read_text()
        except OSError as e:
            return SessionStatus("failed", error=f"Error reading output: {e}")

        if content.strip():
            try:
                data = json.loads(content)
                summary = str(data.get("result", ""))[:500] if isinstance(data, dict) else content[:500]
                if isinstance(data, dict) and data.get("is_error"):
                    is_error = True
            except json.JSONDecodeError:
                summary = content[:500]
        else:
            summary = "(empty output)"

        if is_error:
            return SessionStatus("failed", error=summary or f"exit code {exit_code}", summary=summary)
        return SessionStatus("completed", summary=summary)

    def kill(self, session_id: str) -> None:
        entry = self._processes.pop(session_id, None)
        if entry is None:
            return
        proc, _ = entry
        if proc.poll() is None:
            proc.terminate()
            logger.info("Terminated session %s (PID %s)", session_id, proc.pid)


class FakeSessionBackend(SessionBackend):
    """In-memory backend with scripted outcomes, for tests and dry runs.

    Each spawned session walks through ``script``; the last entry repeats.
    A ``None`` entry means the backend has lost track of the session.
    """

    def __init__(self, script: list[SessionStatus | None] | None = None, spawn_error: str | None = None):
        self.script = script if script is not None else [SessionStatus("completed")]
        self.spawn_error = spawn_error
        self.spawned: list[tuple[str, str, str]] = []
        self.killed: list[str] = []
        self._pending: dict[str, list[SessionStatus | None]] = {}
        self._ids = itertools.count(1)

    def spawn(self, slot: str, task: Task, prompt: str) -> str:
        if self.spawn_error:
            raise SessionSpawnError(self.spawn_error)
        session_id = f"fake-{slot}-{next(self._ids)}"
        self.spawned.append((session_id, task.id, prompt))
        self._pending[session_id] = list(self.script)
        return session_id

    def status(self, session_id: str) -> SessionStatus | None:
        steps = self._pending.get(session_id)
        if not steps:
            return None
        return steps.pop(0) if len(steps) > 1 else steps[0]

    def kill(self, session_id: str) -> None:
        self.killed.append(session_id)
        self._pending.pop(session_id, None)


def make_backend(config: Config) -> SessionBackend:
    """Session backend selected by configuration."""
    if config.session_backend == "fake":
        return FakeSessionBackend()
    return ClaudeSessionBackend(config.session_output_dir, model=config.agent_default_model)
