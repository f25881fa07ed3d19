"""Shell command execution with retries and long-running detection.

Each command runs in its own session keyed by a unique id. Regular commands
are awaited until they exit and their stdout, stderr and exit code are read
back. Long-running commands (dev servers, watchers) are started detached and
never awaited: they are abandoned from tracking the moment they launch and
are never killed by this module.
"""

import asyncio
import logging
import re
import subprocess  # nosec B404 -- intentional: the runner executes model-proposed commands
import time
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from functools import partial

from falalo import config
from falalo.llm import truncate

logger = logging.getLogger(__name__)

LONG_RUNNING_PATTERN = re.compile(
    r"(?:npm run (?:dev|start|serve)\b|npm start\b|ng serve\b"
    r"|python3? manage\.py runserver\b|rails s(?:erver)?\b|yarn (?:start|dev)\b"
    r"|docker[- ]compose up\b|flask run\b|(?:python3? -m )?uvicorn\b)",
    re.IGNORECASE,
)

# Watch mode is only a long-running signature when the invoked tool takes it
_WATCH_FLAG = re.compile(r"(?:^|\s)--watch(?:[=\s]|$)", re.IGNORECASE)
_PACKAGE_INSTALL = re.compile(
    r"(?:pip3?|python3? -m pip|uv pip|npm|pnpm|yarn|poetry|cargo|gem|brew"
    r"|apt(?:-get)?)\s+(?:install|add|i)\b",
    re.IGNORECASE,
)
_COMMAND_SEPARATOR = re.compile(r"&&|\|\||[;|\n]")
_ENV_ASSIGNMENTS = re.compile(r"^(?:\w+=\S*\s+)*")

MAX_TRANSCRIPT_ENTRIES = 20


def _invocations(command: str):
    """Yield each simple command of a shell line, without env assignments."""
    for segment in _COMMAND_SEPARATOR.split(command):
        yield _ENV_ASSIGNMENTS.sub("", segment.strip())


def is_long_running(command: str) -> bool:
    """Return True if *command* starts a process that never exits.

    Signatures only count at the start of a simple command, so
    ``cd web && npm run dev`` is long-running but ``pip install uvicorn``
    is not.
    """
    for invocation in _invocations(command):
        if LONG_RUNNING_PATTERN.match(invocation):
            return True
        if _WATCH_FLAG.search(invocation) and not _PACKAGE_INSTALL.match(invocation):
            return True
    return False


def new_session_id() -> str:
    return f"falalo-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class CommandState(str, Enum):
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


@dataclass
class CommandExecution:
    """One dispatch of a command to a session."""

    id: str
    command: str
    cwd: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    is_long_running: bool = False
    state: CommandState = CommandState.DISPATCHED

    @property
    def output(self) -> str:
        return f"OUTPUT:\n{self.stdout}\n\nERRORS:\n{self.stderr}"


@dataclass
class CommandResult:
    """Final result of a command after retries."""

    success: bool
    output: str
    execution: CommandExecution
    attempts: int = 1

    @property
    def command(self) -> str:
        return self.execution.command

    @property
    def abandoned(self) -> bool:
        return self.execution.state is CommandState.ABANDONED


class CommandRunner:
    """Runs shell commands in the workspace, one session per dispatch."""

    def __init__(
        self,
        cwd: str,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
        timeout: int | None = None,
    ):
        self.cwd = cwd
        self.max_attempts = max(
            1, config.COMMAND_MAX_ATTEMPTS if max_attempts is None else max_attempts
        )
        self.retry_delay = (
            config.COMMAND_RETRY_DELAY if retry_delay is None else retry_delay
        )
        self.timeout = config.COMMAND_TIMEOUT if timeout is None else timeout
        self.sessions: dict[str, CommandExecution] = {}
        self.background: dict[str, subprocess.Popen] = {}
        self._transcript: deque[str] = deque(maxlen=MAX_TRANSCRIPT_ENTRIES)

    # -- transcript -------------------------------------------------------

    def transcript(self) -> str:
        """Recent terminal activity, oldest first."""
        self.reap_background()
        return "\n".join(self._transcript)

    def _record(self, execution: CommandExecution) -> None:
        self._transcript.append(
            f"$ {execution.command} (session: {execution.id})\n"
            f"{truncate(execution.output, 2000)}\n"
            f"Exit code: {execution.exit_code}"
        )

    # -- dispatch ---------------------------------------------------------

    def reap_background(self) -> list[str]:
        """Drop detached processes that have exited on their own.

        Polling collects their exit status; running processes are left
        alone. Returns the session ids that were dropped.
        """
        exited = [
            session_id
            for session_id, process in self.background.items()
            if process.poll() is not None
        ]
        for session_id in exited:
            process = self.background.pop(session_id)
            logger.info(
                "Long-running session %s exited with code %s",
                session_id,
                process.returncode,
            )
        return exited

    def _launch_background(self, execution: CommandExecution) -> None:
        log_dir = config.sessions_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / f"{execution.id}.log"
        with open(log_path, "ab") as log_file:
            process = subprocess.Popen(  # nosec B602 -- intentional shell execution
                execution.command,
                shell=True,
                cwd=execution.cwd,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        self.background[execution.id] = process
        logger.info(
            "Started long-running command in session %s (pid %s, log %s): %s",
            execution.id,
            process.pid,
            log_path,
            execution.command,
        )

    async def _run_session(self, execution: CommandExecution) -> None:
        """Run a regular command to completion and fill in its captures."""
        self.sessions[execution.id] = execution
        try:
            # Use asyncio.to_thread to avoid blocking the event loop
            result = await asyncio.to_thread(
                partial(
                    subprocess.run,  # nosec B602 B604 -- intentional shell execution
                    execution.command,
                    shell=True,
                    capture_output=True,
                    encoding="utf-8",
                    errors="replace",
                    timeout=self.timeout,
                    cwd=execution.cwd,
                )
            )
            execution.stdout = result.stdout
            execution.stderr = result.stderr
            execution.exit_code = result.returncode
        except subprocess.TimeoutExpired:
            execution.stderr = f"Timed out after {self.timeout}s"
            execution.exit_code = -1
        except OSError as e:
            execution.stderr = str(e)
            execution.exit_code = -1
        finally:
            execution.state = CommandState.COMPLETED
            self.sessions.pop(execution.id, None)
        self._record(execution)

    async def dispatch(self, command: str) -> CommandExecution:
        """Run *command* once in a fresh session."""
        self.reap_background()
        execution = CommandExecution(
            id=new_session_id(),
            command=command,
            cwd=self.cwd,
            is_long_running=is_long_running(command),
        )
        if execution.is_long_running:
            try:
                self._launch_background(execution)
            except OSError as e:
                execution.stderr = str(e)
                execution.exit_code = -1
                execution.state = CommandState.COMPLETED
                logger.error("Could not launch %s: %s", command, e)
                return execution
            execution.state = CommandState.ABANDONED
            return execution

        logger.info("Executing command in session %s: %s", execution.id, command)
        await self._run_session(execution)
        if execution.exit_code == 0:
            logger.info("Command succeeded: %s", command)
        else:
            logger.warning(
                "Command failed with exit code %s: %s", execution.exit_code, command
            )
        return execution

    async def run(self, command: str) -> CommandResult:
        """Run *command*, retrying non-zero exits up to ``max_attempts``.

        Long-running commands are dispatched once and reported as successful
        launches; their exit status is never awaited.
        """
        execution = await self.dispatch(command)
        attempts = 1
        while execution.exit_code not in (0, None) and attempts < self.max_attempts:
            logger.info(
                "Retrying in %ss (attempt %d/%d): %s",
                self.retry_delay,
                attempts + 1,
                self.max_attempts,
                command,
            )
            await asyncio.sleep(self.retry_delay)
            execution = await self.dispatch(command)
            attempts += 1

        if execution.state is CommandState.ABANDONED:
            return CommandResult(
                success=True,
                output=f"Started in background (session {execution.id})",
                execution=execution,
                attempts=attempts,
            )
        return CommandResult(
            success=execution.exit_code == 0,
            output=execution.output,
            execution=execution,
            attempts=attempts,
        )
