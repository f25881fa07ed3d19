"""Per-step execution: ask for an implementation, write files, run commands.

Ordering inside a step is fixed: every file and edit instruction is applied,
in document order, before the first command runs. Commands then run one at a
time in document order.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from falalo import config, prompt
from falalo.context import ContextSet
from falalo.llm import Complete, truncate
from falalo.markers import ParsedResponse, PlanStep, parse_response
from falalo.materialize import FileMaterializer, NotLonger
from falalo.runner import CommandResult, CommandRunner
from falalo.workspace import WorkspaceViolationError

logger = logging.getLogger(__name__)

# (event, message) sink; events are "status", "output" and "error"
Reporter = Callable[[str, str], None]


def null_reporter(kind: str, message: str) -> None:
    pass


class CommandFailed(Exception):
    """A regular command still exited non-zero after every retry."""

    def __init__(self, result: CommandResult):
        self.result = result
        self.command = result.command
        self.exit_code = result.execution.exit_code
        self.stdout = result.execution.stdout
        self.stderr = result.execution.stderr
        super().__init__(
            f"Command failed: {self.command} "
            f"(exit code {self.exit_code} after {result.attempts} attempts)"
        )


class StepAbandoned(Exception):
    """A file instruction failed, so none of the step's commands ran."""

    def __init__(self, path: str, cause: BaseException):
        self.path = path
        self.cause = cause
        super().__init__(f"Error creating file {path}: {cause}")


class StepTimeout(Exception):
    """Waiting for a step exceeded the step timeout."""

    def __init__(self, step: PlanStep, timeout: float):
        self.step = step
        self.timeout = timeout
        super().__init__(f"Step {step.ordinal} timed out after {timeout}s")


@dataclass
class StepOutcome:
    """What one step changed and ran."""

    step: PlanStep
    files: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    edits: list[str] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    background: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class StepExecutor:
    """Executes one plan step at a time."""

    def __init__(
        self,
        context: ContextSet,
        complete: Complete,
        runner: CommandRunner,
        materializer: FileMaterializer | None = None,
        reporter: Reporter | None = None,
        step_timeout: float | None = None,
        file_settle_delay: float | None = None,
        command_settle_delay: float | None = None,
    ):
        self.context = context
        self.complete = complete
        self.runner = runner
        self.materializer = materializer or FileMaterializer(context)
        self.report = reporter or null_reporter
        self.step_timeout = config.STEP_TIMEOUT if step_timeout is None else step_timeout
        self.file_settle_delay = (
            config.FILE_SETTLE_DELAY if file_settle_delay is None else file_settle_delay
        )
        self.command_settle_delay = (
            config.COMMAND_SETTLE_DELAY
            if command_settle_delay is None
            else command_settle_delay
        )
        self._pending: set[asyncio.Future] = set()

    @property
    def pending(self) -> set[asyncio.Future]:
        """Timed-out steps that are still running in the background."""
        return set(self._pending)

    # -- model ------------------------------------------------------------

    async def request_implementation(
        self, step: PlanStep, request: str, context_text: str
    ) -> str:
        implementer = prompt.load_prompt("orchestration", "implementer")
        existing_files = self.context.scan()
        messages = implementer.conversation(
            request,
            step=step.text,
            step_type="LONG-RUNNING" if step.is_long_running else "REGULAR",
            context=context_text,
            existing_files="\n".join(existing_files) if existing_files else "(none)",
        )
        completion = await self.complete(messages, implementer.model)
        logger.debug("Implementation for step %d:\n%s", step.ordinal, completion.text)
        return completion.text

    # -- files ------------------------------------------------------------

    async def apply_files(self, parsed: ParsedResponse, outcome: StepOutcome) -> None:
        """Apply every file and edit instruction, in document order.

        Raises:
            StepAbandoned: On the first instruction that fails for a reason
                other than the overwrite veto.
        """
        for error in parsed.errors:
            outcome.errors.append(error)
            self.report("status", f"Skipped malformed block: {error}")

        if parsed.files:
            self.report("status", f"Creating {len(parsed.files)} files...")
        for instruction in parsed.files:
            try:
                result = self.materializer.apply_file(instruction)
            except NotLonger as e:
                outcome.skipped.append(e.path)
                self.report("status", str(e))
                continue
            except (OSError, WorkspaceViolationError) as e:
                self.report("error", f"Error creating file {instruction.path}: {e}")
                raise StepAbandoned(instruction.path, e) from e
            outcome.files.append(result.path)
            self.report("status", result.message)
            await asyncio.sleep(self.file_settle_delay)

        for edit in parsed.edits:
            try:
                result = self.materializer.apply_edit(edit)
            except (OSError, WorkspaceViolationError) as e:
                self.report("error", f"Failed to edit {edit.file}: {e}")
                raise StepAbandoned(edit.file, e) from e
            if result.changed:
                outcome.edits.append(result.path)
            self.report("status", result.message)
            await asyncio.sleep(self.file_settle_delay)

    # -- commands ---------------------------------------------------------

    async def run_commands(
        self, step: PlanStep, commands: list[str], outcome: StepOutcome
    ) -> None:
        """Run *commands* sequentially.

        Raises:
            CommandFailed: When a command fails in a regular step.
        """
        if not commands:
            return
        self.report(
            "status", f"Step {step.ordinal}: Executing {len(commands)} commands..."
        )
        for index, command in enumerate(commands):
            self.report("status", f"Executing command: {command}")
            result = await self.runner.run(command)
            if result.abandoned:
                outcome.background.append(command)
                self.report(
                    "output",
                    f"Started long-running command in session "
                    f"{result.execution.id}:\n{command}",
                )
            elif result.success:
                outcome.commands.append(command)
                if result.execution.stdout.strip():
                    self.report("output", truncate(result.execution.stdout, 300))
            elif step.is_long_running:
                logger.warning("Tolerating failed launch in long-running step: %s", command)
                self.report("status", f"Command failed, continuing: {command}")
            else:
                self.report("error", f"Command failed: {command}")
                raise CommandFailed(result)

            if index < len(commands) - 1:
                await asyncio.sleep(self.command_settle_delay)

    # -- step -------------------------------------------------------------

    async def execute(
        self, step: PlanStep, request: str, context_text: str
    ) -> StepOutcome:
        """Implement *step*: files and edits first, then commands."""
        implementation = await self.request_implementation(step, request, context_text)
        parsed = parse_response(implementation)
        logger.info(
            "Step %d: %d files, %d edits, %d commands",
            step.ordinal,
            len(parsed.files),
            len(parsed.edits),
            len(parsed.commands),
        )
        outcome = StepOutcome(step=step)
        await self.apply_files(parsed, outcome)
        await self.run_commands(step, parsed.commands, outcome)
        return outcome

    def _forget(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                "Background step finished with error: %s", task.exception()
            )

    async def execute_with_timeout(
        self,
        step: PlanStep,
        request: str,
        context_text: str,
        timeout: float | None = None,
    ) -> StepOutcome:
        """Run ``execute`` racing against the step timeout.

        On timeout only the waiting stops: the step keeps running in the
        background, along with any process it started.

        Raises:
            StepTimeout: If the step did not finish in time.
        """
        timeout = self.step_timeout if timeout is None else timeout
        task = asyncio.ensure_future(self.execute(step, request, context_text))
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.warning("Step %d exceeded %ss", step.ordinal, timeout)
            self._pending.add(task)
            task.add_done_callback(self._forget)
            raise StepTimeout(step, timeout) from None
