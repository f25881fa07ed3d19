"""Failure recovery: one bounded attempt to fix a failed step.

The model is shown the failure and asked for file changes and replacement
commands. Loop prevention: within one cycle the failed command is never
re-issued, and no command is issued twice.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from falalo import prompt
from falalo.executor import CommandFailed, Reporter, null_reporter
from falalo.llm import Complete, truncate
from falalo.markers import PlanStep, parse_response
from falalo.materialize import FileMaterializer, NotLonger
from falalo.runner import CommandResult, CommandRunner
from falalo.workspace import WorkspaceViolationError

logger = logging.getLogger(__name__)


class RecoveryExhausted(Exception):
    """A recovery cycle produced no successful file change or command."""

    pass


@dataclass
class RecoveryAttempt:
    """Loop-prevention state for one recovery cycle."""

    failed_command: str
    executed_commands: set[str] = field(default_factory=set)

    def admit(self, commands: list[str]) -> list[str]:
        """Return the commands that may still be issued, in order.

        Admitted commands are recorded so a later call never returns them
        again.
        """
        admitted = []
        for command in commands:
            if command == self.failed_command or command in self.executed_commands:
                logger.info("Not re-issuing command during recovery: %s", command)
                continue
            self.executed_commands.add(command)
            admitted.append(command)
        return admitted


@dataclass
class RecoveryOutcome:
    attempt: RecoveryAttempt
    files_changed: list[str] = field(default_factory=list)
    commands_succeeded: list[str] = field(default_factory=list)
    commands_failed: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.files_changed or self.commands_succeeded)


class RecoveryCycle:
    """Runs recovery cycles for a single orchestrator run."""

    def __init__(
        self,
        complete: Complete,
        materializer: FileMaterializer,
        runner: CommandRunner,
        reporter: Reporter | None = None,
    ):
        self.complete = complete
        self.materializer = materializer
        self.runner = runner
        self.report = reporter or null_reporter

    async def _ask(self, step: PlanStep | None, failure: BaseException) -> str:
        recovery = prompt.load_prompt("orchestration", "recovery")
        if isinstance(failure, CommandFailed):
            command, error, output = (
                failure.command,
                failure.stderr.strip() or f"Exit code {failure.exit_code}",
                failure.result.output,
            )
        else:
            command, error, output = "", str(failure), ""
        messages = recovery.conversation(
            step=step.text if step else "",
            command=command,
            error=truncate(error, 4000),
            output=truncate(output, 8000),
        )
        completion = await self.complete(messages, recovery.model)
        logger.debug("Recovery response:\n%s", completion.text)
        return completion.text

    def _apply_changes(self, text: str, outcome: RecoveryOutcome) -> list[str]:
        parsed = parse_response(text)
        for error in parsed.errors:
            self.report("status", f"Skipped malformed block: {error}")

        for instruction in parsed.files:
            try:
                result = self.materializer.apply_file(instruction)
            except (NotLonger, OSError, WorkspaceViolationError) as e:
                self.report("status", f"Failed to create {instruction.path}: {e}")
                continue
            outcome.files_changed.append(result.path)
            self.report("status", result.message)

        for edit in parsed.edits:
            try:
                result = self.materializer.apply_edit(edit)
            except (OSError, WorkspaceViolationError) as e:
                self.report("status", f"Failed to edit {edit.file}: {e}")
                continue
            if result.changed:
                outcome.files_changed.append(result.path)
            self.report("status", result.message)

        return parsed.commands

    async def run(
        self, step: PlanStep | None, failure: BaseException
    ) -> RecoveryOutcome:
        """Analyze *failure*, apply the suggested fix and judge the result.

        Suggested commands run concurrently; the cycle waits for all of them.

        Raises:
            RecoveryExhausted: If nothing the model suggested succeeded.
        """
        failed_command = failure.command if isinstance(failure, CommandFailed) else ""
        attempt = RecoveryAttempt(failed_command=failed_command)
        outcome = RecoveryOutcome(attempt=attempt)

        self.report("status", "Analyzing failure and attempting recovery...")
        solution = await self._ask(step, failure)
        self.report("output", "Suggested recovery plan:\n" + solution)

        suggested = self._apply_changes(solution, outcome)
        commands = attempt.admit(suggested)

        if suggested and not commands:
            self.report(
                "status",
                "All suggested recovery commands have already been executed. "
                "Stopping to prevent loops.",
            )
        elif commands:
            self.report("status", "Executing recovery commands:")
            for command in commands:
                self.report("status", f"Running new command: {command}")
            results: list[CommandResult] = await asyncio.gather(
                *(self.runner.run(command) for command in commands)
            )
            for result in results:
                if result.success:
                    outcome.commands_succeeded.append(result.command)
                else:
                    outcome.commands_failed.append(result.command)

        if not outcome.success:
            raise RecoveryExhausted("Recovery steps failed to resolve the issue")
        logger.info(
            "Recovery succeeded: %d files changed, %d commands succeeded",
            len(outcome.files_changed),
            len(outcome.commands_succeeded),
        )
        return outcome
