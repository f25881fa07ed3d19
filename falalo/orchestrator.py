"""Two-phase task orchestration: plan, then execute every step in order.

States::

    PLANNING -> EXECUTING(i) -> RECOVERING -> EXECUTING(i + 1) ... -> COMPLETED
        \\-> ABORTED (planning failed or no steps found)

Step failures never abort a run. A failed step gets one recovery cycle; if
that fails too the step is marked failed and execution moves on. Timeouts
skip straight to the next step.
"""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from enum import Enum

from falalo import config, prompt
from falalo.context import ContextSet
from falalo.executor import Reporter, StepExecutor, StepOutcome, StepTimeout
from falalo.llm import Complete, TokenUsage, UsageTracker
from falalo.llm import complete as default_complete
from falalo.markers import PlanStep, parse_steps
from falalo.materialize import FileMaterializer
from falalo.recovery import RecoveryCycle
from falalo.runner import CommandRunner

logger = logging.getLogger(__name__)


class NoStepsFound(Exception):
    """The plan contained no actionable steps."""

    def __init__(self) -> None:
        super().__init__(
            "No actionable steps were found in the plan. "
            "Please provide more specific requirements."
        )


class OrchestratorState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    RECOVERING = "recovering"
    COMPLETED = "completed"
    ABORTED = "aborted"


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    RECOVERED = "recovered"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class StepReport:
    step: PlanStep
    status: StepStatus
    error: str = ""
    outcome: StepOutcome | None = None


@dataclass
class RunSummary:
    """Per-run totals shown when every step has been attempted."""

    steps: list[StepReport] = field(default_factory=list)
    elapsed: float = 0.0
    usage: TokenUsage = field(default_factory=TokenUsage)

    def _count(self, *statuses: StepStatus) -> int:
        return sum(1 for r in self.steps if r.status in statuses)

    @property
    def total(self) -> int:
        return len(self.steps)

    @property
    def succeeded(self) -> int:
        return self._count(StepStatus.SUCCEEDED, StepStatus.RECOVERED)

    @property
    def recovered(self) -> int:
        return self._count(StepStatus.RECOVERED)

    @property
    def failed(self) -> int:
        return self._count(StepStatus.FAILED)

    @property
    def timed_out(self) -> int:
        return self._count(StepStatus.TIMED_OUT)

    @property
    def long_running(self) -> int:
        return sum(1 for r in self.steps if r.step.is_long_running)

    def render(self) -> str:
        lines = [
            "Implementation complete!",
            "",
            "Summary:",
            f"• Total steps: {self.total}",
            f"• Succeeded: {self.succeeded} ({self.recovered} after recovery)",
            f"• Failed: {self.failed}",
            f"• Timed out: {self.timed_out}",
            f"• Long-running steps: {self.long_running}",
            f"• Tokens: {self.usage.prompt_tokens} in / "
            f"{self.usage.completion_tokens} out",
            f"• Elapsed: {round(self.elapsed)}s",
        ]
        failed = [r for r in self.steps if r.status is StepStatus.FAILED]
        if failed:
            lines.append("")
            lines.append("Failed steps:")
            for r in failed:
                lines.append(f"• Step {r.step.ordinal}: {r.error}")
        return "\n".join(lines)


def estimate_minutes(steps: list[PlanStep]) -> int:
    long_running = sum(1 for s in steps if s.is_long_running)
    return (len(steps) - long_running) * 2 + long_running * 5


class Orchestrator:
    """Drives one user request through planning and step execution."""

    def __init__(
        self,
        context: ContextSet,
        complete: Complete | None = None,
        runner: CommandRunner | None = None,
        step_timeout: float | None = None,
        step_settle_delay: float | None = None,
        file_settle_delay: float | None = None,
        command_settle_delay: float | None = None,
        read_file_contents: bool = True,
    ):
        self.context = context
        self.complete = UsageTracker(complete or default_complete)
        self.runner = runner or CommandRunner(context.root)
        self.materializer = FileMaterializer(context)
        self.step_timeout = config.STEP_TIMEOUT if step_timeout is None else step_timeout
        self.step_settle_delay = (
            config.STEP_SETTLE_DELAY if step_settle_delay is None else step_settle_delay
        )
        self.file_settle_delay = file_settle_delay
        self.command_settle_delay = command_settle_delay
        self.read_file_contents = read_file_contents
        self.state = OrchestratorState.IDLE
        self.step_index: int | None = None
        self.summary: RunSummary | None = None

    def context_text(self) -> str:
        return self.context.build_context_text(
            read_contents=self.read_file_contents,
            terminal_history=self.runner.transcript(),
        )

    async def plan(self, request: str, context_text: str) -> tuple[str, list[PlanStep]]:
        """Ask the model for a plan and parse its steps.

        Raises:
            NoStepsFound: If the plan has no parseable steps.
        """
        planner = prompt.load_prompt("orchestration", "planner")
        messages = planner.conversation(request, context=context_text)
        completion = await self.complete(messages, planner.model)
        logger.debug("Plan response:\n%s", completion.text)
        steps = parse_steps(completion.text)
        if not steps:
            raise NoStepsFound()
        return completion.text, steps

    async def _execute_step(
        self,
        index: int,
        total: int,
        step: PlanStep,
        request: str,
        executor: StepExecutor,
        recovery: RecoveryCycle,
        report: Reporter,
    ) -> StepReport:
        number = index + 1
        self.state = OrchestratorState.EXECUTING
        self.step_index = index
        failure: Exception
        try:
            outcome = await executor.execute_with_timeout(
                step, request, self.context_text(), self.step_timeout
            )
        except StepTimeout as e:
            expectation = (
                "This is expected for long-running operations."
                if step.is_long_running
                else "This might indicate an issue."
            )
            report(
                "status",
                f"Step {number} took too long (>{e.timeout:g}s). {expectation}",
            )
            return StepReport(step, StepStatus.TIMED_OUT, error=str(e))
        except Exception as e:
            failure = e
            logger.error("Step %d failed: %s", number, e)
            report("error", f"Error in step {number}: {e}\n\nAttempting to recover...")
        else:
            report("status", f"Step {number}/{total} completed successfully")
            return StepReport(step, StepStatus.SUCCEEDED, outcome=outcome)

        self.state = OrchestratorState.RECOVERING
        try:
            await recovery.run(step, failure)
        except Exception as recovery_error:
            logger.error("Recovery for step %d failed: %s", number, recovery_error)
            report(
                "error",
                f"Failed to recover from error in step {number}: {recovery_error}",
            )
            return StepReport(step, StepStatus.FAILED, error=str(failure))
        finally:
            self.state = OrchestratorState.EXECUTING
        report("status", "Recovery steps completed successfully")
        return StepReport(step, StepStatus.RECOVERED, error=str(failure))

    async def _drive(self, request: str, report: Reporter) -> None:
        started = time.monotonic()
        logger.info("User request: %s", request)

        # Stage 1: Planning
        self.state = OrchestratorState.PLANNING
        report("status", "Planning...")
        try:
            plan_text, steps = await self.plan(request, self.context_text())
        except NoStepsFound as e:
            self.state = OrchestratorState.ABORTED
            report("error", str(e))
            return
        except Exception as e:
            self.state = OrchestratorState.ABORTED
            logger.error("Planning failed: %s", e)
            report("error", f"Planning failed: {e}")
            return

        report("output", "Planning Phase:\n\n" + plan_text)
        long_running = sum(1 for s in steps if s.is_long_running)
        report(
            "status",
            "Implementation Plan:\n"
            f"• Total Steps: {len(steps)}\n"
            f"• Regular Steps: {len(steps) - long_running}\n"
            f"• Long-running Steps: {long_running}\n"
            f"• Estimated Time: {estimate_minutes(steps)} minutes\n\n"
            "Starting implementation...",
        )

        # Stage 2: Execution
        executor = StepExecutor(
            self.context,
            self.complete,
            self.runner,
            materializer=self.materializer,
            reporter=report,
            step_timeout=self.step_timeout,
            file_settle_delay=self.file_settle_delay,
            command_settle_delay=self.command_settle_delay,
        )
        recovery = RecoveryCycle(self.complete, self.materializer, self.runner, report)
        reports: list[StepReport] = []
        total = len(steps)

        for index, step in enumerate(steps):
            number = index + 1
            progress = round(number / total * 100)
            marker = " [LONG-RUNNING]" if step.is_long_running else ""
            report(
                "status",
                f"Step {number}/{total} ({progress}% complete){marker}:\n{step.text}",
            )
            reports.append(
                await self._execute_step(
                    index, total, step, request, executor, recovery, report
                )
            )

            if index < total - 1:
                upcoming = steps[index + 1]
                upcoming_marker = "[LONG-RUNNING] " if upcoming.is_long_running else ""
                report(
                    "status",
                    f"Progress: {progress}% complete\n"
                    f"Next up: {upcoming_marker}Step {number + 1}/{total}",
                )
                await asyncio.sleep(self.step_settle_delay)

        self.state = OrchestratorState.COMPLETED
        self.summary = RunSummary(
            steps=reports,
            elapsed=time.monotonic() - started,
            usage=self.complete.usage,
        )
        logger.info(
            "Run complete: %d steps, %d succeeded, %d failed",
            self.summary.total,
            self.summary.succeeded,
            self.summary.failed,
        )
        report("result", self.summary.render())

    async def run(self, request: str) -> AsyncGenerator[tuple[str, str], None]:
        """Plan and execute *request*.

        Yields tuples of (event_type, message) where event_type is one of:
        - "status": Progress update
        - "output": Plan text or command output to show
        - "error": Failure message
        - "result": Final run summary
        """
        queue: asyncio.Queue = asyncio.Queue()
        self.summary = None
        self.step_index = None

        driver = asyncio.ensure_future(
            self._drive(request, lambda kind, message: queue.put_nowait((kind, message)))
        )
        driver.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            await driver
        finally:
            if not driver.done():
                driver.cancel()


async def run_task(request: str, working_dir: str, complete: Complete | None = None):
    """Build a context set for *working_dir* and run *request* against it.

    Yields the same (event_type, message) tuples as ``Orchestrator.run``.
    """
    context = ContextSet(working_dir)
    context.rebuild()
    orchestrator = Orchestrator(context, complete=complete)
    async for event in orchestrator.run(request):
        yield event
