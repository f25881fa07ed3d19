import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

from falalo.context import ContextSet
from falalo.orchestrator import Orchestrator, OrchestratorState

logger = logging.getLogger(__name__)

_EVENT_PREFIX = {
    "status": "",
    "output": "",
    "error": "✗ ",
    "result": "✓ ",
}


def setup_logging() -> str:
    """Configure file logging. Returns the log file path."""
    log_dir = Path("log")
    log_dir.mkdir(exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_file = log_dir / f"falalo-{timestamp}.log"
    logging.basicConfig(
        filename=str(log_file),
        level=logging.DEBUG,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    # Keep HTTP client chatter out of the interaction log
    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return str(log_file)


def format_event(kind: str, message: str) -> str:
    return f"{_EVENT_PREFIX.get(kind, '')}{message}"


async def run_request(orchestrator: Orchestrator, request: str) -> int:
    """Print every event of one run. Returns the process exit status."""
    async for kind, message in orchestrator.run(request):
        print(format_event(kind, message), flush=True)

    if orchestrator.state is OrchestratorState.ABORTED:
        return 1
    if orchestrator.summary is not None and orchestrator.summary.failed:
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Falalo – plan and carry out coding tasks in a workspace"
    )
    parser.add_argument(
        "--log",
        action="store_true",
        help="Enable logging to log/falalo-{datetime}.log",
    )
    parser.add_argument(
        "--workspace",
        default=None,
        help="Workspace directory to operate in (default: current directory)",
    )
    parser.add_argument("request", nargs="+", help="What you want done")
    args = parser.parse_args(argv)

    if args.log:
        log_file = setup_logging()
        print(f"Logging to: {log_file}")

    workspace = args.workspace or os.getcwd()
    try:
        context = ContextSet(workspace)
    except ValueError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 2
    context.rebuild()
    logger.info("Workspace %s: %d files in context", context.root, len(context))

    return asyncio.run(run_request(Orchestrator(context), " ".join(args.request)))


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
