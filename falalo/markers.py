"""Marker grammar: structured instructions embedded in model text.

The model answers in free-form text. Everything the core acts on is found
by scanning that text line by line for a small, fixed set of markers:

    ### path/to/file          file block, closed by a ``%%%`` line
    #<op>#|file|desc|5-9      edit block, closed by ``#end-block#``
    $ command                 shell command
    Step 3: [LONG-RUNNING] x  plan step (or bare ``3. x``)

Malformed blocks never abort a document: they are dropped and reported as
human-readable error strings next to the instructions that did parse.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

FILE_HEADER = "###"
FILE_CLOSER = "%%%"
EDIT_CLOSER = "#end-block#"
COMMAND_PREFIX = "$ "
LONG_RUNNING_MARKER = "[LONG-RUNNING]"

_EDIT_HEADER = re.compile(r"^#([A-Za-z-]+)#\|(.*)$")
_LINE_RANGE = re.compile(r"^(\d+)\s*(?:-\s*(\d+))?$")
_STEP_HEADER = re.compile(r"^[\s#*_>-]*step\s*(\d+)\s*[:.)]\s*(.*)$", re.IGNORECASE)
_NUMBERED_HEADER = re.compile(r"^(\d+)[.:]\s+(.*)$")
_LONG_RUNNING = re.compile(re.escape(LONG_RUNNING_MARKER), re.IGNORECASE)
_FENCE_OPEN = re.compile(r"^\s*`{1,3}[\w+#.-]*\s*$")
_FENCE_CLOSE = re.compile(r"^\s*`{1,3}\s*$")


class MalformedBlock(Exception):
    """A block that cannot be turned into an instruction."""

    def __init__(self, line: int, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"Line {line}: {reason}")


class EditOp(str, Enum):
    REPLACE = "replace-block"
    ADD = "add-block"
    DELETE = "delete-block"
    REWRITE = "rewrite-file"


# ---------------------------------------------------------------------------
# Instructions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlanStep:
    """One unit of plan work."""

    ordinal: int
    text: str
    is_long_running: bool = False


@dataclass
class FileInstruction:
    """Create (or grow) a file with the given content."""

    path: str
    content: str


@dataclass
class EditInstruction:
    """Line-range edit of a single file.

    ``start_line``/``end_line`` are 1-based and inclusive. ``content`` is
    None for deletes. For ``add`` the content goes before ``start_line``.
    """

    op: EditOp
    file: str
    description: str = ""
    start_line: int | None = None
    end_line: int | None = None
    content: str | None = None


@dataclass
class ParsedResponse:
    """Everything extracted from one model response, in document order."""

    files: list[FileInstruction] = field(default_factory=list)
    edits: list[EditInstruction] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def has_instructions(self) -> bool:
        return bool(self.files or self.edits or self.commands)


# ---------------------------------------------------------------------------
# Content cleanup
# ---------------------------------------------------------------------------


def strip_code_fences(content: str) -> str:
    """Remove code fences wrapping *content*.

    Blank leading/trailing lines are dropped, then an opening fence line
    (```lang, `lang) and a closing fence line. Indentation of the remaining
    lines is preserved.
    """
    lines = content.splitlines()
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    if lines and _FENCE_OPEN.match(lines[0]):
        lines.pop(0)
        if lines and _FENCE_CLOSE.match(lines[-1]):
            lines.pop()
        elif lines and lines[-1].rstrip().endswith("```"):
            lines[-1] = lines[-1].rstrip()[:-3]
    while lines and not lines[-1].strip():
        lines.pop()
    while lines and not lines[0].strip():
        lines.pop(0)
    return "\n".join(lines)


def _clean_path(raw: str) -> str:
    return raw.strip().strip("`*\"'").rstrip(":").strip()


# ---------------------------------------------------------------------------
# Edit header validation
# ---------------------------------------------------------------------------


def parse_edit_header(line: str, lineno: int = 0) -> EditInstruction:
    """Validate an edit header line and return an instruction without content.

    Raises:
        MalformedBlock: With every problem found in the header.
    """
    match = _EDIT_HEADER.match(line.strip())
    if not match:
        raise MalformedBlock(lineno, f"Not an edit header: {line.strip()!r}")

    opcode, rest = match.group(1).lower(), match.group(2)
    try:
        op = EditOp(opcode)
    except ValueError:
        raise MalformedBlock(lineno, f"Unknown edit operation '{opcode}'") from None

    fields = [f.strip() for f in rest.split("|")]
    problems: list[str] = []

    path = _clean_path(fields[0]) if fields else ""
    if not path:
        problems.append("missing file path")

    range_field = ""
    if op is EditOp.REWRITE:
        # A trailing range on a rewrite is accepted and ignored
        if len(fields) >= 3 and _LINE_RANGE.match(fields[-1]):
            fields = fields[:-1]
        description = "|".join(fields[1:])
    elif len(fields) < 3:
        description = "|".join(fields[1:])
        problems.append(f"{op.value} requires a line number or range")
    else:
        description = "|".join(fields[1:-1])
        range_field = fields[-1]

    start = end = None
    if range_field:
        range_match = _LINE_RANGE.match(range_field)
        if not range_match:
            problems.append(f"invalid line range '{range_field}'")
        else:
            start = int(range_match.group(1))
            end = int(range_match.group(2)) if range_match.group(2) else start
            if start < 1:
                problems.append(f"line numbers start at 1, got {start}")
            if start > end:
                problems.append(f"start line {start} is after end line {end}")
            if op is EditOp.ADD and end != start:
                problems.append("add-block takes a single line number")

    if problems:
        raise MalformedBlock(
            lineno, f"Invalid {op.value} header for '{path}': " + "; ".join(problems)
        )

    return EditInstruction(
        op=op,
        file=path,
        description=description.strip(),
        start_line=start,
        end_line=end,
    )


# ---------------------------------------------------------------------------
# Response scanner
# ---------------------------------------------------------------------------


class _State(Enum):
    OUTSIDE = "outside"
    IN_FILE = "in_file"
    IN_EDIT = "in_edit"


class _ResponseScanner:
    """Line state machine: open marker -> accumulate -> close marker."""

    def __init__(self) -> None:
        self.result = ParsedResponse()
        self.state = _State.OUTSIDE
        self.block_line = 0
        self.block_path = ""
        self.body: list[str] = []
        self.edit: EditInstruction | None = None

    def _reject(self, error: MalformedBlock) -> None:
        logger.warning("Skipping malformed block: %s", error)
        self.result.errors.append(str(error))

    def _open_edit(self, line: str, lineno: int) -> None:
        self.state = _State.IN_EDIT
        self.block_line = lineno
        self.body = []
        try:
            self.edit = parse_edit_header(line, lineno)
        except MalformedBlock as e:
            # Body is still consumed up to the closer so it is not misread
            self.edit = None
            self._reject(e)

    def _close_edit(self) -> None:
        if self.edit is not None:
            if self.edit.op is not EditOp.DELETE:
                self.edit.content = strip_code_fences("\n".join(self.body))
            self.result.edits.append(self.edit)
        self.state = _State.OUTSIDE
        self.edit = None
        self.body = []

    def _close_file(self) -> None:
        content = strip_code_fences("\n".join(self.body)).strip()
        self.result.files.append(FileInstruction(path=self.block_path, content=content))
        self.state = _State.OUTSIDE
        self.body = []

    def feed(self, lineno: int, line: str) -> None:
        stripped = line.strip()

        if self.state is _State.IN_FILE:
            if stripped == FILE_CLOSER:
                self._close_file()
            elif stripped.endswith(FILE_CLOSER):
                self.body.append(line.rstrip()[: -len(FILE_CLOSER)])
                self._close_file()
            else:
                self.body.append(line)
            return

        if self.state is _State.IN_EDIT:
            if stripped == EDIT_CLOSER:
                self._close_edit()
            elif _EDIT_HEADER.match(stripped) and not stripped.startswith(EDIT_CLOSER):
                if self.edit is not None:
                    self._reject(
                        MalformedBlock(
                            self.block_line,
                            f"Unterminated {self.edit.op.value} block for "
                            f"'{self.edit.file}'",
                        )
                    )
                self._open_edit(stripped, lineno)
            else:
                self.body.append(line)
            return

        if _EDIT_HEADER.match(stripped):
            if not stripped.startswith(EDIT_CLOSER):
                self._open_edit(stripped, lineno)
            return

        if stripped.startswith(FILE_HEADER):
            path = _clean_path(stripped[len(FILE_HEADER) :])
            if path and not path.startswith("#"):
                self.state = _State.IN_FILE
                self.block_line = lineno
                self.block_path = path
                self.body = []
            return

        if stripped.startswith(COMMAND_PREFIX):
            command = stripped[len(COMMAND_PREFIX) :].strip()
            if command:
                self.result.commands.append(command)

    def finish(self) -> ParsedResponse:
        if self.state is _State.IN_FILE:
            self._reject(
                MalformedBlock(
                    self.block_line,
                    f"Unterminated file block for '{self.block_path}' "
                    f"(missing {FILE_CLOSER})",
                )
            )
        elif self.state is _State.IN_EDIT and self.edit is not None:
            self._reject(
                MalformedBlock(
                    self.block_line,
                    f"Unterminated {self.edit.op.value} block for '{self.edit.file}' "
                    f"(missing {EDIT_CLOSER})",
                )
            )
        self.state = _State.OUTSIDE
        return self.result


def parse_response(text: str) -> ParsedResponse:
    """Extract file blocks, edit blocks and commands from one response.

    Command lines inside file or edit bodies are content, not commands.
    """
    scanner = _ResponseScanner()
    for lineno, line in enumerate(text.splitlines(), start=1):
        scanner.feed(lineno, line)
    return scanner.finish()


def parse_file_blocks(text: str) -> list[FileInstruction]:
    return parse_response(text).files


def parse_edit_blocks(text: str) -> tuple[list[EditInstruction], list[str]]:
    """Return the valid edit instructions and the errors of skipped blocks."""
    result = parse_response(text)
    return result.edits, result.errors


def parse_commands(text: str) -> list[str]:
    return parse_response(text).commands


# ---------------------------------------------------------------------------
# Plan steps
# ---------------------------------------------------------------------------


def _split_step_header(line: str, pattern: re.Pattern) -> tuple[int, str, bool] | None:
    long_running = bool(_LONG_RUNNING.search(line))
    candidate = _LONG_RUNNING.sub("", line, count=1).lstrip() if long_running else line
    match = pattern.match(candidate)
    if not match:
        return None
    text = match.group(2).strip().lstrip("*_").strip()
    text = _LONG_RUNNING.sub("", text).strip()
    return int(match.group(1)), text, long_running


def parse_steps(text: str) -> list[PlanStep]:
    """Extract plan steps from a plan document.

    ``Step <n>:`` headers win: when the document has any, bare ``<n>.``
    lines are treated as part of a step's text (sub-lists). A step's text
    runs until the next header or the end of the document. Steps with no
    text are dropped. An empty result means no actionable steps were found.
    """
    lines = text.splitlines()
    pattern = _STEP_HEADER
    if not any(_STEP_HEADER.match(_LONG_RUNNING.sub("", line)) for line in lines):
        pattern = _NUMBERED_HEADER

    collected: list[tuple[int, list[str], bool]] = []
    for line in lines:
        header = _split_step_header(line, pattern)
        if header is not None:
            ordinal, first, long_running = header
            collected.append((ordinal, [first] if first else [], long_running))
        elif collected:
            collected[-1][1].append(line)

    steps = []
    for ordinal, body, long_running in collected:
        step_text = "\n".join(body).strip()
        if step_text:
            steps.append(PlanStep(ordinal, step_text, long_running))
    return sorted(steps, key=lambda s: s.ordinal)
