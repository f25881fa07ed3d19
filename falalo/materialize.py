"""Apply file and edit instructions to the workspace."""

import logging
import os
from dataclasses import dataclass

from falalo.context import CapacityExceeded, ContextSet
from falalo.markers import EditInstruction, EditOp, FileInstruction, strip_code_fences
from falalo.workspace import relative_path, resolve_path

logger = logging.getLogger(__name__)


class NotLonger(Exception):
    """Raised when an existing file would be replaced by shorter content.

    Longer-content-wins is a proxy for "more complete": it stops a truncated
    answer from clobbering a large file, but it also rejects legitimately
    shorter rewrites. Callers treat it as a skip, not a failure.
    """

    def __init__(self, path: str, existing_length: int, new_length: int):
        self.path = path
        self.existing_length = existing_length
        self.new_length = new_length
        super().__init__(f"File exists and new content is not longer: {path}")


@dataclass
class MaterializeResult:
    """Outcome of applying one instruction."""

    path: str
    action: str  # "created", "updated", "unchanged"
    message: str = ""

    @property
    def changed(self) -> bool:
        return self.action != "unchanged"


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return f.read()


def _write_text(path: str, content: str) -> None:
    """Write content to a file, creating parent directories if needed."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)


def apply_line_edit(original: str, edit: EditInstruction) -> tuple[str, list[str]]:
    """Apply a replace/add/delete edit to *original* text.

    Line numbers past the end of the file are clamped rather than rejected.
    Returns the new text and the clamping warnings.
    """
    had_newline = original.endswith("\n")
    lines = original.splitlines()
    total = len(lines)
    new_lines = (edit.content or "").splitlines()
    warnings: list[str] = []

    start = edit.start_line or 1
    end = edit.end_line or start

    if edit.op is EditOp.ADD:
        if start > total + 1:
            warnings.append(
                f"line {start} is past the end of {edit.file} ({total} lines), "
                f"appending instead"
            )
            start = total + 1
        lines[start - 1 : start - 1] = new_lines
    else:
        if end > total:
            warnings.append(
                f"range {start}-{end} exceeds {edit.file} ({total} lines), "
                f"clamped to {min(start, total + 1)}-{total}"
            )
            end = total
            start = min(start, total + 1)
        if edit.op is EditOp.DELETE:
            del lines[start - 1 : end]
        else:
            lines[start - 1 : end] = new_lines

    text = "\n".join(lines)
    if lines and (had_newline or not original):
        text += "\n"
    return text, warnings


class FileMaterializer:
    """Writes model-proposed files into the workspace.

    Every path written is auto-included into the context set.
    """

    def __init__(self, context: ContextSet):
        self.context = context
        self.root = context.root

    def _auto_include(self, rel: str) -> None:
        try:
            self.context.include(rel)
        except CapacityExceeded as e:
            logger.warning("Not adding %s to context: %s", rel, e)

    def apply_file(self, instruction: FileInstruction) -> MaterializeResult:
        """Create *instruction.path*, or grow it if it already exists.

        Raises:
            NotLonger: If the file exists and the new content is not longer.
            WorkspaceViolationError: If the path escapes the workspace.
            OSError: On write failures.
        """
        full_path = resolve_path(self.root, instruction.path)
        rel = relative_path(self.root, instruction.path)
        content = strip_code_fences(instruction.content).strip()

        action = "created"
        if os.path.isfile(full_path):
            existing_length = len(_read_text(full_path).strip())
            new_length = len(content)
            if new_length <= existing_length:
                logger.warning(
                    "Skipping %s: new content (%d chars) is not longer than "
                    "existing (%d chars)",
                    rel,
                    new_length,
                    existing_length,
                )
                raise NotLonger(rel, existing_length, new_length)
            logger.info(
                "Replacing %s with longer version (%d -> %d chars)",
                rel,
                existing_length,
                new_length,
            )
            action = "updated"

        _write_text(full_path, content)
        logger.info("File %s: %s", action, rel)
        self._auto_include(rel)
        return MaterializeResult(
            path=rel, action=action, message=f"{action.capitalize()} file: {rel}"
        )

    def apply_edit(self, edit: EditInstruction) -> MaterializeResult:
        """Apply a line-level edit or a full rewrite.

        Raises:
            FileNotFoundError: For replace/add/delete on a missing file.
            WorkspaceViolationError: If the path escapes the workspace.
            OSError: On read/write failures.
        """
        full_path = resolve_path(self.root, edit.file)
        rel = relative_path(self.root, edit.file)
        exists = os.path.isfile(full_path)
        original = _read_text(full_path) if exists else ""

        if edit.op is EditOp.REWRITE:
            new_text = strip_code_fences(edit.content or "")
            if new_text and not new_text.endswith("\n"):
                new_text += "\n"
        else:
            if not exists:
                raise FileNotFoundError(f"File does not exist: {rel}")
            new_text, warnings = apply_line_edit(original, edit)
            for warning in warnings:
                logger.warning("Edit %s: %s", edit.op.value, warning)

        if exists and new_text == original:
            logger.info("No changes needed for %s (%s)", rel, edit.op.value)
            return MaterializeResult(
                path=rel, action="unchanged", message=f"No changes needed for {rel}"
            )

        _write_text(full_path, new_text)
        action = "updated" if exists else "created"
        label = edit.description or edit.op.value
        logger.info("Edit %s applied to %s: %s", edit.op.value, rel, label)
        self._auto_include(rel)
        return MaterializeResult(
            path=rel, action=action, message=f"Updated {rel} ({label})"
        )
