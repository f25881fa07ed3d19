"""Unit tests for falalo.materialize."""

import pytest

from falalo.context import ContextSet
from falalo.markers import EditInstruction, EditOp, FileInstruction, parse_response
from falalo.materialize import (
    FileMaterializer,
    NotLonger,
    apply_line_edit,
)
from falalo.workspace import WorkspaceViolationError


@pytest.fixture
def materializer(context):
    return FileMaterializer(context)


def _edit(op, start=None, end=None, content=None, file="a.txt"):
    return EditInstruction(
        op=op, file=file, start_line=start, end_line=end, content=content
    )


# ---------------------------------------------------------------------------
# apply_file
# ---------------------------------------------------------------------------


class TestApplyFile:

    def test_creates_file(self, materializer, tmp_path):
        result = materializer.apply_file(FileInstruction("a.txt", "hello"))
        assert (tmp_path / "a.txt").read_text() == "hello"
        assert result.action == "created"
        assert result.path == "a.txt"
        assert result.changed

    def test_parsed_block_round_trip(self, materializer, tmp_path):
        parsed = parse_response("### src/pkg/mod.py\n```python\nx = 1\n```\n%%%")
        materializer.apply_file(parsed.files[0])
        assert (tmp_path / "src" / "pkg" / "mod.py").read_text() == "x = 1"

    def test_auto_includes_written_file(self, materializer, context):
        materializer.apply_file(FileInstruction("src/new.py", "x"))
        assert "src/new.py" in context

    def test_auto_include_overrides_exclusion(self, materializer, context):
        context.exclude("a.txt")
        materializer.apply_file(FileInstruction("a.txt", "x"))
        assert "a.txt" in context
        assert context.snapshot_excluded() == []

    def test_shorter_content_vetoed(self, materializer, tmp_path):
        (tmp_path / "a.txt").write_text("a much longer original body")
        with pytest.raises(NotLonger) as exc_info:
            materializer.apply_file(FileInstruction("a.txt", "short"))
        assert exc_info.value.path == "a.txt"
        assert (tmp_path / "a.txt").read_text() == "a much longer original body"

    def test_equal_length_vetoed(self, materializer, tmp_path):
        (tmp_path / "a.txt").write_text("abc")
        with pytest.raises(NotLonger, match="not longer: a.txt"):
            materializer.apply_file(FileInstruction("a.txt", "xyz"))
        assert (tmp_path / "a.txt").read_text() == "abc"

    def test_longer_content_replaces(self, materializer, tmp_path):
        (tmp_path / "a.txt").write_text("abc")
        result = materializer.apply_file(FileInstruction("a.txt", "abcdef"))
        assert result.action == "updated"
        assert (tmp_path / "a.txt").read_text() == "abcdef"

    def test_escape_rejected(self, materializer, tmp_path):
        with pytest.raises(WorkspaceViolationError):
            materializer.apply_file(FileInstruction("../evil.txt", "x"))
        assert not (tmp_path.parent / "evil.txt").exists()

    def test_capacity_does_not_block_write(self, tmp_path):
        ctx = ContextSet(str(tmp_path), max_size=0, include_globs=["**/*"])
        FileMaterializer(ctx).apply_file(FileInstruction("a.txt", "x"))
        assert (tmp_path / "a.txt").read_text() == "x"
        assert len(ctx) == 0


# ---------------------------------------------------------------------------
# apply_line_edit
# ---------------------------------------------------------------------------


class TestApplyLineEdit:

    ORIGINAL = "one\ntwo\nthree\nfour\n"

    def test_replace_range(self):
        text, warnings = apply_line_edit(
            self.ORIGINAL, _edit(EditOp.REPLACE, 2, 3, "TWO\nTHREE")
        )
        assert text == "one\nTWO\nTHREE\nfour\n"
        assert warnings == []

    def test_replace_with_more_lines(self):
        text, _ = apply_line_edit(self.ORIGINAL, _edit(EditOp.REPLACE, 1, 1, "a\nb"))
        assert text == "a\nb\ntwo\nthree\nfour\n"

    def test_add_inserts_before_line(self):
        text, _ = apply_line_edit(self.ORIGINAL, _edit(EditOp.ADD, 2, 2, "new"))
        assert text == "one\nnew\ntwo\nthree\nfour\n"

    def test_add_past_end_appends(self):
        text, warnings = apply_line_edit(
            self.ORIGINAL, _edit(EditOp.ADD, 99, 99, "tail")
        )
        assert text == "one\ntwo\nthree\nfour\ntail\n"
        assert len(warnings) == 1

    def test_delete_range(self):
        text, _ = apply_line_edit(self.ORIGINAL, _edit(EditOp.DELETE, 2, 3))
        assert text == "one\nfour\n"

    def test_delete_clamped_to_end(self):
        text, warnings = apply_line_edit(self.ORIGINAL, _edit(EditOp.DELETE, 3, 10))
        assert text == "one\ntwo\n"
        assert "clamped to 3-4" in warnings[0]

    def test_replace_entirely_past_end_appends(self):
        text, warnings = apply_line_edit(
            self.ORIGINAL, _edit(EditOp.REPLACE, 8, 9, "five")
        )
        assert text == "one\ntwo\nthree\nfour\nfive\n"
        assert warnings

    def test_missing_trailing_newline_preserved(self):
        text, _ = apply_line_edit("a\nb", _edit(EditOp.REPLACE, 2, 2, "B"))
        assert text == "a\nB"


# ---------------------------------------------------------------------------
# apply_edit
# ---------------------------------------------------------------------------


class TestApplyEdit:

    def test_replace_existing_file(self, materializer, tmp_path):
        (tmp_path / "a.txt").write_text("one\ntwo\n")
        result = materializer.apply_edit(_edit(EditOp.REPLACE, 2, 2, "TWO"))
        assert (tmp_path / "a.txt").read_text() == "one\nTWO\n"
        assert result.action == "updated"

    def test_edit_on_missing_file(self, materializer):
        with pytest.raises(FileNotFoundError, match="does not exist: a.txt"):
            materializer.apply_edit(_edit(EditOp.DELETE, 1, 1))

    def test_rewrite_creates_file(self, materializer, tmp_path, context):
        result = materializer.apply_edit(_edit(EditOp.REWRITE, content="fresh"))
        assert (tmp_path / "a.txt").read_text() == "fresh\n"
        assert result.action == "created"
        assert "a.txt" in context

    def test_rewrite_may_shorten(self, materializer, tmp_path):
        (tmp_path / "a.txt").write_text("a long body that gets replaced\n")
        materializer.apply_edit(_edit(EditOp.REWRITE, content="short"))
        assert (tmp_path / "a.txt").read_text() == "short\n"

    def test_rewrite_is_idempotent(self, materializer, tmp_path):
        edit = _edit(EditOp.REWRITE, content="```\nsame\n```")
        materializer.apply_edit(edit)
        result = materializer.apply_edit(edit)
        assert result.action == "unchanged"
        assert not result.changed
        assert (tmp_path / "a.txt").read_text() == "same\n"

    def test_noop_replace_does_not_write(self, materializer, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("one\ntwo\n")
        mtime = path.stat().st_mtime_ns
        result = materializer.apply_edit(_edit(EditOp.REPLACE, 1, 1, "one"))
        assert result.action == "unchanged"
        assert path.stat().st_mtime_ns == mtime

    def test_edit_escape_rejected(self, materializer):
        with pytest.raises(WorkspaceViolationError):
            materializer.apply_edit(
                _edit(EditOp.REWRITE, content="x", file="/etc/passwd")
            )
