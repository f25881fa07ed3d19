"""Context set: which workspace files are shown to the model.

The set is rebuilt from disk and glob rules at startup and then mutated by
explicit include/exclude calls (user actions, or the materializer after it
writes a file). It is never persisted.
"""

import logging
import os
from collections.abc import Iterable

import pathspec

from falalo import config
from falalo.workspace import normalize_root, relative_path

logger = logging.getLogger(__name__)


class CapacityExceeded(Exception):
    """Raised when including a path would exceed the context size limit."""

    def __init__(self, path: str, max_size: int):
        self.path = path
        self.max_size = max_size
        super().__init__(f"Cannot include more than {max_size} files in context: {path}")


def _compile(patterns: Iterable[str]) -> pathspec.PathSpec:
    return pathspec.PathSpec.from_lines("gitwildmatch", list(patterns))


class ContextSet:
    """Included/excluded workspace paths, bounded by ``max_size``.

    Invariants: ``included`` and ``excluded`` are disjoint, and
    ``len(included) <= max_size``. Paths are workspace-relative POSIX strings.
    """

    def __init__(
        self,
        root: str,
        max_size: int | None = None,
        include_globs: list[str] | None = None,
        exclude_globs: list[str] | None = None,
    ):
        self.root = normalize_root(root)
        self.max_size = config.MAX_CONTEXT_FILES if max_size is None else max_size
        self.include_globs = list(
            config.CONTEXT_INCLUSIONS if include_globs is None else include_globs
        )
        self.exclude_globs = list(
            config.CONTEXT_EXCLUSIONS if exclude_globs is None else exclude_globs
        )
        self._include_spec = _compile(self.include_globs)
        self._exclude_spec = _compile(self.exclude_globs)
        # dicts keep first-seen order, which the size cap is applied by
        self._included: dict[str, None] = {}
        self._excluded: dict[str, None] = {}

    # -- scanning ---------------------------------------------------------

    def is_excluded_by_glob(self, path: str) -> bool:
        return self._exclude_spec.match_file(path)

    def matches_include(self, path: str) -> bool:
        return self._include_spec.match_file(path) and not self.is_excluded_by_glob(
            path
        )

    def scan(self) -> list[str]:
        """List workspace files that no exclude glob matches."""
        paths: list[str] = []
        for root, dirs, files in os.walk(self.root):
            rel_root = os.path.relpath(root, self.root)
            prefix = "" if rel_root == "." else rel_root.replace(os.sep, "/") + "/"
            # Prune excluded directories so node_modules is never walked
            dirs[:] = [
                d for d in dirs if not self.is_excluded_by_glob(f"{prefix}{d}/")
            ]
            for fname in files:
                rel = f"{prefix}{fname}"
                if not self.is_excluded_by_glob(rel):
                    paths.append(rel)
        return paths

    def rebuild(self) -> None:
        """Reset both sets and re-seed ``included`` from the glob rules."""
        self._included.clear()
        self._excluded.clear()
        for path in self.scan():
            if len(self._included) >= self.max_size:
                logger.info(
                    "Context limit of %d files reached while scanning %s",
                    self.max_size,
                    self.root,
                )
                break
            if self.matches_include(path):
                self._included[path] = None
        logger.debug("Context rebuilt: %d files included", len(self._included))

    # -- mutation ---------------------------------------------------------

    def _key(self, path: str) -> str:
        return relative_path(self.root, path)

    def include(self, path: str) -> None:
        """Add *path* to the included set and drop it from the excluded set.

        Raises:
            CapacityExceeded: If the set is already at ``max_size``.
        """
        key = self._key(path)
        if key in self._included:
            return
        if len(self._included) >= self.max_size:
            raise CapacityExceeded(key, self.max_size)
        self._included[key] = None
        self._excluded.pop(key, None)

    def exclude(self, path: str) -> None:
        key = self._key(path)
        self._included.pop(key, None)
        self._excluded[key] = None

    def remove(self, path: str) -> None:
        """Forget *path* entirely (neither included nor excluded)."""
        key = self._key(path)
        self._included.pop(key, None)
        self._excluded.pop(key, None)

    # -- views ------------------------------------------------------------

    def snapshot_included(self) -> list[str]:
        return list(self._included)

    def snapshot_excluded(self) -> list[str]:
        return list(self._excluded)

    def __contains__(self, path: str) -> bool:
        return self._key(path) in self._included

    def __len__(self) -> int:
        return len(self._included)

    def build_context_text(
        self,
        read_contents: bool = True,
        terminal_history: str = "",
    ) -> str:
        """Render the prompt context for the current sets.

        Included files are listed with their contents (or just their names
        when *read_contents* is False), followed by the excluded files and
        any recent terminal activity.
        """
        text = ""
        included = self.snapshot_included()
        if included:
            text += "\nIncluded files and their contents:\n"
            for rel in included:
                full_path = os.path.join(self.root, rel)
                if not os.path.isfile(full_path):
                    continue
                if not read_contents:
                    text += f"{rel}\n"
                    continue
                try:
                    with open(full_path, "r", encoding="utf-8", errors="replace") as f:
                        content = f.read()
                except OSError as e:
                    logger.warning("Error reading context file %s: %s", rel, e)
                    continue
                text += f"\nFile: {rel}\nContent:\n{content}\n---\n"

        excluded = self.snapshot_excluded()
        if excluded:
            text += "\nExcluded files from context:\n" + "\n".join(excluded)

        if terminal_history:
            text += "\nRecent terminal activity:\n" + terminal_history

        return text
