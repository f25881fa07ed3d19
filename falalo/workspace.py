"""Workspace boundary checks and path normalisation.

Every file instruction coming from the model names a path relative to the
workspace root. These helpers turn such paths into absolute filesystem paths
and refuse anything that would escape the workspace.
"""

import os
from pathlib import PurePosixPath


class WorkspaceViolationError(Exception):
    """Raised when an operation would escape the workspace boundary."""

    pass


def normalize_root(path: str) -> str:
    """Return the absolute, user-expanded form of a workspace root.

    Raises:
        ValueError: If the path is not a valid directory.
    """
    normalized = os.path.abspath(os.path.expanduser(path))
    if not os.path.isdir(normalized):
        raise ValueError(f"Workspace root is not a valid directory: {normalized}")
    return normalized


def is_path_within_workspace(root: str, path: str) -> bool:
    """Check if a path is within the workspace boundary.

    Args:
        root: The absolute workspace root.
        path: The path to check (relative paths are resolved from *root*).
    """
    if not os.path.isabs(path):
        normalized = os.path.abspath(os.path.join(root, path))
    else:
        normalized = os.path.abspath(os.path.expanduser(path))

    # commonpath handles /home/user vs /home/username
    try:
        return os.path.commonpath([root, normalized]) == root
    except ValueError:
        # Different drives on Windows
        return False


def resolve_path(root: str, path: str) -> str:
    """Validate that *path* stays inside *root* and return its absolute form.

    Raises:
        WorkspaceViolationError: If the path is empty or outside the workspace.
    """
    if not path.strip():
        raise WorkspaceViolationError("Empty path")

    if not os.path.isabs(path):
        normalized = os.path.abspath(os.path.join(root, path))
    else:
        normalized = os.path.abspath(os.path.expanduser(path))

    if not is_path_within_workspace(root, normalized) or normalized == root:
        raise WorkspaceViolationError(
            f"Access denied: '{path}' is outside the workspace boundary. "
            f"All operations must remain within: {root}"
        )

    return normalized


def relative_path(root: str, path: str) -> str:
    """Return *path* as a POSIX-style path relative to *root*.

    This is the key used by the context set, so ``./src/a.py`` and
    ``/abs/root/src/a.py`` both map to ``src/a.py``. Only ``os.sep`` is a
    separator: on POSIX a backslash stays part of the file name, matching
    the file ``resolve_path`` points at.
    """
    absolute = resolve_path(root, path)
    rel = os.path.relpath(absolute, root)
    return str(PurePosixPath(*rel.split(os.sep)))
