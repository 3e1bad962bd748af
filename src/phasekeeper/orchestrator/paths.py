"""
Work item path checks.

Paths are compared in a normalised POSIX form so that "docs/a.md",
"./docs/a.md" and "docs//a.md" count as the same target for mutual
exclusion.
"""

import posixpath
import re
from collections.abc import Sequence

from phasekeeper.orchestrator.errors import InvalidPath

INVALID_CHARACTERS = re.compile(r'[<>:"|?*\x00]')
DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")


def normalize_path(path: str) -> str:
    """Canonical comparison key for a target path."""
    normalized = posixpath.normpath(path.strip().replace("\\", "/"))
    return "" if normalized == "." else normalized


def check_path(path: str, allowed_roots: Sequence[str] = (".",)) -> str:
    """Validate a target path.

    Args:
        path: Path as supplied by the work item
        allowed_roots: Relative destination roots; "." allows any
            relative path

    Returns:
        The normalised path

    Raises:
        InvalidPath: With error_code PATH_TRAVERSAL for escapes and absolute
            paths, INVALID_PATH for everything else
    """
    if not path or not path.strip():
        raise InvalidPath(path, "path is empty")

    raw = path.strip().replace("\\", "/")
    if raw.startswith("/") or DRIVE_PREFIX.match(raw):
        raise InvalidPath(path, "absolute paths are not allowed", "PATH_TRAVERSAL")
    if ".." in raw.split("/"):
        raise InvalidPath(path, "path escapes its destination root", "PATH_TRAVERSAL")
    if INVALID_CHARACTERS.search(raw):
        raise InvalidPath(path, "path contains invalid characters")

    normalized = normalize_path(raw)
    if not normalized:
        raise InvalidPath(path, "path does not name a file")

    for root in allowed_roots:
        root_key = normalize_path(root)
        if not root_key or normalized == root_key or normalized.startswith(root_key + "/"):
            return normalized

    raise InvalidPath(path, f"path is outside the allowed roots {list(allowed_roots)}")
