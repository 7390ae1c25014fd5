"""Path helpers for repository entity paths.

Repository paths are absolute, ``/``-separated and never carry a trailing
slash except for the root itself.  They double as index document ids.
"""

from __future__ import annotations

import posixpath
import re

ROOT = "/"


def canonical(path: str) -> str:
    """Normalize *path* to its canonical form (collapsed slashes, no trailing slash)."""
    collapsed = re.sub(r"/{2,}", "/", path)
    if len(collapsed) > 1:
        collapsed = collapsed.rstrip("/")
    return collapsed or ROOT


def is_root(path: str) -> bool:
    return canonical(path) == ROOT


def parent_path(path: str) -> str:
    """Return the parent collection of *path*. The root is its own parent."""
    return posixpath.dirname(canonical(path)) or ROOT


def basename(path: str) -> str:
    """Return the last path component (the entity label)."""
    return posixpath.basename(canonical(path))


def sql_glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate an SQL ``LIKE`` pattern into an anchored regular expression.

    ``%`` matches any run of characters (including none) and ``_`` matches
    exactly one character.  Everything else matches literally.
    """
    parts: list[str] = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)
