"""
Anchored Glob Matching
======================

Translates glob patterns into regular expressions anchored at both ends.

Literal regex metacharacters are escaped before glob tokens are expanded, so a
pattern only ever matches whole paths:

- ``**`` matches any sequence, including path separators
- ``*`` matches any sequence that does not cross a ``/``
- ``?`` matches exactly one non-separator character

``*.key`` therefore never matches ``not-a-key``, and ``foo/*.ts`` never matches
``foo/bar.ts.bak``.
"""

import posixpath
import re
from functools import lru_cache
from typing import Iterable, Optional, Pattern


@lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> Pattern[str]:
    """
    Compile a glob pattern into an anchored regex.

    Args:
        pattern: Glob pattern using ``/`` as separator

    Returns:
        Compiled regular expression
    """
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "*":
            if pattern.startswith("**", i):
                # "**/" also matches zero directories
                if pattern.startswith("**/", i):
                    parts.append("(?:.*/)?")
                    i += 3
                else:
                    parts.append(".*")
                    i += 2
                continue
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile(r"\A" + "".join(parts) + r"\Z", re.DOTALL)


def normalize_path(path: str) -> str:
    """Normalize separators and ``.``/``..`` segments to a posix-style path."""
    normalized = posixpath.normpath(path.replace("\\", "/"))
    if normalized == ".":
        return ""
    return normalized


def matches_pattern(path: str, pattern: str) -> bool:
    """
    Check a path against one glob pattern.

    The pattern is tried against the normalized full path and against the
    basename, so ``*.pem`` catches ``certs/server.pem``.
    """
    normalized = normalize_path(path)
    if not normalized:
        return False
    regex = glob_to_regex(pattern)
    if regex.match(normalized):
        return True
    basename = posixpath.basename(normalized)
    return basename != normalized and bool(regex.match(basename))


def first_match(path: str, patterns: Iterable[str]) -> Optional[str]:
    """Return the first pattern matching the path, or None."""
    for pattern in patterns:
        if matches_pattern(path, pattern):
            return pattern
    return None
