"""Wildcard matching used to route events to log subscribers."""
from __future__ import annotations

import re
from functools import lru_cache

MATCH_ALL = "*"


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.DOTALL)


def matches(pattern: str | None, candidate: str | None) -> bool:
    """Return ``True`` when *candidate* satisfies the wildcard *pattern*.

    ``*`` matches any run of characters (``/`` included) and ``?`` matches a
    single character. The whole candidate must match. Missing or empty
    candidates never match, not even the catch-all pattern.
    """

    if not isinstance(pattern, str) or not pattern:
        return False
    if not isinstance(candidate, str) or not candidate:
        return False
    if pattern == MATCH_ALL:
        return True
    return _compile(pattern).fullmatch(candidate) is not None


def matches_any(pattern: str | None, *candidates: str | None) -> bool:
    """Return ``True`` if *pattern* matches at least one of *candidates*."""

    return any(matches(pattern, candidate) for candidate in candidates)


__all__ = ["MATCH_ALL", "matches", "matches_any"]
