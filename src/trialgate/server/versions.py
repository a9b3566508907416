"""Dotted version comparison (major.minor.patch)."""

from __future__ import annotations

import re

_LEADING_DIGITS = re.compile(r"\d+")


def _parts(version: str) -> list[int]:
    parts = []
    for piece in version.strip().lstrip("vV").split("."):
        match = _LEADING_DIGITS.match(piece)
        parts.append(int(match.group()) if match else 0)
    return parts


def compare_versions(a: str, b: str) -> int:
    """Return a negative number, zero or a positive number as *a* is
    older than, equal to or newer than *b*. Missing components count as 0."""
    pa, pb = _parts(a), _parts(b)
    for i in range(max(len(pa), len(pb))):
        na = pa[i] if i < len(pa) else 0
        nb = pb[i] if i < len(pb) else 0
        if na != nb:
            return na - nb
    return 0


def is_newer(latest: str, current: str) -> bool:
    return compare_versions(latest, current) > 0
