"""Helpers for comparing chemical names that may carry a batch suffix.

A chemical received with several expiry dates is stored as sibling batches
named ``"<base>"``, ``"<base> - A"``, ``"<base> - B"`` and so on. These
functions strip, detect and build those suffixes and produce the canonical
``name_key`` used for indexed lookups.
"""

from __future__ import annotations

import re
import string

__all__ = [
    "SUFFIX_LETTERS",
    "base_name",
    "clean_name",
    "name_key",
    "next_suffix",
    "suffix_of",
    "suffixed",
]

SUFFIX_LETTERS = string.ascii_uppercase

_SUFFIX_RE = re.compile(r"^(?P<base>.*?)\s+-\s+(?P<suffix>[A-Za-z])$")


def clean_name(raw: str | None) -> str:
    """Trim surrounding whitespace and squash repeated spaces into one."""

    if raw is None:
        return ""
    return re.sub(r"\s+", " ", raw.strip())


def base_name(name: str | None) -> str:
    cleaned = clean_name(name)
    match = _SUFFIX_RE.match(cleaned)
    if match:
        return match.group("base")
    return cleaned


def suffix_of(name: str | None) -> str | None:
    match = _SUFFIX_RE.match(clean_name(name))
    if match:
        return match.group("suffix").upper()
    return None


def suffixed(base: str, letter: str | None) -> str:
    if not letter:
        return clean_name(base)
    return f"{clean_name(base)} - {letter.upper()}"


def name_key(name: str | None) -> str:
    """Canonical lookup key: whitespace-collapsed, case-folded, suffix-free."""

    return base_name(name).casefold()


def next_suffix(names) -> str | None:
    """Return the letter after the greatest suffix used in ``names``.

    Returns ``"A"`` when no suffix is in use and ``None`` once ``Z`` is taken.
    """

    used = sorted({s for s in (suffix_of(name) for name in names) if s})
    if not used:
        return SUFFIX_LETTERS[0]
    position = SUFFIX_LETTERS.index(used[-1]) + 1
    if position >= len(SUFFIX_LETTERS):
        return None
    return SUFFIX_LETTERS[position]
