from __future__ import annotations

import re


_WS_RE = re.compile(r"\s+")


def normalize(s: str | None) -> str:
    """Canonical form of program output for comparison.

    Commas become spaces, whitespace runs collapse to one space, then the ends are
    trimmed. Case, number formatting and token order are preserved. Idempotent.

    Commas are dropped unconditionally, so "1,2" and "1 2" compare equal even when
    the comma is data (CSV-like output). Kept as observed product behaviour.
    """
    text = (s or "").replace(",", " ")
    return _WS_RE.sub(" ", text).strip()


def outputs_match(actual: str | None, expected: str | None) -> bool:
    return normalize(actual) == normalize(expected)
