"""Text processing helpers."""

from __future__ import annotations

import re

WHITESPACE_RE = re.compile(r"[ \t\r\f\v]+")
BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def normalize(text: str) -> str:
    """Collapse runs of spaces, keep paragraph breaks, strip."""
    text = WHITESPACE_RE.sub(" ", text)
    text = BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()


def count_words(text: str) -> int:
    return len(text.split())


__all__ = ["normalize", "count_words"]
