"""Time helpers."""

from __future__ import annotations

import time

MS_PER_DAY = 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Return current timestamp in milliseconds."""
    return int(time.time() * 1000)


def days_to_ms(days: float) -> int:
    return int(days * MS_PER_DAY)


__all__ = ["now_ms", "days_to_ms", "MS_PER_DAY"]
