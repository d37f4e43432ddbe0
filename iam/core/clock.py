"""Injectable time source."""

from __future__ import annotations

from datetime import UTC, datetime
from functools import lru_cache
from typing import Protocol


class Clock(Protocol):
    """Source of the current timezone-aware UTC instant."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the system wall clock."""

    def now(self) -> datetime:
        return datetime.now(UTC)


@lru_cache
def get_clock() -> Clock:
    """Create and cache the process clock."""
    return SystemClock()
