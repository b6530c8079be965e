from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of the current time for lifecycle decisions."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock, always timezone-aware UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


system_clock = SystemClock()
