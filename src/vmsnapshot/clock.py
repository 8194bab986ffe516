"""Time sources for status and condition timestamps."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Abstract time source."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time, UTC, truncated to whole seconds."""
        pass


class SystemClock(Clock):
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(microsecond=0)


class FakeClock(Clock):
    """Manually advanced clock for deterministic tests."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = (start or datetime(2020, 1, 1, tzinfo=timezone.utc)).replace(microsecond=0)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 1.0) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now
