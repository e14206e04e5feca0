"""
Clock and calendar sources.

Everything in the engine reads time through a `Clock` so that decisions
can be replayed deterministically in tests and simulations.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


class Clock(ABC):
    """
    Base clock. Subclasses only need to implement `now_ms`.
    """

    @abstractmethod
    def now_ms(self) -> int:
        ...

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.now_ms() / 1000.0)

    def hour(self) -> int:
        return self.now().hour

    def weekday(self) -> int:
        """
        Day of week with Monday as 0.
        """
        return self.now().weekday()

    def is_weekend(self) -> bool:
        return self.weekday() >= 5

    def start_of_day_ms(self, ms: Optional[int] = None) -> int:
        moment = datetime.fromtimestamp((self.now_ms() if ms is None else ms) / 1000.0)
        midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        return int(midnight.timestamp() * 1000)


class SystemClock(Clock):
    def now_ms(self) -> int:
        return int(time.time() * 1000)


class FixedClock(Clock):
    """
    Manually advanced clock used by tests and the demo.
    """

    def __init__(self, start_ms: int) -> None:
        self._now_ms = int(start_ms)

    @classmethod
    def at(cls, moment: datetime) -> "FixedClock":
        return cls(int(moment.timestamp() * 1000))

    def now_ms(self) -> int:
        return self._now_ms

    def set(self, moment: datetime) -> None:
        self._now_ms = int(moment.timestamp() * 1000)

    def advance(
        self,
        ms: int = 0,
        minutes: float = 0,
        hours: float = 0,
        days: float = 0,
    ) -> int:
        delta = timedelta(minutes=minutes, hours=hours, days=days)
        self._now_ms += int(ms + delta.total_seconds() * 1000)
        return self._now_ms
