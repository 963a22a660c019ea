"""Time source. All session durations are measured against this clock."""

import time
from datetime import datetime, timezone
from typing import Optional


class Clock:
    """Server wall clock (epoch seconds, UTC day boundaries)."""

    def now(self) -> float:
        return time.time()

    def day(self, ts: Optional[float] = None) -> str:
        ts = self.now() if ts is None else ts
        return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")

    def previous_day(self, day: str) -> str:
        d = datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        return self.day(d.timestamp() - 86400)


class ManualClock(Clock):
    """A clock that only moves when told to (simulations and tests)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def set(self, ts: float):
        self._now = float(ts)

    def advance(self, seconds: float) -> float:
        self._now += seconds
        return self._now


def isoformat(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")
