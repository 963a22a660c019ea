"""
rate_limiter.py - Per-identity sliding-window rate limiting.

``check(identity_key, window_sec, max_count, action)`` answers whether one
more ``action`` is allowed for ``identity_key`` and, if so, counts it.
Identity keys combine the network address with the device id so rotating
only one of the two does not reset the window.

Two backends share the interface:
  - ``MemoryRateLimiter``: per-process deques, lost on restart.
  - ``SQLiteRateLimiter``: hit log in the shared database, pruned to the
    window on every check, so all processes on one database share limits.
"""

import asyncio
import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Callable, Deque, Dict, Optional, Tuple

from mineserver.config import RateLimitRule

if TYPE_CHECKING:
    from mineserver.storage import RateLimitRepo

logger = logging.getLogger("ratelimit")

UNKNOWN_DEVICE = "unknown"


def identity_key(ip: Optional[str], device_id: Optional[str]) -> str:
    return f"{ip or 'unknown-ip'}:{device_id or UNKNOWN_DEVICE}"


class _KeyLock:
    """Lock plus the number of checks holding or waiting on it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class RateLimiter:
    """Serializes checks per key; subclasses implement ``_hit``.

    Per-key locks only live while a check holds or waits on them, so idle
    identities cost nothing.
    """

    def __init__(self, now: Optional[Callable[[], float]] = None):
        self._now = now or time.time
        self._locks: Dict[str, _KeyLock] = {}

    async def check(
        self, identity_key: str, window_sec: float, max_count: int, action: str = "default",
    ) -> bool:
        if max_count <= 0:
            return False
        lock_key = f"{action}|{identity_key}"
        entry = self._locks.get(lock_key)
        if entry is None:
            entry = self._locks[lock_key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                allowed = await self._hit(identity_key, action, self._now(), window_sec, max_count)
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[lock_key]
        if not allowed:
            logger.warning(
                "Rate limit hit: key=%s action=%s (%d per %.0fs)",
                identity_key, action, max_count, window_sec,
            )
        return allowed

    async def check_rule(self, identity_key: str, rule: RateLimitRule) -> bool:
        return await self.check(identity_key, rule.window_sec, rule.max_count, rule.action)

    async def prune(self, max_window: float) -> int:
        """Forget hits older than ``max_window`` seconds. Returns how many went."""
        raise NotImplementedError

    async def _hit(self, key: str, action: str, now: float, window_sec: float, max_count: int) -> bool:
        raise NotImplementedError


class MemoryRateLimiter(RateLimiter):
    def __init__(self, now: Optional[Callable[[], float]] = None):
        super().__init__(now)
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}
        self._windows: Dict[str, float] = {}

    async def _hit(self, key: str, action: str, now: float, window_sec: float, max_count: int) -> bool:
        self._windows[action] = window_sec
        hits = self._hits.get((key, action))
        if hits is None:
            hits = self._hits[(key, action)] = deque()
        cutoff = now - window_sec
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= max_count:
            return False
        hits.append(now)
        return True

    async def prune(self, max_window: float) -> int:
        now = self._now()
        dropped = 0
        for bucket, hits in list(self._hits.items()):
            cutoff = now - min(self._windows.get(bucket[1], max_window), max_window)
            while hits and hits[0] <= cutoff:
                hits.popleft()
                dropped += 1
            if not hits:
                del self._hits[bucket]
        return dropped

    def reset(self):
        self._hits.clear()


class SQLiteRateLimiter(RateLimiter):
    def __init__(self, repo: "RateLimitRepo", now: Optional[Callable[[], float]] = None):
        super().__init__(now)
        self._repo = repo

    async def _hit(self, key: str, action: str, now: float, window_sec: float, max_count: int) -> bool:
        return await self._repo.hit(key, action, now, window_sec, max_count)

    async def prune(self, max_window: float) -> int:
        return await self._repo.purge_before(self._now() - max_window)
