import aiosqlite


class RateLimitRepo:
    """Persisted sliding-window hit log, pruned to the window on every check."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def hit(self, key: str, action: str, now: float, window_sec: float, max_count: int) -> bool:
        """Count one invocation if the window still has room. Returns allowed."""
        cutoff = now - window_sec
        await self._db.execute(
            "DELETE FROM rate_limit_hits WHERE key = ? AND action = ? AND hit_at <= ?",
            (key, action, cutoff),
        )
        async with self._db.execute(
            "SELECT COUNT(*) FROM rate_limit_hits WHERE key = ? AND action = ?",
            (key, action),
        ) as cursor:
            row = await cursor.fetchone()
        if row[0] >= max_count:
            await self._db.commit()
            return False
        await self._db.execute(
            "INSERT INTO rate_limit_hits (key, action, hit_at) VALUES (?, ?, ?)",
            (key, action, now),
        )
        await self._db.commit()
        return True

    async def count(self, key: str, action: str) -> int:
        async with self._db.execute(
            "SELECT COUNT(*) FROM rate_limit_hits WHERE key = ? AND action = ?",
            (key, action),
        ) as cursor:
            row = await cursor.fetchone()
        return row[0]

    async def purge_before(self, cutoff: float) -> int:
        cursor = await self._db.execute(
            "DELETE FROM rate_limit_hits WHERE hit_at <= ?", (cutoff,)
        )
        await self._db.commit()
        return cursor.rowcount
