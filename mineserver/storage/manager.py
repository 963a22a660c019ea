import logging
from typing import Optional

import aiosqlite

from ._migrate import run_migrations
from .activity import ActivityRepo
from .rate_limits import RateLimitRepo
from .users import UserRepo

logger = logging.getLogger("storage")


class StorageManager:
    """Top-level manager: opens the database, runs migrations, exposes repos."""

    def __init__(self, db_path: str = "mining.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self.users: Optional[UserRepo] = None
        self.rate_limits: Optional[RateLimitRepo] = None
        self.activity: Optional[ActivityRepo] = None

    async def initialize(self):
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA busy_timeout=5000")
        await run_migrations(self._db, logger)

        self.users = UserRepo(self._db)
        self.rate_limits = RateLimitRepo(self._db)
        self.activity = ActivityRepo(self._db)

        logger.info("Storage initialized: %s", self.db_path)

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Storage closed")
