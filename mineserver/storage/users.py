import logging
import time
from typing import TYPE_CHECKING, List, Optional

import aiosqlite

if TYPE_CHECKING:
    from mineserver.earnings import SessionClose

logger = logging.getLogger("storage")

USER_COLUMNS = (
    "user_id",
    "balance",
    "is_earning",
    "session_started_at",
    "last_started_at",
    "earning_rate",
    "efficiency_multiplier",
    "total_earned",
    "today_earned",
    "best_session",
    "total_sessions",
    "last_session_date",
    "last_session_earnings",
    "sessions_today",
    "sessions_day",
    "experience",
    "level",
    "daily_streak",
    "last_daily_claim",
    "upgrade_speed",
    "upgrade_efficiency",
    "upgrade_capacity",
    "push_token",
    "last_activity",
    "suspicious_score",
    "device_fingerprint",
    "last_device_change_date",
    "device_change_count",
    "last_ip",
    "time_manipulation_flag",
    "excessive_earnings_flag",
    "created_at",
    "updated_at",
)

_BOOL_COLUMNS = ("is_earning", "time_manipulation_flag", "excessive_earnings_flag")

_SELECT = "SELECT " + ", ".join(USER_COLUMNS) + " FROM users"

UPGRADE_COLUMNS = {
    "speed": "upgrade_speed",
    "efficiency": "upgrade_efficiency",
    "capacity": "upgrade_capacity",
}


def _row_to_user(row) -> dict:
    user = dict(zip(USER_COLUMNS, row))
    for col in _BOOL_COLUMNS:
        user[col] = bool(user[col])
    return user


class UserRepo:
    """User earning records. Every mutation is a single guarded UPDATE."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def create(
        self,
        user_id: str,
        now: Optional[float] = None,
        earning_rate: float = 0.000116,
        efficiency_multiplier: float = 1.0,
    ) -> Optional[dict]:
        now = time.time() if now is None else now
        await self._db.execute(
            "INSERT OR IGNORE INTO users (user_id, earning_rate, efficiency_multiplier, "
            "last_activity, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, earning_rate, efficiency_multiplier, now, now, now),
        )
        await self._db.commit()
        return await self.get(user_id)

    async def get(self, user_id: str) -> Optional[dict]:
        async with self._db.execute(_SELECT + " WHERE user_id = ?", (user_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_user(row)

    async def get_or_create(
        self,
        user_id: str,
        now: Optional[float] = None,
        earning_rate: float = 0.000116,
        efficiency_multiplier: float = 1.0,
    ) -> Optional[dict]:
        user = await self.get(user_id)
        if user is None:
            user = await self.create(user_id, now, earning_rate, efficiency_multiplier)
            logger.info("Created earning record for %s", user_id)
        return user

    async def list_earning(self) -> List[dict]:
        results = []
        async with self._db.execute(
            _SELECT + " WHERE is_earning = 1 ORDER BY session_started_at"
        ) as cursor:
            async for row in cursor:
                results.append(_row_to_user(row))
        return results

    async def count(self, earning_only: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM users"
        if earning_only:
            sql += " WHERE is_earning = 1"
        async with self._db.execute(sql) as cursor:
            row = await cursor.fetchone()
        return row[0]

    async def try_start_session(
        self,
        user_id: str,
        now: float,
        *,
        expected_last_started_at: Optional[float],
        suspended_threshold: int,
        device_fingerprint: str,
        ip: Optional[str],
        device_change_count: int,
        last_device_change_date: Optional[str],
        sessions_today: int,
        sessions_day: str,
    ) -> bool:
        """Open a session if the record is still idle, unsuspended and unchanged.

        Returns False when another writer got there first.
        """
        cursor = await self._db.execute(
            "UPDATE users SET is_earning = 1, session_started_at = ?, last_started_at = ?, "
            "device_fingerprint = ?, last_ip = ?, device_change_count = ?, "
            "last_device_change_date = ?, sessions_today = ?, sessions_day = ?, "
            "last_activity = ?, updated_at = ? "
            "WHERE user_id = ? AND is_earning = 0 AND suspicious_score < ? "
            "AND last_started_at IS ?",
            (
                now, now, device_fingerprint, ip, device_change_count,
                last_device_change_date, sessions_today, sessions_day,
                now, now,
                user_id, suspended_threshold, expected_last_started_at,
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def apply_close(self, user_id: str, started_at: float, close: "SessionClose") -> bool:
        """Credit a closed session. No-op (False) if that session is no longer open."""
        cursor = await self._db.execute(
            "UPDATE users SET "
            "balance = balance + ?, "
            "total_earned = total_earned + ?, "
            "total_sessions = total_sessions + 1, "
            "best_session = MAX(best_session, ?), "
            "today_earned = CASE WHEN last_session_date IS ? THEN today_earned + ? ELSE ? END, "
            "last_session_date = ?, "
            "last_session_earnings = ?, "
            "experience = experience + ?, "
            "level = (experience + ?) / 100 + 1, "
            "suspicious_score = suspicious_score + ?, "
            "time_manipulation_flag = MAX(time_manipulation_flag, ?), "
            "excessive_earnings_flag = MAX(excessive_earnings_flag, ?), "
            "is_earning = 0, session_started_at = NULL, "
            "last_activity = ?, updated_at = ? "
            "WHERE user_id = ? AND is_earning = 1 AND session_started_at = ?",
            (
                close.earnings,
                close.earnings,
                close.earnings,
                close.day, close.earnings, close.earnings,
                close.day,
                close.earnings,
                close.experience_gained,
                close.experience_gained,
                close.suspicion_delta,
                int(close.time_manipulation),
                int(close.excessive_earnings),
                close.ended_at, close.ended_at,
                user_id, started_at,
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def reset_suspicion(self, user_id: str, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        cursor = await self._db.execute(
            "UPDATE users SET suspicious_score = 0, time_manipulation_flag = 0, "
            "excessive_earnings_flag = 0, updated_at = ? WHERE user_id = ?",
            (now, user_id),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def set_push_token(self, user_id: str, push_token: Optional[str]) -> bool:
        cursor = await self._db.execute(
            "UPDATE users SET push_token = ?, updated_at = ? WHERE user_id = ?",
            (push_token, time.time(), user_id),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def apply_daily_claim(
        self,
        user_id: str,
        now: float,
        *,
        day: str,
        expected_last_claim: Optional[str],
        coins: float,
        experience: int,
        streak: int,
    ) -> bool:
        cursor = await self._db.execute(
            "UPDATE users SET balance = balance + ?, experience = experience + ?, "
            "level = (experience + ?) / 100 + 1, daily_streak = ?, last_daily_claim = ?, "
            "last_activity = ?, updated_at = ? "
            "WHERE user_id = ? AND last_daily_claim IS ?",
            (coins, experience, experience, streak, day, now, now, user_id, expected_last_claim),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def apply_upgrade(
        self,
        user_id: str,
        now: float,
        *,
        upgrade_id: str,
        expected_level: int,
        cost: float,
        earning_rate: Optional[float] = None,
        efficiency_multiplier: Optional[float] = None,
    ) -> bool:
        """Debit ``cost`` and bump one upgrade level, guarded on balance and level."""
        column = UPGRADE_COLUMNS[upgrade_id]
        sets = [f"{column} = {column} + 1", "balance = balance - ?"]
        params = [cost]
        if earning_rate is not None:
            sets.append("earning_rate = ?")
            params.append(earning_rate)
        if efficiency_multiplier is not None:
            sets.append("efficiency_multiplier = ?")
            params.append(efficiency_multiplier)
        sets.extend(["last_activity = ?", "updated_at = ?"])
        params.extend([now, now])
        params.extend([user_id, expected_level, cost])
        cursor = await self._db.execute(
            "UPDATE users SET " + ", ".join(sets) + " "
            f"WHERE user_id = ? AND {column} = ? AND balance >= ?",
            params,
        )
        await self._db.commit()
        return cursor.rowcount == 1
