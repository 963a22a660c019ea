"""
validator.py - Session validator.

Per-user state machine:

    IDLE --start--> EARNING --close--> IDLE
      any state with suspicious_score >= threshold is SUSPENDED

Start preconditions run in a fixed order and the first failure aborts with
no writes. The final write is a guarded UPDATE (idle, unsuspended, same
previous start) so two concurrent starts for one user cannot both win.

Closing goes through ``earnings.close_session`` and a guarded UPDATE on
the open session's start time, so a second close of the same session
(client check racing the sweep) is a no-op.
"""

import logging
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING, Optional

import aiosqlite

from mineserver.clock import Clock, isoformat
from mineserver.config import MiningConfig
from mineserver.earnings import SessionClose, close_session, session_expired
from mineserver.errors import (
    AccountSuspendedError,
    CooldownError,
    DailyLimitError,
    DataStoreError,
    DeviceChangeLimitError,
    IdentityError,
    NotFoundError,
    SessionActiveError,
)
from mineserver.events import MiningEvent, SESSION_STARTED, SUSPICION_RESET
from mineserver.notifications import NotificationSink, NullSink

if TYPE_CHECKING:
    from mineserver.storage import UserRepo

logger = logging.getLogger("validator")


class SessionState(str, Enum):
    IDLE = "IDLE"
    EARNING = "EARNING"
    SUSPENDED = "SUSPENDED"


@contextmanager
def store_errors(action: str, user_id: str):
    try:
        yield
    except aiosqlite.Error as e:
        logger.exception("Store failure during %s for %s", action, user_id)
        raise DataStoreError("Internal server error", action=action, user_id=user_id) from e


class SessionValidator:
    """Decides session starts, computes closes, flags suspicious patterns."""

    def __init__(
        self,
        user_repo: "UserRepo",
        config: Optional[MiningConfig] = None,
        clock: Optional[Clock] = None,
        sink: Optional[NotificationSink] = None,
    ):
        self.users = user_repo
        self.config = config or MiningConfig()
        self.clock = clock or Clock()
        self.sink = sink or NullSink()

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    async def load(self, user_id: str, now: Optional[float] = None) -> dict:
        """Fetch the record, creating a zeroed one on first access."""
        with store_errors("load", user_id):
            record = await self.users.get_or_create(
                user_id,
                now=now,
                earning_rate=self.config.default_earning_rate,
                efficiency_multiplier=self.config.default_efficiency,
            )
        if record is None:
            raise DataStoreError("User data not found. Please try again.", user_id=user_id)
        return record

    def is_suspended(self, record: dict) -> bool:
        return (record.get("suspicious_score") or 0) >= self.config.suspended_threshold

    def state_of(self, record: dict) -> SessionState:
        if self.is_suspended(record):
            return SessionState.SUSPENDED
        if record.get("is_earning"):
            return SessionState.EARNING
        return SessionState.IDLE

    def ensure_not_suspended(self, record: dict):
        if self.is_suspended(record):
            logger.warning(
                "Suspended account %s refused (score=%d)",
                record["user_id"], record["suspicious_score"],
            )
            raise AccountSuspendedError(
                "Account temporarily suspended due to suspicious activity",
                user_id=record["user_id"],
            )

    def validate_fingerprint(self, fingerprint: Optional[str]) -> str:
        """Return the fingerprint if usable as a device identity, else raise IdentityError."""
        if not fingerprint or not isinstance(fingerprint, str) or not fingerprint.strip():
            raise IdentityError("Invalid device identification")
        fingerprint = fingerprint.strip()
        if len(fingerprint) < self.config.min_fingerprint_length:
            raise IdentityError("Suspicious device pattern detected", reason="too_short")
        lowered = fingerprint.lower()
        for pattern in self.config.fingerprint_deny_patterns:
            if pattern in lowered:
                raise IdentityError("Suspicious device pattern detected", pattern=pattern)
        return fingerprint

    def _reject_active(self, record: dict, now: float):
        """Refuse a start while a session is open.

        A restart inside the minimum interval is reported as a cooldown,
        anything later as an already-active session.
        """
        user_id = record["user_id"]
        started = record["session_started_at"]
        if started is not None and now - started < self.config.min_session_interval:
            logger.warning("Rapid restart attempt for %s: %.1fs after start", user_id, now - started)
            raise CooldownError("Please wait before starting another session", user_id=user_id)
        logger.warning("Multiple session attempt detected for %s", user_id)
        raise SessionActiveError("Mining session already active", user_id=user_id)

    # -------------------------------------------------------------------
    # IDLE -> EARNING
    # -------------------------------------------------------------------

    async def start_session(
        self, user_id: str, device_fingerprint: Optional[str], ip: Optional[str] = None,
    ) -> dict:
        cfg = self.config
        now = self.clock.now()
        today = self.clock.day(now)

        record = await self.load(user_id, now)
        self.ensure_not_suspended(record)

        if record["is_earning"]:
            if session_expired(record, now, cfg):
                logger.info("Closing expired session for %s before new start", user_id)
                await self._close(record, now)
                record = await self.load(user_id, now)
                self.ensure_not_suspended(record)
            if record["is_earning"]:
                self._reject_active(record, now)

        fingerprint = self.validate_fingerprint(device_fingerprint)

        change_date = record["last_device_change_date"]
        changes = record["device_change_count"] if change_date == today else 0
        last_fingerprint = record["device_fingerprint"]
        if last_fingerprint and last_fingerprint != fingerprint:
            if changes >= cfg.max_device_changes_per_day:
                logger.warning("Too many device changes for %s: %d today", user_id, changes)
                raise DeviceChangeLimitError("Too many device changes detected", user_id=user_id)
            logger.info("Device fingerprint changed for %s (%d today)", user_id, changes + 1)
            changes += 1
            change_date = today

        last_started = record["last_started_at"]
        if last_started is not None and now - last_started < cfg.min_session_interval:
            logger.warning(
                "Session interval violation for %s: %.1fs since last start",
                user_id, now - last_started,
            )
            raise CooldownError("Please wait before starting another session", user_id=user_id)

        sessions_today = record["sessions_today"] if record["sessions_day"] == today else 0
        if sessions_today >= cfg.max_sessions_per_day:
            logger.warning("Daily session limit exceeded for %s", user_id)
            raise DailyLimitError("Daily session limit reached", user_id=user_id)

        today_earned = record["today_earned"] if record["last_session_date"] == today else 0.0
        if today_earned >= cfg.max_daily_earnings:
            logger.warning("Daily earnings limit exceeded for %s: %.4f", user_id, today_earned)
            raise DailyLimitError("Daily earnings limit reached", user_id=user_id)

        with store_errors("start", user_id):
            started = await self.users.try_start_session(
                user_id,
                now,
                expected_last_started_at=last_started,
                suspended_threshold=cfg.suspended_threshold,
                device_fingerprint=fingerprint,
                ip=ip,
                device_change_count=changes,
                last_device_change_date=change_date,
                sessions_today=sessions_today + 1,
                sessions_day=today,
            )
        if not started:
            with store_errors("start", user_id):
                current = await self.users.get(user_id)
            if current is None:
                raise DataStoreError("User data not found. Please try again.", user_id=user_id)
            self.ensure_not_suspended(current)
            logger.warning("Concurrent session start lost for %s", user_id)
            raise SessionActiveError("Mining session already active", user_id=user_id)

        logger.info("Mining session started for %s (device=%s ip=%s)", user_id, fingerprint, ip)
        await self.sink.emit(MiningEvent(
            type=SESSION_STARTED,
            user_id=user_id,
            created_at=now,
            payload={
                "started_at": now,
                "session_duration_sec": cfg.max_session_duration,
                "device_fingerprint": fingerprint,
                "ip": ip,
            },
        ))
        return {
            "message": "Mining started successfully!",
            "startTime": isoformat(now),
            "sessionDuration": cfg.max_session_duration,
        }

    # -------------------------------------------------------------------
    # EARNING -> IDLE
    # -------------------------------------------------------------------

    async def _close(self, record: dict, now: float, forced: bool = False) -> Optional[SessionClose]:
        user_id = record["user_id"]
        close = close_session(record, now, self.config, forced=forced, clock=self.clock)
        with store_errors("close", user_id):
            applied = await self.users.apply_close(user_id, record["session_started_at"], close)
        if not applied:
            logger.info("Session for %s already closed elsewhere", user_id)
            return None

        for kind in close.violations:
            logger.warning(
                "Integrity violation %s for %s: raw_elapsed=%.1fs raw_earnings=%.6f",
                kind, user_id, close.raw_elapsed, close.raw_earnings,
            )
        logger.info(
            "Session closed for %s: elapsed=%.1fs earnings=%.6f today=%.6f forced=%s",
            user_id, close.elapsed, close.earnings, close.today_earned, forced,
        )
        await self.sink.emit_all(close.events)
        return close

    async def close_if_expired(self, record: dict) -> Optional[SessionClose]:
        """Sweep entry point: close ``record``'s session if it has run its full length."""
        now = self.clock.now()
        if not session_expired(record, now, self.config):
            return None
        return await self._close(record, now)

    async def end_session(self, user_id: str, forced: bool = False) -> Optional[SessionClose]:
        """Close the user's session if expired (or unconditionally when ``forced``).

        Returns None when there was nothing to close.
        """
        now = self.clock.now()
        record = await self.load(user_id, now)
        if not record["is_earning"]:
            return None
        if not forced and not session_expired(record, now, self.config):
            return None
        return await self._close(record, now, forced=forced)

    async def check_session(self, user_id: str) -> dict:
        now = self.clock.now()
        record = await self.load(user_id, now)
        self.ensure_not_suspended(record)

        if session_expired(record, now, self.config):
            close = await self._close(record, now)
            if close is not None:
                return {
                    "message": "Mining session ended",
                    "sessionEnded": True,
                    "earnings": close.earnings,
                    "sessionDuration": close.elapsed,
                    "isMining": False,
                }
            record = await self.load(user_id, now)

        result = {
            "message": "Session check completed",
            "sessionEnded": False,
            "isMining": bool(record["is_earning"]),
        }
        if record["is_earning"]:
            elapsed = max(now - record["session_started_at"], 0.0)
            result["remainingSec"] = max(self.config.max_session_duration - elapsed, 0.0)
        return result

    # -------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------

    async def reset_suspicion(self, user_id: str, actor: str = "admin") -> dict:
        with store_errors("reset_suspicion", user_id):
            record = await self.users.get(user_id)
            if record is None:
                raise NotFoundError("User not found", user_id=user_id)
            await self.users.reset_suspicion(user_id, self.clock.now())
        logger.info(
            "Suspicion reset for %s by %s (was %d)", user_id, actor, record["suspicious_score"],
        )
        await self.sink.emit(MiningEvent(
            type=SUSPICION_RESET,
            user_id=user_id,
            created_at=self.clock.now(),
            payload={"previous_score": record["suspicious_score"], "actor": actor},
        ))
        return {"user_id": user_id, "previous_score": record["suspicious_score"], "suspicious_score": 0}
