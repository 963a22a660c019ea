"""
earnings.py - Session close computation.

``close_session`` is the one place a session's reward is worked out. Both
the on-demand path (a client checking its session) and the periodic sweep
call it with the stored record and the server clock, then hand the result
to ``UserRepo.apply_close``. It performs no I/O.

    elapsed  = clamp(now - session_started_at, 0, max_session_duration)
    raw      = earning_rate * efficiency_multiplier * elapsed
    earnings = min(raw, max_earnings_per_session)

Anomalies are scored, not rejected: the session still closes and the
capped amount is still credited.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional

from mineserver.clock import Clock
from mineserver.config import MiningConfig
from mineserver.events import MiningEvent, SESSION_COMPLETED, VIOLATION

TIME_MANIPULATION = "time_manipulation"
EXCESSIVE_EARNINGS = "excessive_earnings"

XP_PER_COIN = 10
XP_PER_LEVEL = 100


@dataclass
class SessionClose:
    """Outcome of closing one session, ready to be applied to the store."""

    user_id: str
    started_at: float
    ended_at: float
    day: str
    raw_elapsed: float
    elapsed: float
    raw_earnings: float
    earnings: float
    today_earned: float
    best_session: float
    experience_gained: int
    suspicion_delta: int = 0
    violations: List[str] = field(default_factory=list)
    events: List[MiningEvent] = field(default_factory=list)
    forced: bool = False

    @property
    def time_manipulation(self) -> bool:
        return TIME_MANIPULATION in self.violations

    @property
    def excessive_earnings(self) -> bool:
        return EXCESSIVE_EARNINGS in self.violations

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "elapsed_sec": round(self.elapsed, 3),
            "raw_earnings": self.raw_earnings,
            "earnings": self.earnings,
            "today_earned": self.today_earned,
            "experience_gained": self.experience_gained,
            "violations": list(self.violations),
            "forced": self.forced,
        }


def clamp_elapsed(raw_elapsed: float, config: MiningConfig) -> float:
    return min(max(raw_elapsed, 0.0), config.max_session_duration)


def compute_earnings(
    earning_rate: float, efficiency_multiplier: float, elapsed: float, config: MiningConfig,
) -> tuple:
    """Return ``(raw, capped)`` earnings for ``elapsed`` rewarded seconds."""
    raw = earning_rate * efficiency_multiplier * elapsed
    return raw, min(raw, config.max_earnings_per_session)


def detect_time_manipulation(raw_elapsed: float, config: MiningConfig, forced: bool = False) -> bool:
    """True if the measured session length is outside the tolerance band.

    A start time in the future is always anomalous. Natural closes are
    expected to land at ``max_session_duration``; a forced close may end
    any time before that.
    """
    if raw_elapsed < 0:
        return True
    if forced and raw_elapsed <= config.max_session_duration:
        return False
    return abs(raw_elapsed - config.max_session_duration) > config.time_tolerance


def session_expired(record: dict, now: float, config: MiningConfig) -> bool:
    started_at = record.get("session_started_at")
    if not record.get("is_earning") or started_at is None:
        return False
    return now - started_at >= config.max_session_duration


def close_session(
    record: dict,
    now: float,
    config: MiningConfig,
    forced: bool = False,
    clock: Optional[Clock] = None,
) -> SessionClose:
    """Compute the close of ``record``'s open session at server time ``now``."""
    started_at = record.get("session_started_at")
    if not record.get("is_earning") or started_at is None:
        raise ValueError(f"User {record.get('user_id')} has no open session")

    clock = clock or Clock()
    user_id = record["user_id"]
    today = clock.day(now)

    raw_elapsed = now - started_at
    elapsed = clamp_elapsed(raw_elapsed, config)
    rate = record.get("earning_rate") or config.default_earning_rate
    efficiency = record.get("efficiency_multiplier") or config.default_efficiency
    raw, earnings = compute_earnings(rate, efficiency, elapsed, config)

    if record.get("last_session_date") == today:
        today_earned = (record.get("today_earned") or 0.0) + earnings
    else:
        today_earned = earnings

    violations = []
    suspicion = 0
    if detect_time_manipulation(raw_elapsed, config, forced):
        violations.append(TIME_MANIPULATION)
        suspicion += config.time_manipulation_weight
    if raw > config.max_earnings_per_session:
        violations.append(EXCESSIVE_EARNINGS)
        suspicion += config.excessive_earnings_weight

    close = SessionClose(
        user_id=user_id,
        started_at=started_at,
        ended_at=now,
        day=today,
        raw_elapsed=raw_elapsed,
        elapsed=elapsed,
        raw_earnings=raw,
        earnings=earnings,
        today_earned=today_earned,
        best_session=max(record.get("best_session") or 0.0, earnings),
        experience_gained=int(math.floor(earnings * XP_PER_COIN)),
        suspicion_delta=suspicion,
        violations=violations,
        forced=forced,
    )

    for kind in violations:
        close.events.append(MiningEvent(
            type=VIOLATION,
            user_id=user_id,
            created_at=now,
            payload={
                "violation": kind,
                "raw_elapsed_sec": round(raw_elapsed, 3),
                "raw_earnings": raw,
                "credited": earnings,
                "suspicion_delta": (
                    config.time_manipulation_weight if kind == TIME_MANIPULATION
                    else config.excessive_earnings_weight
                ),
            },
        ))
    close.events.append(MiningEvent(
        type=SESSION_COMPLETED,
        user_id=user_id,
        created_at=now,
        payload={
            "earnings": earnings,
            "elapsed_sec": round(elapsed, 3),
            "today_earned": today_earned,
            "forced": forced,
        },
    ))
    return close


def level_for(experience: int) -> int:
    return experience // XP_PER_LEVEL + 1
