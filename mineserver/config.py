"""
config.py - Immutable mining configuration.

Every rate and cap the session validator, sweep and rate limiter enforce
lives on one frozen ``MiningConfig`` value that is handed to each service
at construction. Tests and production build separate values; nothing reads
module-level mutable state.
"""

from dataclasses import dataclass, replace
from typing import Tuple


@dataclass(frozen=True)
class RateLimitRule:
    """``max_count`` invocations per ``window_sec`` for one named action."""

    action: str
    window_sec: float
    max_count: int


DEFAULT_RATE_LIMITS: Tuple[RateLimitRule, ...] = (
    RateLimitRule("global", 60.0, 20),
    RateLimitRule("hourly", 3600.0, 500),
    RateLimitRule("mining", 300.0, 5),
    RateLimitRule("upgrade", 120.0, 3),
)

DEFAULT_DENY_PATTERNS: Tuple[str, ...] = (
    "00000000",
    "ffffffff",
    "deadbeef",
    "cafebabe",
    "unknown",
    "test",
    "fake",
)


@dataclass(frozen=True)
class MiningConfig:
    # Session length and reward caps
    max_session_duration: float = 7200.0
    max_earnings_per_session: float = 10.0
    default_earning_rate: float = 0.000116
    default_efficiency: float = 1.0

    # Integrity violations (scored, never rejected)
    time_tolerance: float = 1800.0
    time_manipulation_weight: int = 2
    excessive_earnings_weight: int = 1
    suspended_threshold: int = 10

    # Start-session policy
    min_session_interval: float = 60.0
    max_sessions_per_day: int = 8
    max_daily_earnings: float = 50.0
    max_device_changes_per_day: int = 4
    min_fingerprint_length: int = 6
    fingerprint_deny_patterns: Tuple[str, ...] = DEFAULT_DENY_PATTERNS

    # Periodic sweep
    sweep_interval: float = 600.0
    sweep_record_timeout: float = 10.0

    # HTTP boundary
    max_request_skew: float = 300.0
    min_user_id_length: int = 10
    rate_limits: Tuple[RateLimitRule, ...] = DEFAULT_RATE_LIMITS

    def __post_init__(self):
        if self.max_session_duration <= 0:
            raise ValueError("max_session_duration must be positive")
        if self.max_earnings_per_session < 0:
            raise ValueError("max_earnings_per_session must be non-negative")
        if self.sweep_interval >= self.max_session_duration:
            raise ValueError("sweep_interval must be shorter than max_session_duration")
        if self.suspended_threshold < 1:
            raise ValueError("suspended_threshold must be at least 1")

    def rate_limit(self, action: str) -> RateLimitRule:
        for rule in self.rate_limits:
            if rule.action == action:
                return rule
        raise KeyError(f"No rate limit rule named {action!r}")

    def with_overrides(self, **changes) -> "MiningConfig":
        return replace(self, **changes)
