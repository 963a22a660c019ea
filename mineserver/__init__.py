"""
Mining Rewards - Server Package

Session validation and anti-cheat engine for the mining rewards app.
Includes SQLite storage, session validator, periodic sweep, rate limiting,
rewards and the REST API.
"""

__version__ = "0.1.0"

__all__ = [
    "auth",
    "clock",
    "config",
    "earnings",
    "errors",
    "events",
    "notifications",
    "rate_limiter",
    "rewards",
    "server",
    "storage",
    "sweep",
    "validator",
]
