"""
errors.py - Error taxonomy for the mining service.

Input/identity errors and policy violations are raised before any state
is touched. Integrity violations are never raised: they are reported as
flags on the closed session. Store failures surface as ``DataStoreError``.
"""


class MiningError(Exception):
    """Base class. ``status_code`` and ``code`` are what the HTTP layer renders."""

    status_code = 500
    code = "error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


# --- Input / identity (4xx, no mutation) ---

class InvalidRequestError(MiningError):
    """Invalid request"""
    status_code = 400
    code = "invalid_request"


class SessionActiveError(MiningError):
    """Mining session already active"""
    status_code = 400
    code = "session_active"


class IdentityError(MiningError):
    """Invalid device identification"""
    status_code = 401
    code = "invalid_device"


class AuthenticationError(MiningError):
    """Authentication failed"""
    status_code = 401
    code = "auth_failed"


class UserMismatchError(MiningError):
    """User ID mismatch"""
    status_code = 403
    code = "user_mismatch"


class AdminRequiredError(MiningError):
    """Admin access required"""
    status_code = 403
    code = "admin_required"


class NotFoundError(MiningError):
    """User not found"""
    status_code = 404
    code = "not_found"


# --- Policy (rejected, no mutation) ---

class AccountSuspendedError(MiningError):
    """Account temporarily suspended due to suspicious activity"""
    status_code = 403
    code = "account_suspended"


class DeviceChangeLimitError(MiningError):
    """Too many device changes detected"""
    status_code = 403
    code = "device_change_limit"


class RateLimitError(MiningError):
    """Rate limit exceeded. Please slow down."""
    status_code = 429
    code = "rate_limited"


class CooldownError(MiningError):
    """Please wait before starting another session"""
    status_code = 429
    code = "cooldown"


class DailyLimitError(MiningError):
    """Daily limit reached"""
    status_code = 429
    code = "daily_limit"


# --- Rewards ---

class RewardError(MiningError):
    """Reward request rejected"""
    status_code = 400
    code = "reward_rejected"


class InsufficientBalanceError(RewardError):
    """Insufficient balance"""
    code = "insufficient_balance"


# --- Store ---

class DataStoreError(MiningError):
    """Internal server error"""
    status_code = 500
    code = "data_store"
