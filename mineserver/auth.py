"""
auth.py - Bearer token + admin key authentication.

Clients authenticate with ``Authorization: Bearer <jwt>`` (HS256, ``sub`` is
the user id). Admin endpoints take the ``X-API-Key`` header instead.

Every authenticated mining request must also carry ``X-Device-ID``. An
``X-Timestamp`` header (epoch milliseconds) is checked for freshness when
present; it is never used for any duration.
"""

import logging
import secrets
import time
from typing import Callable, Optional

import jwt as pyjwt

from mineserver.errors import (
    AdminRequiredError,
    AuthenticationError,
    IdentityError,
    InvalidRequestError,
    UserMismatchError,
)

logger = logging.getLogger("auth")

DEFAULT_ADMIN_KEY = "admin-test-key-do-not-use-in-production"
JWT_TTL = 86400  # 24 hours


class AuthService:
    """Issues and verifies user tokens, checks the admin key."""

    def __init__(
        self,
        jwt_secret: str = "",
        admin_key: str = DEFAULT_ADMIN_KEY,
        token_ttl: int = JWT_TTL,
        now: Optional[Callable[[], float]] = None,
    ):
        self._admin_key = admin_key
        self._token_ttl = token_ttl
        self._now = now or time.time
        self._jwt_secret = jwt_secret or secrets.token_hex(32)
        if not jwt_secret:
            logger.warning(
                "No --jwt-secret provided; generated ephemeral secret "
                "(JWTs will invalidate on restart)"
            )

    def issue_token(self, user_id: str) -> str:
        issued = int(self._now())
        payload = {
            "sub": user_id,
            "iat": issued,
            "exp": issued + self._token_ttl,
        }
        return pyjwt.encode(payload, self._jwt_secret, algorithm="HS256")

    def decode_token(self, token: str) -> Optional[dict]:
        try:
            return pyjwt.decode(token, self._jwt_secret, algorithms=["HS256"])
        except pyjwt.ExpiredSignatureError:
            logger.info("Rejected expired token")
            return None
        except pyjwt.InvalidTokenError:
            return None

    def authenticate(self, authorization: str) -> str:
        """Return the user id for an ``Authorization`` header value."""
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("Access token required")
        claims = self.decode_token(authorization[7:].strip())
        if not claims or not claims.get("sub"):
            raise AuthenticationError("Authentication failed")
        return claims["sub"]

    def is_admin(self, api_key: str) -> bool:
        return bool(api_key) and secrets.compare_digest(api_key, self._admin_key)

    def require_admin(self, api_key: str):
        if not self.is_admin(api_key):
            raise AdminRequiredError("Admin access required")


def require_device_id(device_id: Optional[str]) -> str:
    if not device_id or device_id == "unknown":
        raise IdentityError("Device ID required")
    return device_id


def check_request_timestamp(timestamp: Optional[str], now: float, max_skew: float):
    """Reject an ``X-Timestamp`` (ms) further than ``max_skew`` seconds from ``now``."""
    if timestamp is None:
        return
    try:
        request_time = int(timestamp) / 1000.0
    except ValueError:
        raise AuthenticationError("Invalid request timestamp")
    if abs(now - request_time) > max_skew:
        logger.warning("Request timestamp expired: skew=%.1fs", now - request_time)
        raise AuthenticationError("Request timestamp expired")


def check_user_id(body_user_id, token_user_id: str, min_length: int) -> str:
    """The body's ``userId`` must be well-formed and belong to the caller."""
    if not body_user_id or not isinstance(body_user_id, str) or len(body_user_id) < min_length:
        raise InvalidRequestError("Invalid user ID")
    if body_user_id != token_user_id:
        logger.warning("User ID mismatch: body=%s token=%s", body_user_id, token_user_id)
        raise UserMismatchError("User ID mismatch")
    return body_user_id
