"""Dependency helpers for router modules."""

from typing import Optional

from fastapi import Header
from starlette.requests import Request

from mineserver.auth import check_request_timestamp, require_device_id
from mineserver.errors import RateLimitError
from mineserver.rate_limiter import identity_key

RATE_LIMIT_MESSAGES = {
    "global": "Too many requests from this device, please try again later.",
    "hourly": "Hourly request limit exceeded. Please try again later.",
    "mining": "Too many mining attempts, please wait before trying again.",
    "upgrade": "Too many upgrade attempts, please wait before trying again.",
}


def get_server(request: Request):
    return request.app.state.server


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def authenticated_user(
    request: Request,
    authorization: str = Header(default=""),
    x_device_id: str = Header(default=""),
    x_timestamp: Optional[str] = Header(default=None),
) -> str:
    """Resolve the caller's user id from the bearer token."""
    srv = get_server(request)
    require_device_id(x_device_id)
    check_request_timestamp(x_timestamp, srv.clock.now(), srv.config.max_request_skew)
    return srv.auth.authenticate(authorization)


async def require_admin(request: Request, x_api_key: str = Header(default="")):
    get_server(request).auth.require_admin(x_api_key)


def rate_limit(*actions: str):
    """Dependency enforcing the named rate-limit rules, keyed by ip + device id."""

    async def _check(request: Request, x_device_id: str = Header(default="")):
        srv = get_server(request)
        key = identity_key(client_ip(request), x_device_id)
        for action in actions:
            rule = srv.config.rate_limit(action)
            if not await srv.rate_limiter.check_rule(key, rule):
                raise RateLimitError(
                    RATE_LIMIT_MESSAGES.get(action, "Rate limit exceeded"),
                    action=action,
                    key=key,
                )

    return _check
