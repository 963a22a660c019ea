"""Health router - /, /health."""

from fastapi import APIRouter
from starlette.requests import Request

from mineserver.clock import isoformat
from mineserver.deps import get_server

router = APIRouter()


@router.get("/")
async def root(request: Request):
    srv = get_server(request)
    return {
        "service": "Mining Rewards Server",
        "api_port": srv.api_port,
        "users": await srv.storage.users.count(),
        "active_sessions": await srv.storage.users.count(earning_only=True),
        "uptime": "running",
    }


@router.get("/health")
async def health(request: Request):
    srv = get_server(request)
    return {"status": "healthy", "timestamp": isoformat(srv.clock.now())}
