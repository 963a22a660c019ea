"""Admin router - /api/admin/* (X-API-Key admin key required)."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from starlette.requests import Request

from mineserver.deps import get_server, require_admin
from mineserver.errors import NotFoundError
from mineserver.models import EndSessionRequest
from mineserver.validator import store_errors

router = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


async def _existing_user(srv, user_id: str) -> dict:
    with store_errors("admin_lookup", user_id):
        user = await srv.storage.users.get(user_id)
    if user is None:
        raise NotFoundError("User not found", user_id=user_id)
    return user


@router.get("/users/{user_id}")
async def get_user(request: Request, user_id: str):
    srv = get_server(request)
    user = await _existing_user(srv, user_id)
    user["state"] = srv.validator.state_of(user).value
    return user


@router.post("/users/{user_id}/reset-suspicion")
async def reset_suspicion(request: Request, user_id: str):
    srv = get_server(request)
    return await srv.validator.reset_suspicion(user_id, actor="admin")


@router.post("/users/{user_id}/end-session")
async def end_session(request: Request, user_id: str, req: Optional[EndSessionRequest] = None):
    srv = get_server(request)
    await _existing_user(srv, user_id)
    forced = req.forced if req is not None else True
    close = await srv.validator.end_session(user_id, forced=forced)
    if close is None:
        return {"user_id": user_id, "sessionEnded": False}
    result = close.to_dict()
    result["sessionEnded"] = True
    return result


@router.post("/sweep")
async def run_sweep(request: Request):
    srv = get_server(request)
    with store_errors("sweep", "*"):
        return await srv.sweeper.sweep_once()


@router.get("/activity")
async def list_activity(
    request: Request,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    srv = get_server(request)
    with store_errors("activity", user_id or "*"):
        items = await srv.storage.activity.list_all(
            user_id=user_id, event_type=event_type, limit=limit, offset=offset,
        )
        total = await srv.storage.activity.count(user_id=user_id, event_type=event_type)
    return {"items": items, "total": total, "limit": limit, "offset": offset}
