"""Rewards router - /claim-daily, /upgrade, /push-token, /api/users/{id}."""

from fastapi import APIRouter, Depends
from starlette.requests import Request

from mineserver.auth import check_user_id
from mineserver.deps import authenticated_user, get_server, rate_limit
from mineserver.errors import InvalidRequestError, UserMismatchError
from mineserver.models import ClaimDailyRequest, PushTokenRequest, UpgradeRequest
from mineserver.validator import store_errors

router = APIRouter(dependencies=[Depends(rate_limit("global", "hourly"))])


def _public_profile(user: dict, srv) -> dict:
    return {
        "userId": user["user_id"],
        "balance": user["balance"],
        "isMining": user["is_earning"],
        "miningStartTime": user["session_started_at"],
        "earningRate": user["earning_rate"],
        "efficiencyMultiplier": user["efficiency_multiplier"],
        "totalEarned": user["total_earned"],
        "todayEarned": user["today_earned"],
        "bestSession": user["best_session"],
        "totalSessions": user["total_sessions"],
        "lastSessionEarnings": user["last_session_earnings"],
        "experience": user["experience"],
        "level": user["level"],
        "dailyStreak": user["daily_streak"],
        "lastDailyClaim": user["last_daily_claim"],
        "upgrades": {
            "speed": user["upgrade_speed"],
            "efficiency": user["upgrade_efficiency"],
            "capacity": user["upgrade_capacity"],
        },
        "state": srv.validator.state_of(user).value,
    }


@router.post("/claim-daily")
async def claim_daily(
    request: Request,
    req: ClaimDailyRequest,
    user_id: str = Depends(authenticated_user),
):
    srv = get_server(request)
    check_user_id(req.userId, user_id, srv.config.min_user_id_length)
    return await srv.rewards.claim_daily(user_id)


@router.post("/upgrade", dependencies=[Depends(rate_limit("upgrade"))])
async def upgrade(
    request: Request,
    req: UpgradeRequest,
    user_id: str = Depends(authenticated_user),
):
    srv = get_server(request)
    check_user_id(req.userId, user_id, srv.config.min_user_id_length)
    if not req.upgradeId:
        raise InvalidRequestError("Invalid upgrade")
    return await srv.rewards.purchase_upgrade(user_id, req.upgradeId)


@router.post("/push-token")
async def register_push_token(
    request: Request,
    req: PushTokenRequest,
    user_id: str = Depends(authenticated_user),
):
    srv = get_server(request)
    check_user_id(req.userId, user_id, srv.config.min_user_id_length)
    await srv.validator.load(user_id)
    with store_errors("push_token", user_id):
        await srv.storage.users.set_push_token(user_id, req.pushToken or None)
    return {"userId": user_id, "registered": bool(req.pushToken)}


@router.get("/api/users/{target_id}")
async def get_user(request: Request, target_id: str, user_id: str = Depends(authenticated_user)):
    srv = get_server(request)
    if target_id != user_id:
        raise UserMismatchError("You can only view your own account")
    user = await srv.validator.load(user_id)
    return _public_profile(user, srv)
