"""Mining router - /start-mining, /check-mining-session."""

from fastapi import APIRouter, Depends
from starlette.requests import Request

from mineserver.auth import check_user_id
from mineserver.deps import authenticated_user, client_ip, get_server, rate_limit
from mineserver.models import CheckSessionRequest, StartMiningRequest

router = APIRouter(dependencies=[Depends(rate_limit("global", "hourly"))])


@router.post("/start-mining", dependencies=[Depends(rate_limit("mining"))])
async def start_mining(
    request: Request,
    req: StartMiningRequest,
    user_id: str = Depends(authenticated_user),
):
    srv = get_server(request)
    check_user_id(req.userId, user_id, srv.config.min_user_id_length)
    return await srv.validator.start_session(
        user_id, req.deviceFingerprint, ip=client_ip(request),
    )


@router.post("/check-mining-session")
async def check_mining_session(
    request: Request,
    req: CheckSessionRequest,
    user_id: str = Depends(authenticated_user),
):
    srv = get_server(request)
    check_user_id(req.userId, user_id, srv.config.min_user_id_length)
    return await srv.validator.check_session(user_id)
