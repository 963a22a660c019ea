"""Pydantic request models for the REST API.

Unknown fields are ignored, so a client-reported start time or duration
never reaches the validator.
"""

from typing import Optional

from pydantic import BaseModel


class UserRequest(BaseModel):
    userId: Optional[str] = None


class StartMiningRequest(UserRequest):
    deviceFingerprint: Optional[str] = None


class CheckSessionRequest(UserRequest):
    pass


class ClaimDailyRequest(UserRequest):
    pass


class UpgradeRequest(UserRequest):
    upgradeId: Optional[str] = None


class PushTokenRequest(UserRequest):
    pushToken: Optional[str] = None


class EndSessionRequest(BaseModel):
    forced: bool = True
