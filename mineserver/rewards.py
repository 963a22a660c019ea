"""
rewards.py - Daily streak claims and mining upgrades.

Both operations credit or debit the user record with one guarded UPDATE:
a daily claim is conditional on the previous claim date still being what
was read, an upgrade on the level being unchanged and the balance
covering the cost. Suspended accounts can do neither.

Upgrade catalog:

    id          base  mult  max  level  effect
    speed        10   1.5   50     1    earning_rate = 0.000116 + level * 0.0005
    efficiency   15   2.0   30     5    efficiency_multiplier = 1 + level * 0.1
    capacity     20   2.5   20    10    (counter only)

    cost = floor(base * mult ** current_level)
"""

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional

from mineserver.errors import InsufficientBalanceError, InvalidRequestError, RewardError
from mineserver.events import DAILY_CLAIM, UPGRADE, MiningEvent
from mineserver.storage import UPGRADE_COLUMNS
from mineserver.validator import store_errors

if TYPE_CHECKING:
    from mineserver.validator import SessionValidator

logger = logging.getLogger("rewards")

DAILY_BASE_COINS = 5
DAILY_COINS_PER_DAY = 3
DAILY_MAX_COINS = 100
DAILY_BASE_XP = 10
DAILY_XP_PER_DAY = 5
DAILY_MAX_XP = 200

SPEED_RATE_PER_LEVEL = 0.0005
EFFICIENCY_PER_LEVEL = 0.1


@dataclass(frozen=True)
class Upgrade:
    upgrade_id: str
    name: str
    base_cost: float
    cost_multiplier: float
    max_level: int
    required_level: int

    def cost_at(self, level: int) -> float:
        return float(math.floor(self.base_cost * self.cost_multiplier ** level))


UPGRADES: Dict[str, Upgrade] = {
    "speed": Upgrade("speed", "Mining Speed", 10, 1.5, 50, 1),
    "efficiency": Upgrade("efficiency", "Mining Efficiency", 15, 2.0, 30, 5),
    "capacity": Upgrade("capacity", "Storage Capacity", 20, 2.5, 20, 10),
}


def daily_reward(streak: int) -> tuple:
    """Coins and XP for claiming on day ``streak`` of a streak."""
    coins = min(DAILY_BASE_COINS + (streak - 1) * DAILY_COINS_PER_DAY, DAILY_MAX_COINS)
    xp = min(DAILY_BASE_XP + (streak - 1) * DAILY_XP_PER_DAY, DAILY_MAX_XP)
    return float(coins), xp


class RewardsService:
    """Daily claim and upgrade purchase on top of the validator's user records."""

    def __init__(self, validator: "SessionValidator"):
        self._validator = validator
        self._users = validator.users
        self.clock = validator.clock
        self.config = validator.config

    async def claim_daily(self, user_id: str) -> dict:
        now = self.clock.now()
        today = self.clock.day(now)
        record = await self._validator.load(user_id, now)
        self._validator.ensure_not_suspended(record)

        last_claim = record["last_daily_claim"]
        if last_claim == today:
            raise RewardError("Daily reward already claimed today", user_id=user_id)

        if last_claim is not None and last_claim == self.clock.previous_day(today):
            streak = (record["daily_streak"] or 0) + 1
        else:
            streak = 1
        coins, xp = daily_reward(streak)

        with store_errors("claim_daily", user_id):
            applied = await self._users.apply_daily_claim(
                user_id, now, day=today, expected_last_claim=last_claim,
                coins=coins, experience=xp, streak=streak,
            )
        if not applied:
            logger.warning("Concurrent daily claim lost for %s", user_id)
            raise RewardError("Daily reward already claimed today", user_id=user_id)

        logger.info("Daily reward for %s: streak=%d coins=%.0f xp=%d", user_id, streak, coins, xp)
        await self._validator.sink.emit(MiningEvent(
            type=DAILY_CLAIM,
            user_id=user_id,
            created_at=now,
            payload={"streak": streak, "coins": coins, "experience": xp},
        ))
        return {
            "message": "Daily reward claimed!",
            "streak": streak,
            "coins": coins,
            "experience": xp,
            "balance": record["balance"] + coins,
        }

    async def purchase_upgrade(self, user_id: str, upgrade_id: str) -> dict:
        upgrade = UPGRADES.get(upgrade_id)
        if upgrade is None:
            raise InvalidRequestError("Invalid upgrade", upgrade_id=upgrade_id)

        now = self.clock.now()
        record = await self._validator.load(user_id, now)
        self._validator.ensure_not_suspended(record)

        current = record[UPGRADE_COLUMNS[upgrade_id]]
        if current >= upgrade.max_level:
            raise RewardError("Upgrade already at maximum level", upgrade_id=upgrade_id)
        if record["level"] < upgrade.required_level:
            raise RewardError(
                f"Level {upgrade.required_level} required for {upgrade.name}",
                upgrade_id=upgrade_id,
            )
        cost = upgrade.cost_at(current)
        if record["balance"] < cost:
            raise InsufficientBalanceError("Insufficient balance", upgrade_id=upgrade_id)

        new_level = current + 1
        earning_rate: Optional[float] = None
        efficiency: Optional[float] = None
        if upgrade_id == "speed":
            earning_rate = self.config.default_earning_rate + new_level * SPEED_RATE_PER_LEVEL
        elif upgrade_id == "efficiency":
            efficiency = self.config.default_efficiency + new_level * EFFICIENCY_PER_LEVEL

        with store_errors("upgrade", user_id):
            applied = await self._users.apply_upgrade(
                user_id, now,
                upgrade_id=upgrade_id, expected_level=current, cost=cost,
                earning_rate=earning_rate, efficiency_multiplier=efficiency,
            )
        if not applied:
            logger.warning("Upgrade %s for %s lost a concurrent update", upgrade_id, user_id)
            raise InsufficientBalanceError("Insufficient balance", upgrade_id=upgrade_id)

        logger.info("Upgrade %s -> level %d for %s (cost %.0f)", upgrade_id, new_level, user_id, cost)
        await self._validator.sink.emit(MiningEvent(
            type=UPGRADE,
            user_id=user_id,
            created_at=now,
            payload={"upgrade_id": upgrade_id, "level": new_level, "cost": cost},
        ))
        result = {
            "message": f"{upgrade.name} upgraded!",
            "upgradeId": upgrade_id,
            "level": new_level,
            "cost": cost,
            "balance": record["balance"] - cost,
        }
        if new_level < upgrade.max_level:
            result["nextCost"] = upgrade.cost_at(new_level)
        return result
