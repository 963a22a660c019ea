"""Shared fixtures for the mining server unit tests."""

import pytest
import pytest_asyncio

from mineserver.clock import ManualClock
from mineserver.config import MiningConfig
from mineserver.notifications import RecordingSink
from mineserver.storage import StorageManager
from mineserver.validator import SessionValidator

# 2023-11-14 12:00:00 UTC, far enough from midnight for two-hour sessions
T0 = 1_699_963_200.0
DAY0 = "2023-11-14"

USER = "user-000001"
OTHER_USER = "user-000002"
DEVICE = "a1b2c3d4e5f6"


@pytest_asyncio.fixture
async def storage():
    sm = StorageManager(":memory:")
    await sm.initialize()
    yield sm
    await sm.close()


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def config():
    return MiningConfig()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def validator(storage, config, clock, sink):
    return SessionValidator(storage.users, config, clock, sink)


@pytest.fixture
def patch_user(storage):
    """Write raw column values onto a user row (seeding test state)."""

    async def _patch(user_id, **fields):
        cols = ", ".join(f"{k} = ?" for k in fields)
        await storage.users._db.execute(
            f"UPDATE users SET {cols} WHERE user_id = ?",
            (*fields.values(), user_id),
        )
        await storage.users._db.commit()
        return await storage.users.get(user_id)

    return _patch
