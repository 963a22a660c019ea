"""
Shared fixtures for the mining server integration tests.

Provides a MiningServer on in-memory SQLite with a manual clock, a
TestClient bound to its app (lifespan included), and header helpers.
"""

import pytest
from fastapi.testclient import TestClient

from mineserver.clock import ManualClock
from mineserver.server import MiningServer

# 2023-11-14 12:00:00 UTC
T0 = 1_699_963_200.0
ADMIN_KEY = "integration-admin-key"


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def server(clock):
    return MiningServer(
        db_path=":memory:",
        clock=clock,
        jwt_secret="integration-test-secret",
        admin_key=ADMIN_KEY,
        persist_rate_limits=True,
        enable_sweep=False,
        enable_push=False,
    )


@pytest.fixture
def client(server):
    with TestClient(server.app) as c:
        yield c


@pytest.fixture
def headers(server):
    """Build request headers for ``user_id`` (bearer token + device id)."""

    def _headers(user_id, device="a1b2c3d4e5f6", **extra):
        h = {
            "Authorization": f"Bearer {server.auth.issue_token(user_id)}",
            "X-Device-ID": device,
        }
        h.update(extra)
        return h

    return _headers


@pytest.fixture
def admin_headers():
    return {"X-API-Key": ADMIN_KEY}


@pytest.fixture
def patch_user(client, server):
    """Write raw column values onto a user row from the app's event loop."""

    async def _update(user_id, fields):
        cols = ", ".join(f"{k} = ?" for k in fields)
        db = server.storage.users._db
        await db.execute(f"UPDATE users SET {cols} WHERE user_id = ?", (*fields.values(), user_id))
        await db.commit()

    def _patch(user_id, **fields):
        client.portal.call(_update, user_id, fields)

    return _patch
