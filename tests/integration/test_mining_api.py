"""
test_mining_api.py - Integration tests for the mining REST API.

Runs the real app (routers, dependencies, error handlers, lifespan) on
in-memory SQLite with a manual clock and checks the status-code mapping:
400 invalid/active, 401 identity, 403 suspended/mismatch, 429 limits,
500 store failures.
"""

import aiosqlite
import pytest
from fastapi.testclient import TestClient

from mineserver.server import MiningServer

T0 = 1_699_963_200.0
USER = "user-000001"
OTHER = "user-000002"
DEVICE = "a1b2c3d4e5f6"


def _start(client, headers, user_id=USER, fingerprint=DEVICE, **extra):
    body = {"userId": user_id, "deviceFingerprint": fingerprint}
    body.update(extra)
    return client.post("/start-mining", json=body, headers=headers(user_id))


def _check(client, headers, user_id=USER):
    return client.post("/check-mining-session", json={"userId": user_id}, headers=headers(user_id))


class TestHealth:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy", "timestamp": "2023-11-14T12:00:00Z"}

    def test_root(self, client):
        data = client.get("/").json()
        assert data["users"] == 0
        assert data["active_sessions"] == 0


class TestMiningFlow:

    def test_start_and_complete(self, client, headers, clock):
        resp = _start(client, headers)
        assert resp.status_code == 200
        assert resp.json()["startTime"] == "2023-11-14T12:00:00Z"

        clock.advance(1800)
        running = _check(client, headers).json()
        assert running["isMining"] is True
        assert running["sessionEnded"] is False

        clock.advance(5400)
        done = _check(client, headers).json()
        assert done["sessionEnded"] is True
        assert done["isMining"] is False
        assert done["earnings"] == pytest.approx(0.8352)

        again = _check(client, headers).json()
        assert again["sessionEnded"] is False

    def test_client_supplied_times_ignored(self, client, headers, clock):
        resp = _start(client, headers, sessionDuration=360000, startTime="2000-01-01T00:00:00Z")
        assert resp.status_code == 200
        clock.advance(2.01 * 3600)
        done = _check(client, headers).json()
        assert done["sessionDuration"] == 7200
        assert done["earnings"] == pytest.approx(0.8352)

    def test_profile_reflects_session(self, client, headers, clock):
        _start(client, headers)
        clock.advance(7200)
        _check(client, headers)
        profile = client.get(f"/api/users/{USER}", headers=headers(USER)).json()
        assert profile["balance"] == pytest.approx(0.8352)
        assert profile["totalSessions"] == 1
        assert profile["isMining"] is False
        assert profile["state"] == "IDLE"


class TestStatusCodes:

    def test_missing_user_id(self, client, headers):
        resp = client.post("/start-mining", json={"deviceFingerprint": DEVICE}, headers=headers(USER))
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_request"

    def test_short_user_id(self, client, headers):
        resp = client.post(
            "/start-mining", json={"userId": "short", "deviceFingerprint": DEVICE}, headers=headers("short"),
        )
        assert resp.status_code == 400

    def test_malformed_body(self, client, headers):
        resp = client.post("/start-mining", content=b"not json", headers=headers(USER))
        assert resp.status_code == 400

    def test_user_mismatch(self, client, headers):
        resp = client.post(
            "/start-mining", json={"userId": OTHER, "deviceFingerprint": DEVICE}, headers=headers(USER),
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "user_mismatch"

    def test_missing_device_header(self, client, headers):
        h = headers(USER)
        del h["X-Device-ID"]
        resp = client.post("/start-mining", json={"userId": USER, "deviceFingerprint": DEVICE}, headers=h)
        assert resp.status_code == 401
        assert resp.json() == {"error": "Device ID required", "code": "invalid_device"}

    def test_missing_token(self, client):
        resp = client.post(
            "/start-mining",
            json={"userId": USER, "deviceFingerprint": DEVICE},
            headers={"X-Device-ID": DEVICE},
        )
        assert resp.status_code == 401
        assert resp.json()["code"] == "auth_failed"

    def test_bad_fingerprint(self, client, headers):
        resp = _start(client, headers, fingerprint="test-device-01")
        assert resp.status_code == 401
        assert resp.json()["error"] == "Suspicious device pattern detected"

    def test_request_timestamp(self, client, headers):
        stale = str(int((T0 - 600) * 1000))
        resp = client.post(
            "/check-mining-session", json={"userId": USER}, headers=headers(USER, **{"X-Timestamp": stale}),
        )
        assert resp.status_code == 401
        fresh = str(int(T0 * 1000))
        resp = client.post(
            "/check-mining-session", json={"userId": USER}, headers=headers(USER, **{"X-Timestamp": fresh}),
        )
        assert resp.status_code == 200

    def test_cooldown_then_active(self, client, headers, clock):
        assert _start(client, headers).status_code == 200
        resp = _start(client, headers)
        assert resp.status_code == 429
        assert resp.json()["code"] == "cooldown"
        clock.advance(600)
        resp = _start(client, headers)
        assert resp.status_code == 400
        assert resp.json() == {"error": "Mining session already active", "code": "session_active"}

    def test_suspended_account(self, client, headers, patch_user, admin_headers):
        _check(client, headers)
        patch_user(USER, suspicious_score=10)
        resp = _start(client, headers)
        assert resp.status_code == 403
        assert resp.json()["code"] == "account_suspended"

        resp = client.post(f"/api/admin/users/{USER}/reset-suspicion", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["previous_score"] == 10
        assert _start(client, headers).status_code == 200

    def test_mining_rate_limit(self, client, headers, clock):
        codes = [_start(client, headers).json().get("code") for _ in range(6)]
        assert codes[0] is None
        assert codes[1:5] == ["cooldown"] * 4
        assert codes[5] == "rate_limited"
        clock.advance(301)
        assert _start(client, headers).json()["code"] == "session_active"

    def test_rate_limit_keyed_by_device(self, client, headers):
        for _ in range(5):
            _start(client, headers)
        other_device = client.post(
            "/start-mining",
            json={"userId": USER, "deviceFingerprint": DEVICE},
            headers=headers(USER, device="ffee00112233"),
        )
        assert other_device.json()["code"] != "rate_limited"

    def test_data_store_failure(self, client, headers, server, monkeypatch):
        async def broken(*args, **kwargs):
            raise aiosqlite.OperationalError("disk I/O error")

        monkeypatch.setattr(server.storage.users, "get_or_create", broken)
        resp = _start(client, headers)
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error", "code": "data_store"}


class TestRewardsApi:

    def test_claim_daily(self, client, headers):
        resp = client.post("/claim-daily", json={"userId": USER}, headers=headers(USER))
        assert resp.status_code == 200
        assert resp.json()["coins"] == 5.0
        resp = client.post("/claim-daily", json={"userId": USER}, headers=headers(USER))
        assert resp.status_code == 400
        assert resp.json()["code"] == "reward_rejected"

    def test_upgrade(self, client, headers, patch_user):
        resp = client.post("/upgrade", json={"userId": USER, "upgradeId": "speed"}, headers=headers(USER))
        assert resp.status_code == 400
        assert resp.json()["code"] == "insufficient_balance"

        patch_user(USER, balance=100.0)
        resp = client.post("/upgrade", json={"userId": USER, "upgradeId": "speed"}, headers=headers(USER))
        assert resp.status_code == 200
        assert resp.json()["level"] == 1
        assert resp.json()["balance"] == 90.0

    def test_upgrade_requires_id(self, client, headers):
        resp = client.post("/upgrade", json={"userId": USER}, headers=headers(USER))
        assert resp.status_code == 400

    def test_upgrade_rate_limit(self, client, headers):
        codes = [
            client.post("/upgrade", json={"userId": USER, "upgradeId": "speed"}, headers=headers(USER)).status_code
            for _ in range(4)
        ]
        assert codes == [400, 400, 400, 429]

    def test_push_token(self, client, headers, server):
        resp = client.post(
            "/push-token", json={"userId": USER, "pushToken": "ExponentPushToken[x]"}, headers=headers(USER),
        )
        assert resp.status_code == 200
        user = client.portal.call(server.storage.users.get, USER)
        assert user["push_token"] == "ExponentPushToken[x]"

    def test_push_token_store_failure(self, client, headers, server, monkeypatch):
        async def broken(*args, **kwargs):
            raise aiosqlite.OperationalError("database is locked")

        monkeypatch.setattr(server.storage.users, "set_push_token", broken)
        resp = client.post(
            "/push-token", json={"userId": USER, "pushToken": "ExponentPushToken[x]"}, headers=headers(USER),
        )
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error", "code": "data_store"}

    def test_other_users_profile_forbidden(self, client, headers):
        resp = client.get(f"/api/users/{OTHER}", headers=headers(USER))
        assert resp.status_code == 403


class TestAdminApi:

    def test_requires_admin_key(self, client):
        resp = client.post("/api/admin/sweep")
        assert resp.status_code == 403
        resp = client.post("/api/admin/sweep", headers={"X-API-Key": "wrong"})
        assert resp.status_code == 403

    def test_sweep_closes_expired(self, client, headers, clock, admin_headers):
        _start(client, headers)
        clock.advance(7200)
        summary = client.post("/api/admin/sweep", headers=admin_headers).json()
        assert summary["closed"] == 1
        assert summary["failed"] == 0
        user = client.get(f"/api/admin/users/{USER}", headers=admin_headers).json()
        assert user["is_earning"] is False
        assert user["balance"] == pytest.approx(0.8352)

    def test_force_end_session(self, client, headers, clock, admin_headers):
        _start(client, headers)
        clock.advance(3600)
        resp = client.post(f"/api/admin/users/{USER}/end-session", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["sessionEnded"] is True
        assert resp.json()["earnings"] == pytest.approx(0.4176)
        resp = client.post(f"/api/admin/users/{USER}/end-session", headers=admin_headers)
        assert resp.json()["sessionEnded"] is False

    def test_unknown_user(self, client, admin_headers):
        resp = client.post("/api/admin/users/user-unknown1/reset-suspicion", headers=admin_headers)
        assert resp.status_code == 404
        resp = client.get("/api/admin/users/user-unknown1", headers=admin_headers)
        assert resp.status_code == 404

    def test_activity_log(self, client, headers, clock, admin_headers):
        _start(client, headers)
        clock.advance(7200)
        _check(client, headers)
        data = client.get("/api/admin/activity", params={"user_id": USER}, headers=admin_headers).json()
        assert data["total"] == 2
        assert [item["type"] for item in data["items"]] == ["session_completed", "session_started"]
        only = client.get(
            "/api/admin/activity", params={"event_type": "session_started"}, headers=admin_headers,
        ).json()
        assert only["total"] == 1

    def test_activity_paging(self, client, headers, clock, admin_headers):
        _start(client, headers)
        clock.advance(7200)
        _check(client, headers)
        page = client.get("/api/admin/activity", params={"limit": 1, "offset": 1}, headers=admin_headers).json()
        assert page["total"] == 2
        assert [item["type"] for item in page["items"]] == ["session_started"]

    @pytest.mark.parametrize("params", [{"limit": -1}, {"limit": 0}, {"limit": 501}, {"offset": -1}])
    def test_activity_paging_bounds(self, client, admin_headers, params):
        resp = client.get("/api/admin/activity", params=params, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_request"

    def test_user_lookup_store_failure(self, client, server, admin_headers, monkeypatch):
        async def broken(*args, **kwargs):
            raise aiosqlite.OperationalError("disk I/O error")

        monkeypatch.setattr(server.storage.users, "get", broken)
        resp = client.get(f"/api/admin/users/{USER}", headers=admin_headers)
        assert resp.status_code == 500
        assert resp.json()["code"] == "data_store"


class TestMemoryRateLimits:

    def test_memory_backend(self, clock):
        server = MiningServer(
            db_path=":memory:", clock=clock, jwt_secret="integration-test-secret",
            persist_rate_limits=False, enable_sweep=False, enable_push=False,
        )
        token = server.auth.issue_token(USER)
        h = {"Authorization": f"Bearer {token}", "X-Device-ID": DEVICE}
        with TestClient(server.app) as client:
            codes = [
                client.post("/check-mining-session", json={"userId": USER}, headers=h).status_code
                for _ in range(21)
            ]
        assert codes[:20] == [200] * 20
        assert codes[20] == 429


class TestRateLimitHousekeeping:

    def test_purge_forgets_idle_identities(self, client, server, headers, clock):
        for i in range(5):
            h = headers(USER, device=f"device-{i:04d}")
            client.post("/check-mining-session", json={"userId": USER}, headers=h)
        assert server.rate_limiter._locks == {}
        key = "testclient:device-0000"
        assert client.portal.call(server.storage.rate_limits.count, key, "global") == 1

        clock.advance(7200)
        client.portal.call(server._purge_rate_limits)
        assert client.portal.call(server.storage.rate_limits.count, key, "global") == 0
        assert client.portal.call(server.storage.rate_limits.count, key, "hourly") == 0
