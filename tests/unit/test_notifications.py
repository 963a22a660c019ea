"""
test_notifications.py - Activity log and push delivery.

Tests that every event lands in the activity log, that start/complete
events are pushed to users with a registered token, and that delivery
failures never surface to the caller.
"""

import asyncio
import json
import time

import httpx
import pytest

from mineserver.events import SESSION_COMPLETED, SESSION_STARTED, VIOLATION, MiningEvent
from mineserver.notifications import ActivitySink, NotificationSink, PushClient
from mineserver.validator import SessionValidator

pytestmark = pytest.mark.asyncio

USER = "user-000001"
DEVICE = "a1b2c3d4e5f6"
TOKEN = "ExponentPushToken[abc]"


def _push_client(handler):
    return PushClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class ExplodingSink(NotificationSink):
    async def _deliver(self, event):
        raise RuntimeError("sink down")


class SlowSink(NotificationSink):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay
        self.delivered = []

    async def _deliver(self, event):
        await asyncio.sleep(self.delay)
        self.delivered.append(event)


class TestActivitySink:

    async def test_events_logged(self, storage):
        sink = ActivitySink(storage.activity)
        await sink.emit(MiningEvent(VIOLATION, USER, {"violation": "time_manipulation"}, 10.0))
        items = await storage.activity.list_all(user_id=USER)
        assert len(items) == 1
        assert items[0]["type"] == VIOLATION
        assert items[0]["payload"] == {"violation": "time_manipulation"}
        assert items[0]["created_at"] == 10.0

    async def test_push_sent_for_completed_session(self, storage):
        sent = []

        def handler(request):
            sent.append(json.loads(request.content))
            return httpx.Response(200, json={"data": {"status": "ok"}})

        await storage.users.create(USER)
        await storage.users.set_push_token(USER, TOKEN)
        sink = ActivitySink(storage.activity, storage.users, push=_push_client(handler))
        await sink.emit(MiningEvent(SESSION_COMPLETED, USER, {"earnings": 0.8352}))
        await sink.close()

        assert len(sent) == 1
        assert sent[0]["to"] == TOKEN
        assert sent[0]["title"] == "Mining Complete!"
        assert sent[0]["data"]["type"] == "mining_complete"

    async def test_no_push_without_token(self, storage):
        sent = []

        def handler(request):
            sent.append(request)
            return httpx.Response(200, json={})

        await storage.users.create(USER)
        sink = ActivitySink(storage.activity, storage.users, push=_push_client(handler))
        await sink.emit(MiningEvent(SESSION_STARTED, USER, {"session_duration_sec": 7200}))
        assert sent == []
        assert await storage.activity.count(user_id=USER) == 1

    async def test_violations_not_pushed(self, storage):
        sent = []

        def handler(request):
            sent.append(request)
            return httpx.Response(200, json={})

        await storage.users.create(USER)
        await storage.users.set_push_token(USER, TOKEN)
        sink = ActivitySink(storage.activity, storage.users, push=_push_client(handler))
        await sink.emit(MiningEvent(VIOLATION, USER, {"violation": "excessive_earnings"}))
        assert sent == []

    async def test_push_failure_swallowed(self, storage):
        def handler(request):
            return httpx.Response(500, json={"errors": ["down"]})

        await storage.users.create(USER)
        await storage.users.set_push_token(USER, TOKEN)
        sink = ActivitySink(storage.activity, storage.users, push=_push_client(handler))
        await sink.emit(MiningEvent(SESSION_STARTED, USER, {"session_duration_sec": 7200}))
        assert await storage.activity.count(user_id=USER) == 1
        await sink.close()


class TestSinkIsolation:

    async def test_failing_sink_does_not_fail_start(self, storage, config, clock):
        validator = SessionValidator(storage.users, config, clock, ExplodingSink())
        result = await validator.start_session(USER, DEVICE)
        assert "startTime" in result
        assert (await storage.users.get(USER))["is_earning"] is True

    async def test_failing_sink_does_not_undo_close(self, storage, config, clock):
        validator = SessionValidator(storage.users, config, clock, ExplodingSink())
        await validator.start_session(USER, DEVICE)
        clock.advance(7200)
        result = await validator.check_session(USER)
        assert result["sessionEnded"] is True
        assert (await storage.users.get(USER))["balance"] == pytest.approx(0.8352)

    async def test_activity_filters(self, storage, validator, clock):
        sink = ActivitySink(storage.activity)
        v = SessionValidator(storage.users, validator.config, clock, sink)
        await v.start_session(USER, DEVICE)
        clock.advance(7200)
        await v.check_session(USER)
        assert await storage.activity.count(user_id=USER) == 2
        completed = await storage.activity.list_all(event_type=SESSION_COMPLETED)
        assert completed[0]["payload"]["earnings"] == pytest.approx(0.8352)
        assert await storage.activity.count(event_type=SESSION_STARTED) == 1


class TestBackgroundDelivery:

    async def test_slow_sink_does_not_delay_start(self, storage, config, clock):
        sink = SlowSink(1.0)
        validator = SessionValidator(storage.users, config, clock, sink)
        began = time.perf_counter()
        await validator.start_session(USER, DEVICE)
        assert time.perf_counter() - began < 0.5
        assert sink.delivered == []

        await sink.drain()
        assert [e.type for e in sink.delivered] == [SESSION_STARTED]

    async def test_slow_push_does_not_delay_emit(self, storage):
        sent = []

        async def handler(request):
            await asyncio.sleep(1.0)
            sent.append(json.loads(request.content))
            return httpx.Response(200, json={"data": {"status": "ok"}})

        await storage.users.create(USER)
        await storage.users.set_push_token(USER, TOKEN)
        sink = ActivitySink(storage.activity, storage.users, push=_push_client(handler))
        began = time.perf_counter()
        await sink.emit(MiningEvent(SESSION_STARTED, USER, {"session_duration_sec": 7200}))
        assert time.perf_counter() - began < 0.5
        assert await storage.activity.count(user_id=USER) == 1
        assert sent == []

        await sink.close()
        assert len(sent) == 1
        assert sent[0]["title"] == "Mining Started!"

    async def test_close_drains_pending_deliveries(self, storage, config, clock):
        sink = SlowSink(0.05)
        validator = SessionValidator(storage.users, config, clock, sink)
        await validator.start_session(USER, DEVICE)
        clock.advance(7200)
        await validator.check_session(USER)
        await sink.close()
        assert [e.type for e in sink.delivered] == [SESSION_STARTED, SESSION_COMPLETED]
