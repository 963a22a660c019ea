"""
notifications.py - Notification / activity sink.

Receives the validator's domain events. Every event is written to the
activity log for admin audit; session start/complete events are also
pushed to the user's device through the Expo push service when the user
has registered a push token.

Delivery is best-effort. ``emit`` never raises: a failed write or push is
logged and dropped, so it can't undo an earnings transaction that already
committed. Pushes run as background tasks and never delay the caller.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Iterable, List, Optional, Set

import httpx

from mineserver.events import MiningEvent, SESSION_COMPLETED, SESSION_STARTED

if TYPE_CHECKING:
    from mineserver.storage import ActivityRepo, UserRepo

logger = logging.getLogger("notify")

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
PUSH_TIMEOUT = 5.0


def _push_message(event: MiningEvent) -> Optional[dict]:
    if event.type == SESSION_STARTED:
        hours = event.payload.get("session_duration_sec", 7200) / 3600
        return {
            "title": "Mining Started!",
            "body": f"Your {hours:g}-hour mining session has begun! "
                    "You'll receive a notification when it completes.",
            "data": {
                "type": "mining_start",
                "action": "navigate_to_home",
                "sessionDuration": event.payload.get("session_duration_sec"),
            },
        }
    if event.type == SESSION_COMPLETED:
        earnings = event.payload.get("earnings", 0.0)
        return {
            "title": "Mining Complete!",
            "body": f"Congratulations! You've earned {earnings:.6f} coins from your mining session.",
            "data": {
                "type": "mining_complete",
                "action": "navigate_to_home",
                "earnings": earnings,
            },
        }
    return None


class PushClient:
    """Minimal Expo push sender."""

    def __init__(
        self,
        url: str = EXPO_PUSH_URL,
        timeout: float = PUSH_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def send(self, token: str, title: str, body: str, data: Optional[dict] = None) -> dict:
        message = {
            "to": token,
            "sound": "default",
            "title": title,
            "body": body,
            "data": data or {},
        }
        resp = await self._client.post(
            self._url,
            json=message,
            headers={"Accept": "application/json", "Accept-Encoding": "gzip, deflate"},
        )
        resp.raise_for_status()
        result = resp.json()
        logger.debug("Push notification sent to %s: %s", token, result)
        return result

    async def close(self):
        if self._owns_client:
            await self._client.aclose()


class NotificationSink:
    """Base sink. Subclasses implement ``_deliver``; ``emit`` swallows failures.

    Delivery runs as a background task unless the sink is ``inline``, so a
    slow sink never holds up the request or sweep that emitted the event.
    ``drain`` waits for outstanding deliveries; ``close`` drains first.
    """

    inline = False

    def __init__(self):
        self._pending: Set[asyncio.Task] = set()

    async def emit(self, event: MiningEvent):
        if self.inline:
            await self._safe_deliver(event)
        else:
            self._spawn(self._safe_deliver(event))

    async def emit_all(self, events: Iterable[MiningEvent]):
        for event in events:
            await self.emit(event)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _safe_deliver(self, event: MiningEvent):
        try:
            await self._deliver(event)
        except Exception:
            logger.exception("Failed to deliver %s event for %s", event.type, event.user_id)

    async def _deliver(self, event: MiningEvent):
        raise NotImplementedError

    async def drain(self):
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self):
        await self.drain()


class NullSink(NotificationSink):
    inline = True

    async def _deliver(self, event: MiningEvent):
        logger.debug("Dropped %s event for %s", event.type, event.user_id)


class RecordingSink(NotificationSink):
    """Keeps events in memory."""

    inline = True

    def __init__(self):
        super().__init__()
        self.events: List[MiningEvent] = []

    async def _deliver(self, event: MiningEvent):
        self.events.append(event)

    def of_type(self, event_type: str) -> List[MiningEvent]:
        return [e for e in self.events if e.type == event_type]


class ActivitySink(NotificationSink):
    """Activity log + optional push delivery.

    The activity row is written before ``emit`` returns; the push goes out
    in the background.
    """

    inline = True

    def __init__(
        self,
        activity_repo: "ActivityRepo",
        user_repo: Optional["UserRepo"] = None,
        push: Optional[PushClient] = None,
    ):
        super().__init__()
        self._activity = activity_repo
        self._users = user_repo
        self._push = push

    async def _deliver(self, event: MiningEvent):
        try:
            await self._activity.record(
                event.user_id, event.type, event.payload, created_at=event.created_at,
            )
        except Exception:
            logger.exception("Failed to log %s event for %s", event.type, event.user_id)

        if self._push is None or self._users is None:
            return
        message = _push_message(event)
        if message is not None:
            self._spawn(self._send_push(event, message))

    async def _send_push(self, event: MiningEvent, message: dict):
        try:
            user = await self._users.get(event.user_id)
            token = user.get("push_token") if user else None
            if not token:
                return
            await self._push.send(token, message["title"], message["body"], message["data"])
        except Exception:
            logger.exception("Failed to send push notification for %s", event.user_id)

    async def close(self):
        await super().close()
        if self._push is not None:
            await self._push.close()
