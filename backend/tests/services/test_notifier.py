"""Tests for the Supabase Realtime change notifier."""
import asyncio
import json
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosedError

from core.config import Settings
from schemas.change_event import DeleteEvent, InsertEvent, UpdateEvent
from services.exceptions import NotAuthenticatedError
from services.notifier import CHANNEL_NAME, RealtimeNotifier, RealtimeSubscription, SubscriptionStatus
from tests.fakes import OTHER_USER_ID, USER_ID, make_session

TOPIC = f"realtime:{CHANNEL_NAME}"

_DROP = object()

Subscribe = Callable[..., RealtimeSubscription]


def change_message(data: dict[str, Any], topic: str = TOPIC) -> dict[str, Any]:
    return {"topic": topic, "event": "postgres_changes", "payload": {"data": data, "ids": [1]}, "ref": None}


def record(bookmark_id: str, user_id: str = USER_ID) -> dict[str, Any]:
    return {
        "id": bookmark_id,
        "user_id": user_id,
        "title": "Python",
        "url": "https://python.org",
        "created_at": "2025-01-01T00:00:00+00:00",
    }


class FakeWebSocket:
    """
    Scripted websocket speaking just enough Phoenix.

    Replies to phx_join with `join_status` (or never, if None), then delivers
    whatever the test feeds in. `drop()` ends the connection with an error.
    """

    def __init__(self, join_status: str | None = "ok") -> None:
        self.join_status = join_status
        self.sent: list[dict[str, Any]] = []
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()

    def feed(self, message: dict[str, Any]) -> None:
        self._inbox.put_nowait(json.dumps(message))

    def feed_raw(self, frame: str) -> None:
        self._inbox.put_nowait(frame)

    def drop(self) -> None:
        self._inbox.put_nowait(_DROP)

    async def send(self, data: str) -> None:
        message = json.loads(data)
        self.sent.append(message)
        if message["event"] == "phx_join" and self.join_status is not None:
            self.feed({
                "topic": message["topic"],
                "event": "phx_reply",
                "payload": {"status": self.join_status, "response": {}},
                "ref": message["ref"],
            })

    async def recv(self) -> str:
        item = await self._inbox.get()
        if item is _DROP:
            raise ConnectionClosedError(None, None)
        return item

    def __aiter__(self) -> AsyncIterator[str]:
        return self._messages()

    async def _messages(self) -> AsyncGenerator[str]:
        while True:
            yield await self.recv()


class ExplodingWebSocket(FakeWebSocket):
    """Socket whose sends fail with an error that isn't a connection or protocol failure."""

    async def send(self, data: str) -> None:
        raise RuntimeError("socket exploded")


class FakeServer:
    """Hands out the scripted sockets in order, one per connection attempt."""

    def __init__(self, *sockets: FakeWebSocket) -> None:
        self.sockets = list(sockets)
        self.urls: list[str] = []

    @asynccontextmanager
    async def connect(self, url: str) -> AsyncGenerator[FakeWebSocket]:
        self.urls.append(url)
        if not self.sockets:
            raise OSError("connection refused")
        ws = self.sockets.pop(0)
        yield ws


async def next_item(subscription: RealtimeSubscription) -> Any:
    return await asyncio.wait_for(anext(subscription), timeout=1)


@pytest.fixture
async def subscribe(settings: Settings) -> AsyncGenerator[Subscribe]:
    """Open subscriptions against a FakeServer and close them after the test."""
    opened: list[RealtimeSubscription] = []

    def _subscribe(server: FakeServer, user_id: str = USER_ID) -> RealtimeSubscription:
        notifier = RealtimeNotifier(settings, make_session(), connect=server.connect)
        subscription = notifier.subscribe(user_id)
        opened.append(subscription)
        return subscription

    yield _subscribe
    for subscription in opened:
        await subscription.aclose()


async def test__subscribe__joins_owner_filtered_channel(subscribe: Subscribe, settings: Settings) -> None:
    ws = FakeWebSocket()
    server = FakeServer(ws)
    subscription = subscribe(server)

    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED

    join = ws.sent[0]
    assert join["event"] == "phx_join"
    assert join["topic"] == TOPIC
    assert join["payload"]["access_token"] == "token-1"
    change_config = join["payload"]["config"]["postgres_changes"][0]
    assert change_config == {
        "event": "*",
        "schema": "public",
        "table": "bookmarks",
        "filter": f"user_id=eq.{USER_ID}",
    }
    assert server.urls == [settings.realtime_url]


async def test__subscribe__other_user_refused(subscribe: Subscribe) -> None:
    with pytest.raises(NotAuthenticatedError):
        subscribe(FakeServer(), user_id=OTHER_USER_ID)


async def test__subscription__delivers_tagged_events(subscribe: Subscribe) -> None:
    ws = FakeWebSocket()
    subscription = subscribe(FakeServer(ws))
    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED

    ws.feed(change_message({"type": "INSERT", "record": record("a"), "old_record": {}}))
    ws.feed(change_message({"type": "UPDATE", "record": record("a"), "old_record": {"id": "a"}}))
    ws.feed(change_message({"type": "DELETE", "record": {}, "old_record": {"id": "a"}}))

    insert = await next_item(subscription)
    update = await next_item(subscription)
    delete = await next_item(subscription)
    assert isinstance(insert, InsertEvent)
    assert insert.record.id == "a"
    assert isinstance(update, UpdateEvent)
    assert delete == DeleteEvent(id="a")


async def test__subscription__skips_malformed_and_foreign_topic_messages(subscribe: Subscribe) -> None:
    ws = FakeWebSocket()
    subscription = subscribe(FakeServer(ws))
    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED

    ws.feed(change_message({"type": "DELETE", "old_record": {}}))
    ws.feed(change_message({"type": "INSERT", "record": record("x")}, topic="realtime:other"))
    ws.feed({"topic": "phoenix", "event": "phx_reply", "payload": {"status": "ok"}, "ref": "99"})
    ws.feed(change_message({"type": "INSERT", "record": record("a")}))

    item = await next_item(subscription)
    assert isinstance(item, InsertEvent)
    assert item.record.id == "a"


async def test__subscription__skips_frames_that_are_not_json_objects(subscribe: Subscribe) -> None:
    ws = FakeWebSocket()
    subscription = subscribe(FakeServer(ws))
    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED

    ws.feed_raw("not json{")
    ws.feed_raw("[1, 2, 3]")
    ws.feed({"topic": TOPIC, "event": "postgres_changes", "payload": ["unexpected"], "ref": None})
    ws.feed(change_message("unexpected"))  # type: ignore[arg-type]
    ws.feed(change_message({"type": "INSERT", "record": record("a")}))

    item = await next_item(subscription)
    assert isinstance(item, InsertEvent)
    assert item.record.id == "a"


async def test__subscription__unexpected_error_reports_and_reconnects(subscribe: Subscribe) -> None:
    second = FakeWebSocket()
    subscription = subscribe(FakeServer(ExplodingWebSocket(), second))

    assert await next_item(subscription) is SubscriptionStatus.CHANNEL_ERROR
    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED

    second.feed(change_message({"type": "INSERT", "record": record("a")}))
    item = await next_item(subscription)
    assert isinstance(item, InsertEvent)


async def test__subscription__sends_heartbeats(subscribe: Subscribe) -> None:
    ws = FakeWebSocket()
    subscription = subscribe(FakeServer(ws))
    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED

    await asyncio.sleep(0.05)

    heartbeats = [m for m in ws.sent if m["event"] == "heartbeat"]
    assert heartbeats
    assert all(m["topic"] == "phoenix" for m in heartbeats)


async def test__subscription__rejected_join_reports_error_and_retries(subscribe: Subscribe) -> None:
    subscription = subscribe(FakeServer(FakeWebSocket(join_status="error"), FakeWebSocket()))

    assert await next_item(subscription) is SubscriptionStatus.CHANNEL_ERROR
    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED


async def test__subscription__join_timeout_reports_timed_out(subscribe: Subscribe) -> None:
    subscription = subscribe(FakeServer(FakeWebSocket(join_status=None), FakeWebSocket()))

    assert await next_item(subscription) is SubscriptionStatus.TIMED_OUT
    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED


async def test__subscription__dropped_connection_resubscribes(subscribe: Subscribe) -> None:
    first, second = FakeWebSocket(), FakeWebSocket()
    subscription = subscribe(FakeServer(first, second))
    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED

    first.drop()

    assert await next_item(subscription) is SubscriptionStatus.CHANNEL_ERROR
    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED
    assert second.sent[0]["event"] == "phx_join"


async def test__subscription__server_channel_error_resubscribes(subscribe: Subscribe) -> None:
    first, second = FakeWebSocket(), FakeWebSocket()
    subscription = subscribe(FakeServer(first, second))
    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED

    first.feed({"topic": TOPIC, "event": "phx_error", "payload": {}, "ref": None})

    assert await next_item(subscription) is SubscriptionStatus.CHANNEL_ERROR
    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED


async def test__subscription__unreachable_server_keeps_retrying(subscribe: Subscribe) -> None:
    server = FakeServer()
    subscription = subscribe(server)

    assert await next_item(subscription) is SubscriptionStatus.CHANNEL_ERROR
    assert await next_item(subscription) is SubscriptionStatus.CHANNEL_ERROR

    server.sockets.append(FakeWebSocket())
    item = await next_item(subscription)
    while item is SubscriptionStatus.CHANNEL_ERROR:
        item = await next_item(subscription)
    assert item is SubscriptionStatus.SUBSCRIBED


async def test__aclose__emits_closed_and_ends_iteration(subscribe: Subscribe) -> None:
    subscription = subscribe(FakeServer(FakeWebSocket()))
    assert await next_item(subscription) is SubscriptionStatus.SUBSCRIBED

    await subscription.aclose()
    await subscription.aclose()

    assert subscription.closed is True
    assert [item async for item in subscription] == [SubscriptionStatus.CLOSED]
