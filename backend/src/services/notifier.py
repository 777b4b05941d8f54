"""
Change notifier for the bookmarks table.

`RealtimeNotifier` subscribes to Supabase Realtime over a websocket using the
Phoenix channel protocol: join a topic with a `postgres_changes` filter for the
owner, answer nothing but send heartbeats, and turn each `postgres_changes`
message into a ChangeEvent.

The feed has no replay. Every successful (re)join is reported as SUBSCRIBED so
the consumer can reload and close whatever gap the reconnect left.
"""
import asyncio
import itertools
import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager
from enum import StrEnum
from typing import Any, Protocol

import websockets
from websockets.exceptions import WebSocketException

from core.auth import UserSession
from core.config import Settings
from schemas.change_event import ChangeEvent, parse_postgres_change
from services.exceptions import NotAuthenticatedError

logger = logging.getLogger(__name__)

CHANNEL_NAME = "bookmarks_changes"


class SubscriptionStatus(StrEnum):
    """Channel status changes, interleaved with events on a subscription."""

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


NotifierItem = ChangeEvent | SubscriptionStatus


class Subscription(Protocol):
    """An owner-scoped stream of change events and status changes."""

    def __aiter__(self) -> AsyncIterator[NotifierItem]: ...

    async def aclose(self) -> None: ...


class ChangeNotifier(Protocol):
    """Opens subscriptions for one owner's bookmarks."""

    def subscribe(self, user_id: str) -> Subscription: ...


class ChannelError(Exception):
    """Raised inside the connection loop when the channel must be rejoined."""


Connect = Callable[[str], AbstractAsyncContextManager[Any]]

_STOP = object()


def _decode(raw: str | bytes) -> dict[str, Any] | None:
    """Parse one inbound frame, or return None if it isn't a JSON object."""
    try:
        message = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring realtime frame that is not JSON: %.80r", raw)
        return None
    if not isinstance(message, dict):
        logger.warning("Ignoring realtime frame that is not an object: %.80r", raw)
        return None
    return message


class RealtimeSubscription:
    """
    One websocket channel subscription with automatic reconnect.

    Iterate it to receive items; iteration ends after `aclose()` once the
    final CLOSED status has been delivered.
    """

    def __init__(
        self,
        settings: Settings,
        session: UserSession,
        connect: Connect,
    ) -> None:
        self._settings = settings
        self._session = session
        self._connect = connect
        self._topic = f"realtime:{CHANNEL_NAME}"
        self._refs = itertools.count(1)
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the connection loop. Must be called from a running event loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"realtime-{self._session.user_id}")

    def __aiter__(self) -> "RealtimeSubscription":
        return self

    async def __anext__(self) -> NotifierItem:
        item = await self._queue.get()
        if item is _STOP:
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        """Stop the connection loop. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._emit(SubscriptionStatus.CLOSED)
        self._queue.put_nowait(_STOP)

    def join_message(self) -> dict[str, Any]:
        """Build the phx_join message for the owner-filtered postgres_changes channel."""
        return {
            "topic": self._topic,
            "event": "phx_join",
            "payload": {
                "config": {
                    "broadcast": {"self": False},
                    "presence": {"key": ""},
                    "postgres_changes": [
                        {
                            "event": "*",
                            "schema": self._settings.bookmarks_schema,
                            "table": self._settings.bookmarks_table,
                            "filter": f"user_id=eq.{self._session.user_id}",
                        },
                    ],
                    "private": False,
                },
                "access_token": self._session.access_token,
            },
            "ref": str(next(self._refs)),
        }

    def heartbeat_message(self) -> dict[str, Any]:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": str(next(self._refs))}

    def _emit(self, item: NotifierItem) -> None:
        if self._settings.dev_mode:
            logger.debug("Realtime %s", item)
        self._queue.put_nowait(item)

    async def _run(self) -> None:
        min_delay = self._settings.realtime_reconnect_min_delay
        delay = min_delay
        while True:
            try:
                async with self._connect(self._settings.realtime_url) as ws:
                    await self._join(ws)
                    delay = min_delay
                    await self._listen(ws)
                logger.info("Realtime connection closed by server; reconnecting")
            except ChannelError as e:
                logger.warning("Realtime channel error: %s", e)
            except (OSError, TimeoutError, WebSocketException) as e:
                logger.warning("Realtime connection lost: %s", e)
                self._emit(SubscriptionStatus.CHANNEL_ERROR)
            except Exception:
                logger.exception("Unexpected error in realtime connection; reconnecting")
                self._emit(SubscriptionStatus.CHANNEL_ERROR)
            else:
                self._emit(SubscriptionStatus.CHANNEL_ERROR)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._settings.realtime_reconnect_max_delay)

    async def _join(self, ws: Any) -> None:
        """Send phx_join and wait for its reply."""
        join = self.join_message()
        await ws.send(json.dumps(join))
        try:
            async with asyncio.timeout(self._settings.realtime_join_timeout):
                while True:
                    message = _decode(await ws.recv())
                    if message is None:
                        continue
                    if message.get("event") == "phx_reply" and message.get("ref") == join["ref"]:
                        break
                    self._handle(message)
        except TimeoutError:
            self._emit(SubscriptionStatus.TIMED_OUT)
            raise ChannelError("join timed out") from None

        status = message.get("payload", {}).get("status")
        if status != "ok":
            self._emit(SubscriptionStatus.CHANNEL_ERROR)
            raise ChannelError(f"join rejected: {message.get('payload', {}).get('response')}")
        logger.info("Subscribed to bookmark changes for user %s", self._session.user_id)
        self._emit(SubscriptionStatus.SUBSCRIBED)

    async def _listen(self, ws: Any) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(ws))
        try:
            async for raw in ws:
                message = _decode(raw)
                if message is not None:
                    self._handle(message)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self._settings.realtime_heartbeat_interval)
            await ws.send(json.dumps(self.heartbeat_message()))

    def _handle(self, message: dict[str, Any]) -> None:
        """Dispatch one inbound message for our topic."""
        if message.get("topic") != self._topic:
            return
        event = message.get("event")
        payload = message.get("payload") or {}
        if not isinstance(payload, dict):
            logger.warning("Ignoring realtime %s message with a non-object payload", event)
            return

        if event == "postgres_changes":
            data = payload.get("data") or {}
            if not isinstance(data, dict):
                logger.warning("Ignoring change notification without a data object")
                return
            try:
                change = parse_postgres_change(data)
            except ValueError as e:
                logger.warning("Ignoring malformed change notification: %s", e)
                return
            self._emit(change)
        elif event in ("phx_error", "phx_close"):
            self._emit(SubscriptionStatus.CHANNEL_ERROR)
            raise ChannelError(f"server sent {event}")
        elif event == "system" and payload.get("status") == "error":
            logger.warning("Realtime system error: %s", payload.get("message"))


class RealtimeNotifier:
    """ChangeNotifier backed by Supabase Realtime for one user session."""

    def __init__(
        self,
        settings: Settings,
        session: UserSession,
        connect: Connect | None = None,
    ) -> None:
        self._settings = settings
        self._session = session
        self._connect = connect or websockets.connect

    def subscribe(self, user_id: str) -> RealtimeSubscription:
        """
        Open a subscription for the session owner.

        Raises:
            NotAuthenticatedError: If `user_id` isn't the session's user.
        """
        if user_id != self._session.user_id:
            raise NotAuthenticatedError("Cannot subscribe to another user's bookmarks")
        subscription = RealtimeSubscription(self._settings, self._session, self._connect)
        subscription.start()
        return subscription
