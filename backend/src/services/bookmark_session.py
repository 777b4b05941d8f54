"""
Session controller tying one signed-in user to a store and a subscription.

A BookmarkSession is started once a user is known and closed when the view goes
away or the user changes. It owns the only BookmarkStore and the only change
subscription for that user, so nothing outlives a user switch.

Error propagation:
- ValidationError goes back to the caller only (form feedback).
- PersistenceError is reported to the listener and re-raised.
- NotAuthenticatedError ends the session: the listener is told to send the user
  to sign-in, the subscription is torn down and later operations are refused.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar

import httpx

from core import auth
from core.auth import SessionProvider, UserSession, require_session
from core.config import Settings
from schemas.bookmark import Bookmark
from services.bookmark_store import BookmarkStore
from services.exceptions import NotAuthenticatedError, PersistenceError
from services.gateway import PersistenceGateway, PostgrestGateway
from services.notifier import ChangeNotifier, RealtimeNotifier, Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[UserSession], PersistenceGateway]
NotifierFactory = Callable[[UserSession], ChangeNotifier]

T = TypeVar("T")


class BookmarkListener(Protocol):
    """Presentation-side callbacks."""

    def on_bookmarks_changed(self, bookmarks: tuple[Bookmark, ...]) -> None: ...

    def on_error(self, error: PersistenceError) -> None: ...

    def on_sign_in_required(self, error: NotAuthenticatedError) -> None: ...


class NullListener:
    """Listener that ignores everything."""

    def on_bookmarks_changed(self, bookmarks: tuple[Bookmark, ...]) -> None:
        pass

    def on_error(self, error: PersistenceError) -> None:
        pass

    def on_sign_in_required(self, error: NotAuthenticatedError) -> None:
        pass


class LoggingListener(NullListener):
    """Listener that logs failures."""

    def on_error(self, error: PersistenceError) -> None:
        logger.error("Bookmark operation failed: %s", error)

    def on_sign_in_required(self, error: NotAuthenticatedError) -> None:
        logger.error("Sign in required: %s", error)


class BookmarkSession:
    """Owns the bookmark store and change subscription for one user."""

    def __init__(
        self,
        session_provider: SessionProvider,
        gateway_factory: GatewayFactory,
        notifier_factory: NotifierFactory,
        listener: BookmarkListener | None = None,
    ) -> None:
        self._session_provider = session_provider
        self._gateway_factory = gateway_factory
        self._notifier_factory = notifier_factory
        self._listener = listener or NullListener()
        self._user: UserSession | None = None
        self._store: BookmarkStore | None = None
        self._subscription: Subscription | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._remove_store_listener: Callable[[], None] | None = None
        self._signed_out = False
        self._closed = False

    @property
    def user(self) -> UserSession | None:
        return self._user

    @property
    def store(self) -> BookmarkStore:
        if self._store is None:
            raise RuntimeError("Session has not been started")
        return self._store

    @property
    def bookmarks(self) -> tuple[Bookmark, ...]:
        return self.store.bookmarks

    @property
    def active(self) -> bool:
        return self._store is not None and not self._closed and not self._signed_out

    async def __aenter__(self) -> "BookmarkSession":
        try:
            await self.start()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def start(self) -> None:
        """
        Authenticate, subscribe to changes and run the initial load.

        The subscription is opened before loading, and every SUBSCRIBED status
        (including the first, which arrives after this load has started)
        triggers a reload, so rows committed before the channel was joined are
        not missed.

        Raises:
            NotAuthenticatedError: Nobody is signed in.
            PersistenceError: The initial load failed (the subscription stays up).
        """
        if self._store is not None:
            raise RuntimeError("Session already started")
        try:
            self._user = require_session(self._session_provider)
        except NotAuthenticatedError as e:
            self._signed_out = True
            self._listener.on_sign_in_required(e)
            raise

        self._store = BookmarkStore(self._gateway_factory(self._user), self._user.user_id)
        self._remove_store_listener = self._store.add_listener(self._listener.on_bookmarks_changed)
        self._subscription = self._notifier_factory(self._user).subscribe(self._user.user_id)
        self._consumer = asyncio.create_task(
            self._consume(self._subscription), name=f"bookmark-events-{self._user.user_id}",
        )
        await self._guard(self.store.load)

    async def refresh(self) -> tuple[Bookmark, ...]:
        """Reload from the gateway."""
        return await self._guard(self.store.load)

    async def add_bookmark(self, title: str, url: str, token: str | None = None) -> Bookmark | None:
        """
        Create a bookmark.

        On failure the caller keeps its form input; nothing is cleared here.
        """
        return await self._guard(lambda: self.store.create(title, url, token=token))

    def cancel_pending(self, token: str) -> bool:
        return self.store.cancel_create(token)

    async def remove_bookmark(self, bookmark_id: str) -> None:
        """Delete a bookmark (optimistically)."""
        await self._guard(lambda: self.store.delete(bookmark_id))

    async def switch_user(self) -> "BookmarkSession":
        """
        Follow a change of signed-in user or a re-authentication.

        A new session invalidates the subscription, since it was joined with the
        old identity and token.

        Returns:
            This session if the provider still returns the same session, otherwise
            a newly started one (this one is closed first).

        Raises:
            NotAuthenticatedError: The provider has no usable session; this one is
                closed and the listener is told to sign in.
        """
        try:
            current = self._session_provider.current_session()
        except NotAuthenticatedError as e:
            await self._handle_signed_out(e)
            raise
        if current == self._user and not self._signed_out:
            return self
        await self.close()
        replacement = BookmarkSession(
            self._session_provider,
            self._gateway_factory,
            self._notifier_factory,
            self._listener,
        )
        await replacement.start()
        return replacement

    async def sign_out(self, client: httpx.AsyncClient, settings: Settings) -> None:
        """Sign out at the auth server, then tear the session down."""
        try:
            if self._user is not None:
                await auth.sign_out(client, self._user, settings)
        finally:
            self._signed_out = True
            await self.close()

    async def close(self) -> None:
        """Tear down the consumer and subscription. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._consumer is not None and self._consumer is not asyncio.current_task():
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
        self._consumer = None
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await subscription.aclose()
        if self._remove_store_listener is not None:
            self._remove_store_listener()
            self._remove_store_listener = None
        logger.info("Closed bookmark session for user %s", self._user.user_id if self._user else None)

    async def _guard(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation, reporting failures per the propagation rules."""
        if self._signed_out:
            raise NotAuthenticatedError("Signed out")
        if self._closed:
            raise RuntimeError("Session is closed")
        try:
            return await operation()
        except PersistenceError as e:
            self._listener.on_error(e)
            raise
        except NotAuthenticatedError as e:
            await self._handle_signed_out(e)
            raise

    async def _handle_signed_out(self, error: NotAuthenticatedError) -> None:
        if self._signed_out:
            return
        self._signed_out = True
        logger.warning(
            "Session for user %s is no longer authenticated",
            self._user.user_id if self._user else None,
        )
        self._listener.on_sign_in_required(error)
        await self.close()

    async def _consume(self, subscription: Subscription) -> None:
        """Apply notifications until the subscription ends."""
        async for item in subscription:
            if isinstance(item, SubscriptionStatus):
                if item is SubscriptionStatus.SUBSCRIBED:
                    logger.info("Subscribed; reloading to close any gap")
                    await self._reload_after_gap()
                elif item in (SubscriptionStatus.CHANNEL_ERROR, SubscriptionStatus.TIMED_OUT):
                    logger.warning("Bookmark change subscription status: %s", item)
                continue
            self.store.apply_remote_event(item)

    async def _reload_after_gap(self) -> None:
        try:
            await self._guard(self.store.load)
        except (PersistenceError, NotAuthenticatedError):
            # Already reported through the listener; keep consuming events
            pass


def create_bookmark_session(
    client: httpx.AsyncClient,
    settings: Settings,
    session_provider: SessionProvider,
    listener: BookmarkListener | None = None,
) -> BookmarkSession:
    """Build a session wired to the PostgREST gateway and the realtime notifier."""
    return BookmarkSession(
        session_provider,
        gateway_factory=lambda user: PostgrestGateway(client, user, settings),
        notifier_factory=lambda user: RealtimeNotifier(settings, user),
        listener=listener,
    )
