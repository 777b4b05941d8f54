"""
Reconciling bookmark store.

Holds one user's bookmarks, newest first, and merges three unordered inputs
into it: results of local creates, local deletes (applied optimistically),
and change notifications from the realtime feed. Every merge is keyed by
bookmark id, so any interleaving of the three converges on the same
duplicate-free list.

Besides the list itself the store keeps:

- pending creates, keyed by a client-side correlation token, so a create that
  the user cancels before the server answers is deleted on arrival instead of
  racing a delete that has no id to target yet;
- tombstones, the ids deleted during this session, so a late create
  acknowledgement or a late insert/update notification can't resurrect them;
- a journal of merges made while a load is in flight, replayed on top of the
  load result so a snapshot taken before a change doesn't erase it.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass
from uuid import uuid4

from schemas.bookmark import Bookmark, validate_bookmark_input
from schemas.change_event import ChangeEvent, DeleteEvent, InsertEvent, UpdateEvent
from services.exceptions import BookmarkError, PersistenceError
from services.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

StoreListener = Callable[[tuple[Bookmark, ...]], None]


@dataclass
class PendingCreate:
    """A create sent to the gateway and not yet acknowledged."""

    token: str
    title: str
    url: str
    cancelled: bool = False


class BookmarkStore:
    """Per-user, in-memory bookmark list kept convergent with the backend."""

    def __init__(self, gateway: PersistenceGateway, user_id: str) -> None:
        self._gateway = gateway
        self._user_id = user_id
        self._bookmarks: list[Bookmark] = []
        self._pending: dict[str, PendingCreate] = {}
        self._tombstones: set[str] = set()
        self._deletes_in_flight: set[str] = set()
        self._listeners: list[StoreListener] = []
        # Merges made while a load is running; each load replays the tail it missed
        self._journal: list[ChangeEvent] = []
        self._loads_in_flight = 0
        self._load_generation = 0
        self.loaded = False

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def bookmarks(self) -> tuple[Bookmark, ...]:
        """Snapshot of the current list, newest first."""
        return tuple(self._bookmarks)

    @property
    def loading(self) -> bool:
        """Whether a load is in flight."""
        return self._loads_in_flight > 0

    @property
    def pending(self) -> tuple[PendingCreate, ...]:
        """Creates waiting for the gateway, oldest first."""
        return tuple(self._pending.values())

    def __len__(self) -> int:
        return len(self._bookmarks)

    def __contains__(self, bookmark_id: object) -> bool:
        return self._index_of(bookmark_id) is not None

    def get(self, bookmark_id: str) -> Bookmark | None:
        index = self._index_of(bookmark_id)
        return None if index is None else self._bookmarks[index]

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        """
        Register a callback invoked with a snapshot after every state change.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def clear_listeners(self) -> None:
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def load(self) -> tuple[Bookmark, ...]:
        """
        Replace local state with the owner's bookmarks from the gateway.

        On failure the previous state is left untouched and the error
        propagates; nothing is retried.
        """
        self._load_generation += 1
        generation = self._load_generation
        journal_start = len(self._journal)
        self._loads_in_flight += 1
        try:
            bookmarks = await self._gateway.list()
        finally:
            self._loads_in_flight -= 1
            missed = self._journal[journal_start:]
            if not self._loads_in_flight:
                self._journal.clear()

        if generation != self._load_generation:
            # A newer load started after this one; its result wins
            logger.debug("Discarding superseded load result for user %s", self._user_id)
            return self.bookmarks

        # Only deletes still awaiting the gateway keep their tombstones
        self._tombstones &= self._deletes_in_flight
        self._bookmarks = [b for b in bookmarks if b.id not in self._deletes_in_flight]
        for event in missed:
            self._merge(event)
        self.loaded = True
        logger.debug("Loaded %d bookmarks for user %s", len(self._bookmarks), self._user_id)
        self._notify()
        return self.bookmarks

    async def create(self, title: str, url: str, token: str | None = None) -> Bookmark | None:
        """
        Validate input and create a bookmark at the gateway.

        The created row is prepended unless a notification already delivered it.

        Args:
            title: Bookmark title; trimmed, must not be empty.
            url: Bookmark URL; trimmed, must not be empty.
            token: Correlation token for the pending create. Generated if omitted.

        Returns:
            The created bookmark, or None if the create was cancelled while in
            flight (the row is then deleted again).

        Raises:
            ValidationError: Input rejected; the gateway was not contacted.
            PersistenceError: The gateway call failed; state is unchanged.
        """
        data = validate_bookmark_input(title, url)
        token = token or uuid4().hex
        pending = PendingCreate(token=token, title=data.title, url=data.url)
        self._pending[token] = pending
        self._notify()

        try:
            record = await self._gateway.insert(data)
        except BaseException:
            del self._pending[token]
            self._notify()
            raise
        del self._pending[token]

        if pending.cancelled:
            await self._discard_cancelled(record)
            return None

        self._record(InsertEvent(record=record))
        self._notify()
        return record

    def cancel_create(self, token: str) -> bool:
        """
        Mark an in-flight create as deleted on arrival.

        Returns:
            False if no create with this token is pending.
        """
        pending = self._pending.get(token)
        if pending is None:
            return False
        pending.cancelled = True
        self._notify()
        return True

    async def delete(self, bookmark_id: str) -> None:
        """
        Remove a bookmark locally, then at the gateway.

        If the gateway refuses, the optimistic removal is not trusted: state is
        reloaded from the gateway and the original error is raised.

        Raises:
            PersistenceError: The gateway delete failed.
            NotAuthenticatedError: The gateway delete or the corrective reload
                found the session no longer authenticated.
        """
        self._remove_locally(bookmark_id)
        await self._confirm_delete(bookmark_id, "Delete of %s failed; resynchronising bookmarks")

    def apply_remote_event(self, event: ChangeEvent) -> bool:
        """
        Merge one change notification.

        Events for another owner are rejected even though the feed is filtered
        server-side.

        Returns:
            True if the visible list changed.
        """
        if not self._owned(event):
            logger.warning(
                "Rejected %s notification for bookmark %s: owned by another user",
                event.kind, event.id if isinstance(event, DeleteEvent) else event.record.id,
            )
            return False
        changed = self._record(event)
        if changed:
            self._notify()
        return changed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _owned(self, event: ChangeEvent) -> bool:
        if isinstance(event, DeleteEvent):
            # Deletes only carry the owner when the table publishes full old rows
            return event.user_id is None or event.user_id == self._user_id
        return event.record.user_id == self._user_id

    def _record(self, event: ChangeEvent) -> bool:
        """Merge an event and journal it for any load in flight."""
        if self._loads_in_flight:
            self._journal.append(event)
        return self._merge(event)

    def _merge(self, event: ChangeEvent) -> bool:
        if isinstance(event, DeleteEvent):
            self._tombstones.add(event.id)
            index = self._index_of(event.id)
            if index is None:
                return False
            del self._bookmarks[index]
            return True

        record = event.record
        if record.id in self._tombstones:
            return False
        index = self._index_of(record.id)
        if index is None:
            self._bookmarks.insert(0, record)
            return True
        if isinstance(event, UpdateEvent) and self._bookmarks[index] != record:
            self._bookmarks[index] = record
            return True
        return False

    async def _discard_cancelled(self, record: Bookmark) -> None:
        """Delete a row whose create was cancelled before it was acknowledged."""
        logger.info("Create of %s was cancelled in flight; deleting it", record.id)
        self._remove_locally(record.id)
        await self._confirm_delete(record.id, "Cleanup delete of %s failed; resynchronising bookmarks")

    def _remove_locally(self, bookmark_id: str) -> None:
        self._deletes_in_flight.add(bookmark_id)
        self._record(DeleteEvent(id=bookmark_id))
        self._notify()

    async def _confirm_delete(self, bookmark_id: str, reason: str) -> None:
        """Delete at the gateway, reloading if the gateway refuses."""
        try:
            await self._gateway.delete(bookmark_id)
        except BookmarkError as e:
            self._deletes_in_flight.discard(bookmark_id)
            self._tombstones.discard(bookmark_id)
            if isinstance(e, PersistenceError):
                await self._resync(reason, bookmark_id)
            raise
        self._deletes_in_flight.discard(bookmark_id)

    async def _resync(self, reason: str, *args: object) -> None:
        """
        Reload after a failed optimistic mutation.

        Persistence errors from the reload are logged only; NotAuthenticatedError
        propagates so the caller can end the session.
        """
        logger.warning(reason, *args)
        try:
            await self.load()
        except PersistenceError as e:
            logger.warning("Resynchronising load failed: %s", e)

    def _index_of(self, bookmark_id: object) -> int | None:
        for index, bookmark in enumerate(self._bookmarks):
            if bookmark.id == bookmark_id:
                return index
        return None

    def _notify(self) -> None:
        snapshot = self.bookmarks
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Bookmark listener failed")
