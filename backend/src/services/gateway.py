"""
Persistence gateway for the bookmarks table.

`PostgrestGateway` talks to the Supabase REST endpoint with the signed-in
user's token. Access control is enforced by row-level security on the server;
every query is additionally filtered by owner so a misconfigured policy can't
widen what the client sees.
"""
import logging
from typing import Any, NoReturn, Protocol

import httpx
import pydantic

from core.auth import UserSession
from core.config import Settings
from schemas.bookmark import Bookmark, BookmarkCreate
from services.exceptions import NotAuthenticatedError, PersistenceError
from shared.api_errors import ParsedApiError, parse_postgrest_error

logger = logging.getLogger(__name__)


class PersistenceGateway(Protocol):
    """Create/read/delete access to the current owner's bookmarks."""

    async def insert(self, data: BookmarkCreate) -> Bookmark: ...

    async def list(self) -> list[Bookmark]: ...

    async def delete(self, bookmark_id: str) -> None: ...


def raise_for_api_error(e: httpx.HTTPStatusError, context: str) -> NoReturn:
    """Translate a failed PostgREST response into a bookmark error. Always raises."""
    parsed = parse_postgrest_error(e)
    logger.warning(
        "%s failed: status=%s code=%s category=%s",
        context, parsed.status_code, parsed.code, parsed.category,
    )
    if parsed.category == "auth":
        raise NotAuthenticatedError(parsed.message) from e
    raise PersistenceError(
        f"{context} failed: {parsed.message}",
        category=parsed.category,
        code=parsed.code,
        status_code=parsed.status_code,
    ) from e


def _parse_row(row: Any, context: str) -> Bookmark:
    """Validate a returned row, treating a malformed one as a gateway failure."""
    try:
        return Bookmark.model_validate(row)
    except pydantic.ValidationError as e:
        raise PersistenceError(f"{context} failed: malformed row") from e


class PostgrestGateway:
    """PersistenceGateway backed by PostgREST, scoped to one user session."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        session: UserSession,
        settings: Settings,
    ) -> None:
        self._client = client
        self._session = session
        self._settings = settings

    @property
    def user_id(self) -> str:
        return self._session.user_id

    @property
    def _table_url(self) -> str:
        return f"{self._settings.rest_url}/{self._settings.bookmarks_table}"

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self._settings.supabase_anon_key,
            "Authorization": f"Bearer {self._session.access_token}",
        }
        if self._settings.bookmarks_schema != "public":
            headers["Accept-Profile"] = self._settings.bookmarks_schema
            headers["Content-Profile"] = self._settings.bookmarks_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        context: str,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        prefer: str | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body."""
        try:
            response = await self._client.request(
                method,
                self._table_url,
                params=params,
                json=json,
                headers=self._headers(prefer),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise_for_api_error(e, context)
        except httpx.TransportError as e:
            logger.warning("%s failed: %s", context, e)
            raise PersistenceError(
                f"{context} failed: could not reach the server",
                category="network",
            ) from e
        try:
            return response.json()
        except ValueError as e:
            raise PersistenceError(f"{context} failed: malformed response") from e

    async def insert(self, data: BookmarkCreate) -> Bookmark:
        """Insert a bookmark for the session owner and return the stored row."""
        rows = await self._request(
            "POST",
            "Create bookmark",
            json=data.to_insert(self.user_id),
            prefer="return=representation",
        )
        if not isinstance(rows, list) or len(rows) != 1:
            raise PersistenceError("Create bookmark failed: expected the created row back")
        return _parse_row(rows[0], "Create bookmark")

    async def list(self) -> list[Bookmark]:
        """Get all of the owner's bookmarks, newest first."""
        rows = await self._request(
            "GET",
            "Load bookmarks",
            params={
                "select": "*",
                "user_id": f"eq.{self.user_id}",
                "order": "created_at.desc",
            },
        )
        if not isinstance(rows, list):
            raise PersistenceError("Load bookmarks failed: expected a list of rows")
        bookmarks = []
        for row in rows:
            bookmark = _parse_row(row, "Load bookmarks")
            if bookmark.user_id != self.user_id:
                logger.warning("Dropping bookmark %s owned by another user", bookmark.id)
                continue
            bookmarks.append(bookmark)
        return bookmarks

    async def delete(self, bookmark_id: str) -> None:
        """
        Delete one of the owner's bookmarks.

        Raises:
            PersistenceError: With category "not_found" when no row was removed,
                which is what RLS produces for another user's id.
        """
        rows = await self._request(
            "DELETE",
            "Delete bookmark",
            params={"id": f"eq.{bookmark_id}", "user_id": f"eq.{self.user_id}"},
            prefer="return=representation",
        )
        if not rows:
            logger.warning("Delete bookmark %s matched no rows", bookmark_id)
            raise PersistenceError(
                f"Bookmark '{bookmark_id}' not found",
                category="not_found",
            )

    async def probe(self) -> ParsedApiError | None:
        """
        Check that the table is reachable.

        Returns:
            None when a zero-row select succeeds, otherwise the parsed error.
        """
        try:
            response = await self._client.get(
                self._table_url,
                params={"select": "id", "limit": "0"},
                headers=self._headers(),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            return parse_postgrest_error(e)
        return None
