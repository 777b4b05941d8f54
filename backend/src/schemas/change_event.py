"""
Change notifications for the bookmarks table.

Each event kind carries exactly what the realtime feed guarantees for it:
inserts and updates carry the full row, deletes carry only the primary key
(plus the owner when the table publishes full old rows).
"""
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from schemas.bookmark import Bookmark


class InsertEvent(BaseModel):
    """A row was inserted."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["insert"] = "insert"
    record: Bookmark


class UpdateEvent(BaseModel):
    """A row was changed in place."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["update"] = "update"
    record: Bookmark


class DeleteEvent(BaseModel):
    """A row was removed."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["delete"] = "delete"
    id: str
    user_id: str | None = None


ChangeEvent = Annotated[InsertEvent | UpdateEvent | DeleteEvent, Field(discriminator="kind")]

_change_event_adapter: TypeAdapter[ChangeEvent] = TypeAdapter(ChangeEvent)


def parse_change_event(data: dict[str, Any]) -> ChangeEvent:
    """Validate an already-tagged event dict (`{"kind": ..., ...}`)."""
    return _change_event_adapter.validate_python(data)


def parse_postgres_change(data: dict[str, Any]) -> ChangeEvent:
    """
    Convert a realtime `postgres_changes` payload into a ChangeEvent.

    The payload looks like::

        {"type": "INSERT", "record": {...}, "old_record": {...}, "table": "bookmarks", ...}

    Raises:
        ValueError: If the change type is unknown or the row is missing fields.
    """
    change_type = str(data.get("type", "")).upper()
    if change_type == "INSERT":
        return InsertEvent(record=Bookmark.model_validate(data.get("record") or {}))
    if change_type == "UPDATE":
        return UpdateEvent(record=Bookmark.model_validate(data.get("record") or {}))
    if change_type == "DELETE":
        old = data.get("old_record") or {}
        if not old.get("id"):
            raise ValueError("Delete notification without a primary key")
        user_id = old.get("user_id")
        return DeleteEvent(id=str(old["id"]), user_id=str(user_id) if user_id else None)
    raise ValueError(f"Unknown change type: {data.get('type')!r}")
