"""Pydantic schemas for bookmark records."""
from datetime import datetime
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, field_validator

from schemas.validators import validate_required_text, validate_title_length, validate_url
from services.exceptions import ValidationError


class Bookmark(BaseModel):
    """
    A bookmark row as stored by the backend.

    `id` and `created_at` are always assigned server-side. Instances are frozen
    so a snapshot handed to a listener can't be mutated behind the store's back.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    user_id: str
    title: str
    url: str
    created_at: datetime


class BookmarkCreate(BaseModel):
    """Schema for creating a new bookmark."""

    title: str
    url: str

    @field_validator("title")
    @classmethod
    def check_title(cls, v: str) -> str:
        """Trim, require and length-check the title."""
        return validate_title_length(validate_required_text(v, "title"))

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str) -> str:
        """Trim, require and validate the URL."""
        return validate_url(validate_required_text(v, "url"))

    def to_insert(self, user_id: str) -> dict[str, Any]:
        """Build the row body for an insert owned by `user_id`."""
        return {"title": self.title, "url": self.url, "user_id": user_id}


def validate_bookmark_input(title: str, url: str) -> BookmarkCreate:
    """
    Validate raw form input.

    Raises:
        ValidationError: With the first failing field, never pydantic's error type.
    """
    try:
        return BookmarkCreate(title=title, url=url)
    except pydantic.ValidationError as e:
        error = e.errors()[0]
        field = str(error["loc"][0]) if error["loc"] else "input"
        message = error["msg"].removeprefix("Value error, ")
        raise ValidationError(field, message) from None
