"""Tests for bookmark schemas and input validation."""
import pydantic
import pytest

from schemas.bookmark import Bookmark, BookmarkCreate, validate_bookmark_input
from services.exceptions import ValidationError
from tests.fakes import USER_ID, make_bookmark


class TestValidateBookmarkInput:
    """Tests for validate_bookmark_input."""

    def test__validate_bookmark_input__trims_fields(self) -> None:
        data = validate_bookmark_input("  Python docs ", " https://docs.python.org/3/ ")

        assert data.title == "Python docs"
        assert data.url == "https://docs.python.org/3/"

    def test__validate_bookmark_input__empty_title(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_bookmark_input("", "https://example.com")

        assert exc_info.value.field == "title"
        assert exc_info.value.message == "Title cannot be empty"

    def test__validate_bookmark_input__whitespace_url(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_bookmark_input("Title", "   ")

        assert exc_info.value.field == "url"
        assert exc_info.value.message == "Url cannot be empty"

    def test__validate_bookmark_input__title_checked_before_url(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_bookmark_input("", "")

        assert exc_info.value.field == "title"

    @pytest.mark.parametrize("url", ["example.com", "ftp://example.com/file", "https://", "javascript:alert(1)"])
    def test__validate_bookmark_input__rejects_non_http_urls(self, url: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_bookmark_input("Title", url)

        assert exc_info.value.field == "url"
        assert exc_info.value.message.startswith("Invalid URL")

    def test__validate_bookmark_input__title_too_long(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAX_TITLE_LENGTH", "10")

        with pytest.raises(ValidationError) as exc_info:
            validate_bookmark_input("x" * 11, "https://example.com")

        assert exc_info.value.field == "title"
        assert "maximum length of 10" in exc_info.value.message

    def test__validate_bookmark_input__url_too_long(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAX_URL_LENGTH", "30")

        with pytest.raises(ValidationError) as exc_info:
            validate_bookmark_input("Title", "https://example.com/" + "a" * 20)

        assert exc_info.value.field == "url"
        assert "maximum length of 30" in exc_info.value.message

    def test__validate_bookmark_input__not_a_pydantic_error(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_bookmark_input("", "https://example.com")

        assert not isinstance(exc_info.value, pydantic.ValidationError)


class TestBookmarkCreate:
    """Tests for BookmarkCreate."""

    def test__to_insert__adds_owner(self) -> None:
        data = BookmarkCreate(title="Python", url="https://python.org")

        assert data.to_insert(USER_ID) == {
            "title": "Python",
            "url": "https://python.org",
            "user_id": USER_ID,
        }


class TestBookmark:
    """Tests for the Bookmark record."""

    def test__bookmark__parses_backend_row(self) -> None:
        bookmark = Bookmark.model_validate({
            "id": "7f8e4b0e-0000-4000-8000-000000000001",
            "user_id": USER_ID,
            "title": "Python",
            "url": "https://python.org",
            "created_at": "2025-01-01T12:30:00.123456+00:00",
            "extra_column": "ignored",
        })

        assert bookmark.created_at.year == 2025
        assert not hasattr(bookmark, "extra_column")

    def test__bookmark__is_frozen(self) -> None:
        bookmark = make_bookmark("a")

        with pytest.raises(pydantic.ValidationError):
            bookmark.title = "Changed"  # type: ignore[misc]

    def test__bookmark__equality_by_value(self) -> None:
        assert make_bookmark("a") == make_bookmark("a")
        assert make_bookmark("a") != make_bookmark("a", title="Other")
