"""Shared exceptions for bookmark operations."""


class BookmarkError(Exception):
    """Base class for errors raised by bookmark operations."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(BookmarkError):
    """
    Raised when bookmark input is rejected before any network call.

    Distinct from pydantic's ValidationError; schema errors are translated into
    this type so callers only deal with one validation failure.
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message)


class PersistenceError(BookmarkError):
    """
    Raised when a gateway call fails.

    `category` distinguishes network loss, access-control denial, missing rows,
    constraint violations and unexpected backend failures.
    """

    def __init__(
        self,
        message: str,
        category: str = "internal",
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.category = category
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class NotAuthenticatedError(BookmarkError):
    """Raised when an operation is attempted without a valid session."""

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)
