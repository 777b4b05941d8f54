"""
Shared PostgREST error parsing.

Extracts semantic meaning from failed PostgREST responses. The gateway turns
the parsed result into NotAuthenticatedError or PersistenceError; the setup
check uses it to recognise a missing table or an RLS denial.
"""

from dataclasses import dataclass
from typing import Any, Literal

import httpx

ErrorCategory = Literal[
    "auth",        # 401 / expired JWT - session no longer valid
    "forbidden",   # 403 / 42501 - row-level security denied the operation
    "not_found",   # 404 / missing table / no matching row
    "validation",  # 400/422 - bad input rejected by the database
    "conflict",    # 409 / 23505 - unique constraint violation
    "internal",    # 5xx or unexpected errors
]

# PostgreSQL and PostgREST error codes with a fixed meaning
_CODE_CATEGORIES: dict[str, ErrorCategory] = {
    "PGRST301": "auth",       # JWT invalid
    "PGRST303": "auth",       # JWT expired
    "42501": "forbidden",     # insufficient privilege / RLS violation
    "42P01": "not_found",     # undefined table
    "PGRST205": "not_found",  # table not in schema cache
    "PGRST116": "not_found",  # singular response requested, no rows
    "23505": "conflict",      # unique violation
    "23502": "validation",    # not null violation
    "23503": "validation",    # foreign key violation
    "22P02": "validation",    # invalid text representation (e.g. bad uuid)
}

MISSING_TABLE_CODES = frozenset({"42P01", "PGRST205"})
RLS_DENIED_CODE = "42501"


@dataclass
class ParsedApiError:
    """Parsed API error with semantic category and message."""

    category: ErrorCategory
    message: str
    code: str | None = None
    status_code: int | None = None

    @property
    def is_missing_table(self) -> bool:
        """Whether the error says the table does not exist."""
        if self.code in MISSING_TABLE_CODES:
            return True
        return "does not exist" in self.message or "Could not find the table" in self.message

    @property
    def is_rls_denial(self) -> bool:
        """Whether the error is a row-level security rejection."""
        return self.code == RLS_DENIED_CODE or "row-level security" in self.message


def parse_postgrest_error(e: httpx.HTTPStatusError) -> ParsedApiError:
    """
    Parse a PostgREST HTTP error into a semantic category.

    The error code in the body wins over the HTTP status, since PostgREST maps
    several distinct database failures onto the same status.

    Args:
        e: The HTTP status error from httpx

    Returns:
        ParsedApiError with category, message, and the PostgREST error code
    """
    status = e.response.status_code
    body = _safe_get_body(e)
    code = body.get("code") if isinstance(body.get("code"), str) else None
    message = _extract_message(body) or f"API error {status}"

    if code in _CODE_CATEGORIES:
        return ParsedApiError(_CODE_CATEGORIES[code], message, code, status)

    if status == 401:
        return ParsedApiError("auth", "Invalid or expired token", code, status)
    if status == 403:
        return ParsedApiError("forbidden", "Access denied", code, status)
    if status == 404:
        return ParsedApiError("not_found", message, code, status)
    if status == 409:
        return ParsedApiError("conflict", message, code, status)
    if status in (400, 422):
        return ParsedApiError("validation", message, code, status)

    return ParsedApiError("internal", f"API error {status}", code, status)


def _safe_get_body(e: httpx.HTTPStatusError) -> dict[str, Any]:
    """Safely extract the JSON error object from a response."""
    try:
        body = e.response.json()
    except ValueError:
        return {}
    # Non-dict JSON body (list, string, etc.) - return empty
    return body if isinstance(body, dict) else {}


def _extract_message(body: dict[str, Any]) -> str:
    """Build a readable message from PostgREST's message/details/hint fields."""
    message = body.get("message") or body.get("msg") or body.get("error_description")
    if not isinstance(message, str) or not message:
        return ""
    details = body.get("details")
    if isinstance(details, str) and details:
        return f"{message} ({details})"
    return message
