"""Session identity for the signed-in user, backed by Supabase access tokens."""
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import httpx
import jwt

from core.config import Settings, get_settings
from services.exceptions import NotAuthenticatedError

logger = logging.getLogger(__name__)

# Audience Supabase puts on tokens for signed-in users
AUTHENTICATED_AUDIENCE = "authenticated"


@dataclass(frozen=True)
class UserSession:
    """The authenticated identity every gateway call and subscription is scoped to."""

    user_id: str
    access_token: str
    email: str | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the access token has passed its expiry."""
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at


def decode_access_token(token: str, settings: Settings) -> UserSession:
    """
    Decode a Supabase access token into a UserSession.

    When SUPABASE_JWT_SECRET is configured the signature is verified (HS256).
    Otherwise only the claims are read; the backend still verifies every request,
    so this is used purely to learn the owner id. Expiry is enforced either way.

    Raises:
        NotAuthenticatedError: If the token is invalid, expired, or has no subject.
    """
    try:
        if settings.supabase_jwt_secret:
            claims = jwt.decode(
                token,
                settings.supabase_jwt_secret,
                algorithms=["HS256"],
                audience=AUTHENTICATED_AUDIENCE,
            )
        else:
            claims = jwt.decode(
                token,
                options={"verify_signature": False, "verify_aud": False, "verify_exp": True},
            )
    except jwt.ExpiredSignatureError:
        raise NotAuthenticatedError("Session has expired")
    except jwt.InvalidAudienceError:
        raise NotAuthenticatedError("Token is not for a signed-in user")
    except jwt.PyJWTError as e:
        logger.warning("Access token validation failed: %s", e)
        raise NotAuthenticatedError("Invalid access token")

    user_id = claims.get("sub")
    if not user_id:
        raise NotAuthenticatedError("Access token has no subject")

    exp = claims.get("exp")
    return UserSession(
        user_id=str(user_id),
        access_token=token,
        email=claims.get("email"),
        expires_at=datetime.fromtimestamp(exp, UTC) if exp else None,
    )


class SessionProvider(Protocol):
    """Supplies the current session, or None when nobody is signed in."""

    def current_session(self) -> UserSession | None: ...


class StaticSessionProvider:
    """Session provider holding a fixed session (or none)."""

    def __init__(self, session: UserSession | None) -> None:
        self._session = session

    def current_session(self) -> UserSession | None:
        return self._session

    def set_session(self, session: UserSession | None) -> None:
        """Replace the session, e.g. after re-authentication."""
        self._session = session


class EnvSessionProvider:
    """Session provider reading SUPABASE_ACCESS_TOKEN from the environment."""

    env_var = "SUPABASE_ACCESS_TOKEN"

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def current_session(self) -> UserSession | None:
        token = os.getenv(self.env_var, "").strip()
        if not token:
            return None
        return decode_access_token(token, self._settings)


def require_session(provider: SessionProvider) -> UserSession:
    """
    Get the current session or fail.

    Raises:
        NotAuthenticatedError: If nobody is signed in or the session has expired.
    """
    session = provider.current_session()
    if session is None:
        raise NotAuthenticatedError("Sign in required")
    if session.is_expired():
        raise NotAuthenticatedError("Session has expired")
    return session


async def sign_out(client: httpx.AsyncClient, session: UserSession, settings: Settings) -> None:
    """
    Revoke the session's refresh tokens at the auth server.

    A 401 means the session is already gone and is treated as success.
    """
    response = await client.post(
        f"{settings.auth_url}/logout",
        headers={
            "apikey": settings.supabase_anon_key,
            "Authorization": f"Bearer {session.access_token}",
        },
    )
    if response.status_code == 401:
        logger.info("Session for user %s was already signed out", session.user_id)
        return
    response.raise_for_status()
