"""Pytest fixtures for testing."""
from collections.abc import Generator

import pytest
import respx

from core.config import Settings, get_settings
from services.bookmark_store import BookmarkStore
from tests.fakes import USER_ID, FakeGateway

SUPABASE_URL = "https://testproject.supabase.co"


@pytest.fixture(autouse=True)
def clean_settings_cache() -> Generator[None]:
    """Validators read cached settings; never let one test's env leak into another."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    """Settings pointing at a fake project, with realtime timings shrunk for tests."""
    return Settings(
        _env_file=None,
        SUPABASE_URL=SUPABASE_URL,
        SUPABASE_ANON_KEY="anon-key",
        REALTIME_HEARTBEAT_INTERVAL=0.01,
        REALTIME_JOIN_TIMEOUT=0.1,
        REALTIME_RECONNECT_MIN_DELAY=0.001,
        REALTIME_RECONNECT_MAX_DELAY=0.004,
    )


@pytest.fixture
def mock_api() -> Generator[respx.MockRouter]:
    """Context manager for mocking Supabase responses."""
    with respx.mock(base_url=SUPABASE_URL) as respx_mock:
        yield respx_mock


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def store(gateway: FakeGateway) -> BookmarkStore:
    return BookmarkStore(gateway, USER_ID)
