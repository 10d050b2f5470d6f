"""
Pytest configuration and shared fixtures.

The test environment is set here before any chatrelay import, so the
cached settings and the module-level engine point at a throwaway
SQLite database. Each test gets freshly created tables.
"""

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="chatrelay-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["AUTH_SECRET"] = "test-secret"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from chatrelay.config import get_settings
get_settings.cache_clear()

from chatrelay.auth import TokenVerifier
from chatrelay.registry import ChannelRegistry
from chatrelay.schemas import ParentKind
from chatrelay.storage import Base, MessageStore, engine, init_db


OWNER = "alice"
MEMBER = "bob"
OUTSIDER = "mallory"


@pytest.fixture
def db():
    """Fresh tables for each test."""
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store(db) -> MessageStore:
    return MessageStore()


@pytest.fixture
def registry(db) -> ChannelRegistry:
    return ChannelRegistry()


@pytest.fixture
def group(registry):
    """A group owned by alice with bob as a member."""
    parent = registry.create_parent("climbing club", OWNER, ParentKind.GROUP)
    registry.add_member(parent.id, MEMBER, invited_by=OWNER)
    return parent


@pytest.fixture
def channel(registry, group):
    """A text channel in the group."""
    return registry.create_channel(group.id, "general")


@pytest.fixture
def verifier() -> TokenVerifier:
    return TokenVerifier(os.environ["AUTH_SECRET"])


@pytest.fixture
def auth_headers(verifier):
    """Build Authorization headers for a user id."""
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {verifier.issue(user_id)}"}
    return _headers


@pytest.fixture
def client(db):
    """Test client with the app's lifespan running against the fresh database."""
    from chatrelay.main import app

    with TestClient(app) as test_client:
        yield test_client
