"""
Pytest configuration and shared fixtures.

Environment variables normally come from .env.test; defaults are set here so
the suite also runs without it. Settings are reloaded before any app import.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatroom.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from chatroom.config import get_settings
get_settings.cache_clear()

from chatroom.main import app, get_session_guard
from chatroom.sessions import SessionGuard
from chatroom.storage import SessionLocal, Base, engine


@pytest.fixture(scope="function")
def db_tables():
    """Create tables for a test and drop them afterwards."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(db_tables):
    """A database session against fresh tables."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db_tables):
    """Test client with fresh database and the configured rate limit."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def unthrottled_client(db_tables):
    """Test client whose sessions may post back to back."""
    app.dependency_overrides[get_session_guard] = lambda: SessionGuard(min_interval=0)
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.pop(get_session_guard, None)


