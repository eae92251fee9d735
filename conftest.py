"""
Pytest configuration and shared fixtures.

Points the app at a throwaway SQLite file before any app module reads
settings, and provides a database session fixture with fresh tables.
"""

import os

import pytest

os.environ["DATABASE_URL"] = "sqlite:///./test_shardtalk.db"
os.environ["LOG_LEVEL"] = "DEBUG"

# Clear settings cache before any app imports to ensure test env vars are used
from shardtalk.config import get_settings
get_settings.cache_clear()

from shardtalk import models  # noqa: E402,F401  registers tables on Base.metadata
from shardtalk.storage import Base, close_db, get_engine, new_session  # noqa: E402


@pytest.fixture
def db():
    """Session on freshly created tables; tables are dropped afterwards."""
    Base.metadata.create_all(bind=get_engine())
    session = new_session()
    yield session
    session.close()
    Base.metadata.drop_all(bind=get_engine())
    close_db()
