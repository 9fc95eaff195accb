# gymquota/conftest.py
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

# A throwaway SQLite file unless a real test database is provided.
# Must be set before gymquota.core.config is imported.
_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="gymquota-tests-"))
os.environ["ENV"] = "test"
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{_TEST_DB_DIR / 'gymquota.db'}")


@pytest.fixture(scope="session")
def db_url():
    """TEST_DATABASE_URL used by SQL-backed tests."""
    return os.environ["TEST_DATABASE_URL"]


@pytest.fixture(scope="session", autouse=True)
def create_tables(db_url):
    """Drop and recreate all tables once per test session."""
    from gymquota.core.database import init_engine, reset_database, dispose_engine

    init_engine(db_url)
    reset_database()
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_db(create_tables):
    """Empty all tables and drop cached singletons before each test."""
    from gymquota.core.database import get_engine, metadata
    from gymquota.features.quota.service import reset_quota_service
    from gymquota.features.usage.store import reset_usage_store

    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())

    reset_usage_store()
    reset_quota_service()
    yield
    reset_usage_store()
    reset_quota_service()


@pytest.fixture
def fixed_now():
    """A moment in the middle of a billing month."""
    return datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from gymquota.main import app

    with TestClient(app) as test_client:
        yield test_client
