"""
Pytest configuration for payguard tests.

Environment variables are set at module level (not in pytest_configure)
because they need to be in place before any app module is imported during
collection.
"""

import os
import tempfile
from pathlib import Path

# Set ENV=TEST to disable rate limiting BEFORE any modules are imported
os.environ["ENV"] = "TEST"
os.environ["DISABLE_RATE_LIMITS"] = "1"
os.environ.pop("DATABASE_URL", None)
os.environ.setdefault(
    "PAYGUARD_DB_PATH", str(Path(tempfile.mkdtemp(prefix="payguard-test-")) / "payguard.db")
)

import pytest


@pytest.fixture(autouse=True, scope="session")
def setup_test_database():
    """Ensure the database schema is created before any tests run."""
    from payguard.app.db.migrate import ensure_schema

    ensure_schema()


@pytest.fixture(scope="function")
def test_db(tmp_path, monkeypatch):
    """Point the app at a fresh, migrated SQLite database."""
    from payguard.app.db.migrate import ensure_schema

    db_path = tmp_path / "test.db"
    monkeypatch.setenv("PAYGUARD_DB_PATH", str(db_path))
    ensure_schema()
    yield db_path
