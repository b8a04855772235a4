"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides common fixtures like a temp DB.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("NOTIFY_DAY_OFFSET", "1")
os.environ.setdefault("TIMEZONE", "Europe/Berlin")

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_waste_bot.db")


@pytest.fixture
def store(tmp_db_path):
    """Return a SubscriptionStore backed by a temp file."""
    from src.data.db import SubscriptionStore
    return SubscriptionStore(db_path=tmp_db_path, timeout=5)

