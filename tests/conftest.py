"""
Pytest configuration for subtrack tests.
Sets environment variables before any subtrack import.
"""

import os
import tempfile

# Auth disable requires debug=True AND ENVIRONMENT=development
os.environ["SUBTRACK_AUTH_ENABLED"] = "false"
os.environ["SUBTRACK_DEBUG"] = "true"
os.environ["ENVIRONMENT"] = "development"

# Temp data directory so tests don't need /data
_test_data_dir = tempfile.mkdtemp(prefix="subtrack_test_")
os.environ.setdefault("SUBTRACK_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")
os.environ.pop("SUBTRACK_EXCHANGE_RATE_API_KEY", None)
os.environ.pop("SUBTRACK_PAYMENT_WEBHOOK_SECRET", None)

import uuid
from datetime import datetime, timezone

import pytest

# Ensure DB tables exist for all tests (create via SQLModel metadata)
from sqlmodel import SQLModel

from subtrack.core.database import get_engine, get_session_context
import subtrack.models  # noqa: F401

SQLModel.metadata.create_all(get_engine())

from subtrack.services.category_service import seed_default_categories

with get_session_context() as _session:
    seed_default_categories(_session)

# Load error registry so SubtrackError returns correct HTTP status codes
from subtrack.core.errors.registry import error_registry
error_registry.load()


class FakeClock:
    """Mutable UTC clock for cache and trial tests."""

    def __init__(self, now=None):
        self.now = now or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        from datetime import timedelta
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def user_id():
    """A fresh user id per test so rows never collide across tests."""
    return f"user_{uuid.uuid4().hex[:12]}"


@pytest.fixture
def db():
    with get_session_context() as session:
        yield session
