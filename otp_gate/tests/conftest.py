"""
Pytest configuration for otp_gate. Use in-memory SQLite so tests don't touch the filesystem.
"""
import os
from datetime import datetime, timedelta, timezone

import pytest

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["OTP_GATE_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["OTP_GATE_SESSION_BACKEND"] = "sql"


class FakeClock:
    """Controllable UTC clock for expiry tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_tables():
    """Create tables on the shared in-memory DB."""
    from otp_gate.database import init_db

    init_db()
