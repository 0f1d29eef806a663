"""Shared fixtures for database-backed tests."""

from datetime import datetime, timedelta

import pytest

from research_desk.database import Database


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start=datetime(2024, 1, 1, 9, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'research_desk.db'}")
    await db.create_tables()
    yield db
    await db.dispose()
