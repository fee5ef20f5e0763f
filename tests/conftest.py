"""Pytest configuration and fixtures."""

from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskquest.database.session import close_db, init_db
from taskquest.services.blackjack import BlackjackEngine
from taskquest.services.game_sessions import GameSessionStore
from taskquest.services.users import register_user
from taskquest.services.xp_ledger import XpLedger

GRANT_SOURCE = "admin_grant"


@pytest.fixture
async def test_db(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh file-backed SQLite database (shared by all connections of a test)."""
    session_maker = await init_db(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    yield session_maker
    await close_db()


@pytest.fixture
def ledger(test_db) -> XpLedger:
    return XpLedger(test_db)


@pytest.fixture
def store(test_db) -> GameSessionStore:
    return GameSessionStore(test_db, timeout_minutes=30)


@pytest.fixture
def make_engine(ledger, store):
    """Build an engine with fixed table limits; keyword args override."""
    def _make(**kwargs) -> BlackjackEngine:
        params = dict(min_bet=10, max_bet_percent=0.25, hard_cap=1000)
        params.update(kwargs)
        return BlackjackEngine(
            ledger=params.pop("ledger", ledger),
            store=params.pop("store", store),
            **params,
        )
    return _make


@pytest.fixture
def fund(ledger):
    """Register a user and grant them XP through the ledger."""
    async def _fund(user_id: int, amount: int) -> int:
        await register_user(user_id, f"user{user_id}")
        if amount:
            result = await ledger.process_transaction(user_id, amount, GRANT_SOURCE)
            assert result.success
        return await ledger.get_balance(user_id)
    return _fund
