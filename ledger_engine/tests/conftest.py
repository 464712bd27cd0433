"""Shared fixtures for ledger engine tests.

Every test gets a fresh in-memory SQLite database built by the same
adapter the API uses in local mode, so ledger arithmetic, SAVEPOINTs and
the conditional balance updates run against a real SQL engine.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest_asyncio
from ledger_engine.state.repository import UserRepository
from ledger_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from ledger_engine.state.tables import UserTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


@pytest_asyncio.fixture
async def async_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide an async session backed by an in-memory SQLite database."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def user(async_session: AsyncSession) -> UserTable:
    """A user with a zero balance on the free tier."""
    return await UserRepository(async_session).create("alice@example.com", user_id="user-1")


@pytest_asyncio.fixture
async def other_user(async_session: AsyncSession) -> UserTable:
    return await UserRepository(async_session).create("bob@example.com", user_id="user-2")
