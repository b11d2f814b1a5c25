"""Test configuration and fixtures for berryorm."""

import asyncio
import os
import sys

import pytest
from dotenv import load_dotenv
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine

from berryorm import Config, Hooks, Session, SQLAlchemyBackend
from tests.models import schema

# Try to load environment variables from .env file
load_dotenv()


@pytest.fixture(scope="session", autouse=True)
def event_loop_policy():
    """Set event loop policy for Windows compatibility."""
    if sys.platform.startswith("win"):
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    yield


@pytest.fixture(scope="function")
async def engine():
    """Create a test database engine for each test function."""
    test_db_url = os.getenv('BERRYORM_TEST_DATABASE_URL') or "sqlite+aiosqlite:///:memory:"
    engine = create_async_engine(test_db_url, echo=False)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
async def connection(engine):
    """One connection per test; every table is created on it and dropped afterwards."""
    schema.finalize()
    async with engine.connect() as conn:
        await conn.run_sync(schema.metadata.drop_all)
        await conn.run_sync(schema.metadata.create_all)
        yield conn
        await conn.rollback()
        await conn.run_sync(schema.metadata.drop_all)
        await conn.commit()


@pytest.fixture(scope="function")
def hooks():
    return Hooks()


@pytest.fixture(scope="function")
def session(connection, hooks):
    return Session(schema, SQLAlchemyBackend(connection), config=Config(), hooks=hooks)


class QueryCounter:
    """Counts statements reaching the driver, ignoring DDL, PRAGMA and INSERT."""

    def __init__(self):
        self.statements = []

    def __call__(self, conn, cursor, statement, parameters, context, executemany):
        head = statement.lstrip().upper()
        if head.startswith(("PRAGMA", "CREATE", "DROP", "INSERT")):
            return
        self.statements.append(statement)

    @property
    def count(self) -> int:
        return len(self.statements)

    def reset(self) -> None:
        self.statements.clear()


@pytest.fixture(scope="function")
def query_counter(engine):
    counter = QueryCounter()
    event.listen(engine.sync_engine, "before_cursor_execute", counter)
    try:
        yield counter
    finally:
        event.remove(engine.sync_engine, "before_cursor_execute", counter)


# Import fixtures from fixtures module
from tests.fixtures import populated_db  # noqa: E402,F401
