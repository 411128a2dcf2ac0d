"""
Test fixtures and configuration for pytest.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, List, Optional

import pytest

from audit_service.config import Settings
from audit_service.store import OPERATION_MAX_LENGTH, AuditStore


class MockPostgresError(Exception):
    """Stands in for asyncpg errors raised by the server."""


class MockDatabase:
    """In-memory stand-in for the audit table, shared by every mock pool."""

    def __init__(self):
        self.table: Optional[List[dict]] = None
        self.next_id = 0
        self.fail_on: Optional[str] = None
        self.pools: List["MockPool"] = []

    def insert_raw(self, operation: str) -> None:
        """Store a row without going through the store."""
        self.next_id += 1
        self.table.append({
            "id": self.next_id,
            "operation": operation,
            "stored_at": datetime.now(timezone.utc)
        })

    @property
    def pool(self) -> "MockPool":
        return self.pools[-1]


class MockConnection:
    """Mock asyncpg connection answering the store's queries."""

    def __init__(self, db: MockDatabase):
        self.db = db

    def _check(self, query: str) -> None:
        if self.db.fail_on and self.db.fail_on in query:
            raise MockPostgresError(f"forced failure on {self.db.fail_on}")

    async def execute(self, query: str, *args):
        self._check(query)
        if "DROP TABLE" in query:
            self.db.table = None
            return "DROP TABLE"
        if "CREATE TABLE" in query:
            if self.db.table is None:
                self.db.table = []
            return "CREATE TABLE"
        return "OK"

    async def fetchrow(self, query: str, *args):
        self._check(query)
        if self.db.table is None:
            raise MockPostgresError('relation "audit" does not exist')
        operation = args[0]
        # Sequences advance even when the insert fails
        self.db.next_id += 1
        if len(operation) > OPERATION_MAX_LENGTH:
            raise MockPostgresError(
                f"value too long for type character varying({OPERATION_MAX_LENGTH})"
            )
        row = {
            "id": self.db.next_id,
            "operation": operation,
            "stored_at": datetime.now(timezone.utc)
        }
        self.db.table.append(row)
        return row

    async def fetch(self, query: str, *args):
        self._check(query)
        if self.db.table is None:
            raise MockPostgresError('relation "audit" does not exist')
        limit = args[0]
        return sorted(self.db.table, key=lambda r: r["id"], reverse=True)[:limit]

    async def fetchval(self, query: str, *args):
        self._check(query)
        return 1


class MockPool:
    """Mock asyncpg pool counting acquisitions and releases."""

    def __init__(self, db: MockDatabase, **kwargs):
        self.db = db
        self.options = kwargs
        self.acquired = 0
        self.released = 0
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        try:
            yield MockConnection(self.db)
        finally:
            self.released += 1

    async def close(self):
        self.closed = True


@pytest.fixture
def mock_db() -> MockDatabase:
    """Create a mock database for testing."""
    return MockDatabase()


@pytest.fixture
def pool_factory(mock_db: MockDatabase) -> Callable:
    async def factory(**kwargs):
        pool = MockPool(mock_db, **kwargs)
        mock_db.pools.append(pool)
        return pool
    return factory


@pytest.fixture
def store(pool_factory: Callable) -> AuditStore:
    """An AuditStore on top of the mock database."""
    return AuditStore("postgresql://test@localhost/test", pool_factory=pool_factory)


@pytest.fixture
def settings() -> Settings:
    """Settings for a listener on an ephemeral local port."""
    return Settings(
        _env_file=None,
        host="127.0.0.1",
        port=0,
        database_url="postgresql://test@localhost/test",
    )


@pytest.fixture
def wait_until():
    """Poll a condition from async tests."""
    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)
    return wait
