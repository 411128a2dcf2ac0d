"""
Audit record storage backed by an asyncpg connection pool.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import asyncpg
from asyncpg import Pool

from audit_service.config import Settings
from audit_service.errors import StoreInitError, StoreReadError, StoreWriteError
from audit_service.models import AuditRecord

TABLE_NAME = "audit"
OPERATION_MAX_LENGTH = 250

DROP_TABLE_SQL = f"DROP TABLE IF EXISTS {TABLE_NAME}"

CREATE_TABLE_SQL = f"""
    CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
        id BIGSERIAL PRIMARY KEY,
        operation VARCHAR({OPERATION_MAX_LENGTH}) NOT NULL,
        stored_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
"""

INSERT_SQL = f"INSERT INTO {TABLE_NAME} (operation) VALUES ($1) RETURNING id, stored_at"

RECENT_SQL = f"""
    SELECT id, operation, stored_at
    FROM {TABLE_NAME}
    ORDER BY id DESC
    LIMIT $1
"""


def encode_payload(payload: Dict[str, Any]) -> str:
    """Serialize a payload to the compact text stored in the operation column."""
    return json.dumps(payload, separators=(',', ':'), ensure_ascii=False)


def decode_payload(text: str) -> Dict[str, Any]:
    """Parse a stored operation back into a payload."""
    payload = json.loads(text)
    if not isinstance(payload, dict):
        raise ValueError(f"stored operation is not a JSON object: {text[:40]!r}")
    return payload


class AuditStore:
    """
    Owns the connection pool and every persisted audit record.

    Each operation acquires its own pooled connection and releases it on
    every exit path, so a slow reader cannot starve writers and a failed
    query cannot leak a connection.
    """

    def __init__(
        self,
        dsn: str,
        min_size: int = 1,
        max_size: int = 10,
        command_timeout: Optional[float] = 60,
        application_name: Optional[str] = None,
        pool_factory: Optional[Callable] = None,
        logger: Optional[logging.Logger] = None
    ):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._command_timeout = command_timeout
        self._application_name = application_name
        self._pool_factory = pool_factory or asyncpg.create_pool
        self._pool: Optional[Pool] = None
        self._lock = asyncio.Lock()
        self._log = logger or logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "AuditStore":
        return cls(
            dsn=settings.dsn,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=settings.db_command_timeout,
            application_name=settings.app_name,
            **kwargs
        )

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    async def _open_pool(self) -> Pool:
        async with self._lock:
            if self._pool is None:
                self._log.info("Connecting to PostgreSQL...")
                server_settings = {}
                if self._application_name:
                    server_settings['application_name'] = self._application_name
                self._pool = await self._pool_factory(
                    dsn=self._dsn,
                    min_size=self._min_size,
                    max_size=self._max_size,
                    command_timeout=self._command_timeout,
                    server_settings=server_settings
                )
                self._log.info("PostgreSQL connection pool created successfully")
            return self._pool

    async def initialize(self, drop_existing: bool = False) -> None:
        """
        Prepare the audit table.

        Args:
            drop_existing: Drop the table first, discarding every stored record

        Raises:
            StoreInitError: If the pool, the drop or the create fails
        """
        try:
            pool = await self._open_pool()
            async with pool.acquire() as conn:
                if drop_existing:
                    self._log.info(f"Dropping table {TABLE_NAME}")
                    await conn.execute(DROP_TABLE_SQL)
                await conn.execute(CREATE_TABLE_SQL)
        except Exception as e:
            self._log.error(f"Failed to initialize table {TABLE_NAME}: {e}")
            raise StoreInitError(f"Failed to initialize table {TABLE_NAME}: {e}") from e

        self._log.info(f"Table {TABLE_NAME} ready (drop_existing={drop_existing})")

    async def append(self, record: AuditRecord) -> AuditRecord:
        """
        Persist one record with a single insert.

        Returns:
            The stored record, carrying its sequence_id and stored_at

        Raises:
            StoreWriteError: On serialization or SQL failure
        """
        try:
            operation = encode_payload(record.payload)
        except (TypeError, ValueError) as e:
            raise StoreWriteError(f"Cannot serialize record {record.describe()}: {e}") from e

        if self._pool is None:
            raise StoreWriteError("Store is not initialized")

        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(INSERT_SQL, operation)
        except Exception as e:
            raise StoreWriteError(f"Failed to insert record {record.describe()}: {e}") from e

        stored = AuditRecord(
            payload=record.payload,
            sequence_id=row['id'],
            stored_at=row['stored_at']
        )
        self._log.debug(f"Operation inserted: id={stored.sequence_id}")
        return stored

    async def recent_records(self, limit: int) -> List[AuditRecord]:
        """
        Fetch the most recent records, newest first.

        Raises:
            StoreReadError: On SQL or deserialization failure
        """
        if self._pool is None:
            raise StoreReadError("Store is not initialized")

        try:
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(RECENT_SQL, limit)
        except Exception as e:
            raise StoreReadError(f"Failed to query recent records: {e}") from e

        records = []
        for row in rows:
            try:
                payload = decode_payload(row['operation'])
            except ValueError as e:
                raise StoreReadError(f"Corrupt operation in row {row['id']}: {e}") from e
            records.append(AuditRecord(
                payload=payload,
                sequence_id=row['id'],
                stored_at=row['stored_at']
            ))
        return records

    async def health_check(self) -> bool:
        """Check database connectivity."""
        if self._pool is None:
            return False
        try:
            async with self._pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
            return result == 1
        except Exception as e:
            self._log.error(f"Database health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close the pool once acquired connections are released. Idempotent."""
        async with self._lock:
            if self._pool is None:
                return

            self._log.info("Closing PostgreSQL connection pool...")
            await self._pool.close()
            self._pool = None
            self._log.info("PostgreSQL connection pool closed")
