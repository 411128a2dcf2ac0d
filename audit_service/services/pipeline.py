"""
Ingestion pipeline: subscribed records into the audit store.
"""

import asyncio
import logging
from typing import Optional

from prometheus_client import Counter, Histogram

from audit_service.errors import StoreWriteError
from audit_service.models import AuditRecord
from audit_service.services.subscriber import RecordStream
from audit_service.store import AuditStore

# Prometheus metrics
records_ingested = Counter(
    'audit_records_ingested_total',
    'Records appended to the audit store'
)
records_failed = Counter(
    'audit_records_failed_total',
    'Records the audit store did not accept',
    ['reason']
)
append_duration = Histogram(
    'audit_append_seconds',
    'Audit store append duration'
)


class IngestionPipeline:
    """
    Appends delivered records one at a time, in delivery order.

    The next record is only pulled from the stream once the current append
    has completed. A failed append is logged and skipped; it is never
    retried, upstream redelivery being the only recovery.
    """

    def __init__(self, store: AuditStore, logger: Optional[logging.Logger] = None):
        self._store = store
        self._log = logger or logging.getLogger(__name__)
        self._stream: Optional[RecordStream] = None
        self._task: Optional[asyncio.Task] = None
        self.ingested = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def ingest(self, record: AuditRecord) -> Optional[AuditRecord]:
        """
        Append one record.

        Returns:
            The stored record, or None if the append failed
        """
        try:
            with append_duration.time():
                stored = await self._store.append(record)
        except StoreWriteError as e:
            self.failed += 1
            records_failed.labels(reason="write_error").inc()
            self._log.error(f"Failed to insert operation {record.describe()}: {e}")
            return None
        except Exception as e:
            self.failed += 1
            records_failed.labels(reason="internal_error").inc()
            self._log.exception(f"Unexpected error inserting operation {record.describe()}: {e}")
            return None

        self.ingested += 1
        records_ingested.inc()
        self._log.info(f"Operation inserted: id={stored.sequence_id}")
        return stored

    async def run(self, stream: RecordStream) -> None:
        """Consume the stream until it is closed and drained."""
        self._log.info(f"Ingesting operations from {stream.topic}")
        async for record in stream:
            await self.ingest(record)
        self._log.info(
            f"Ingestion from {stream.topic} ended: "
            f"{self.ingested} inserted, {self.failed} failed"
        )

    def start(self, stream: RecordStream) -> asyncio.Task:
        if self.running:
            raise RuntimeError("Ingestion pipeline is already running")
        self._stream = stream
        self._task = asyncio.create_task(self.run(stream), name=f"ingest:{stream.topic}")
        return self._task

    async def stop(self) -> None:
        """
        Close the stream and wait for the pipeline to finish.

        Records delivered before the stream was closed are still appended,
        one at a time, before this returns.
        """
        if self._stream is not None:
            self._stream.close()
        if self._task is not None:
            await self._task
            self._task = None
