"""
Query endpoint - GET /
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request
from prometheus_client import Counter, Histogram

from audit_service.config import Settings
from audit_service.errors import StoreReadError
from audit_service.store import AuditStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["operations"])

# Prometheus metrics
query_failures = Counter(
    'audit_query_failures_total',
    'Recent-operation queries that failed'
)
query_duration = Histogram(
    'audit_query_seconds',
    'Recent-operation query duration'
)


def get_store(request: Request) -> AuditStore:
    """Dependency injection for the audit store."""
    return request.app.state.store


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


@router.get("/", response_model=List[Dict[str, Any]])
async def retrieve_operations(
    store: AuditStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings)
):
    """
    Most recent audited operations, newest first.

    Returns at most `query_limit` (default 10) operation documents exactly
    as they were published. A failed read is answered with a 500 and is not
    retried; the client should ask again.
    """
    try:
        with query_duration.time():
            records = await store.recent_records(settings.query_limit)
    except StoreReadError as e:
        query_failures.inc()
        logger.error(f"Failed to retrieve operations: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve operations")

    return [record.payload for record in records]
