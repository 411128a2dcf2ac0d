"""
Pydantic models for audit records and monitoring responses.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Record Models
# ============================================================================

class AuditRecord(BaseModel):
    """One observed operation, as delivered upstream or read back from storage."""

    model_config = ConfigDict(frozen=True)

    payload: Dict[str, Any] = Field(
        ...,
        description="Operation document published by the upstream service",
        examples=[{"action": "BUY", "quote": {"symbol": "MCH"}, "amount": 3}]
    )

    sequence_id: Optional[int] = Field(
        default=None,
        description="Store-assigned identifier, increasing with insertion order"
    )

    stored_at: Optional[datetime] = Field(
        default=None,
        description="Time the store accepted the record"
    )

    @property
    def is_stored(self) -> bool:
        return self.sequence_id is not None

    def describe(self, max_length: int = 80) -> str:
        """Short identity used in log lines."""
        if self.sequence_id is not None:
            return f"#{self.sequence_id}"
        text = repr(self.payload)
        if len(text) > max_length:
            text = text[:max_length - 3] + "..."
        return text


# ============================================================================
# Health Check Models
# ============================================================================

class HealthStatus(BaseModel):
    """Health check response."""

    status: str = Field(..., examples=["healthy", "unhealthy"])
    version: str
    lifecycle: str = Field(..., examples=["starting", "ready", "failed", "stopped"])
    database: str = Field(..., examples=["connected", "disconnected"])
    ingestion: str = Field(..., examples=["running", "idle"])
    uptime_seconds: float
    timestamp: datetime
