"""
Pydantic schemas for delivery job operator endpoints.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer


class DeliveryJobResponse(BaseModel):
    """Response schema for a delivery job."""

    guid: str = Field(..., description="Delivery job GUID (dlv_xxx)")
    alert_guid: Optional[str] = None
    channel: str
    status: str
    attempts: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None
    message_id: Optional[str] = None
    last_error: Optional[str] = None
    resource_id: str
    created_at: datetime
    completed_at: Optional[datetime] = None

    @field_serializer("next_attempt_at", "created_at", "completed_at")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        """Serialize datetime as ISO 8601 with explicit UTC timezone."""
        if v is None:
            return None
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v.isoformat() + "Z"


class DeadLetterListResponse(BaseModel):
    """Dead-letter view for operators."""

    items: List[DeliveryJobResponse]
    total: int = Field(..., ge=0)


class DeliveryStatsResponse(BaseModel):
    """Delivery job counts per status."""

    pending: int = 0
    sent: int = 0
    failed: int = 0
    dead: int = 0
    cancelled: int = 0


class CancelDeliveriesResponse(BaseModel):
    """Result of cancelling deliveries for a deleted budget."""

    budget_id: str
    cancelled_count: int = Field(..., ge=0)


class PurgeResponse(BaseModel):
    """Result of a housekeeping purge."""

    delivery_jobs_deleted: int = Field(..., ge=0)
    suppression_records_deleted: int = Field(..., ge=0)
