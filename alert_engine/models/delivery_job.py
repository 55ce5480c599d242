"""
DeliveryJob model for per-channel alert delivery.

Represents one attempt to deliver an Alert over one channel. Socket jobs are
fire-and-forget and recorded for history only. Email jobs are persisted as
PENDING before any network attempt and are claimed by email workers using a
time-bounded lease, so a crashed worker's claim expires and another worker
resumes the job.

Design Rationale:
- Lease (lease_owner, lease_expires_at) instead of a long-lived lock keeps the
  queue live after worker crashes
- The job GUID is the idempotency key given to the mail transport; a resumed
  job reuses it, so a deduplicating transport never sends twice and SMTP
  resends carry the same Message-ID
- cancel_requested is set when the underlying budget is deleted; workers check
  it before every attempt
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Boolean, ForeignKey, Enum, Index
)
from sqlalchemy.orm import relationship

from alert_engine.models import Base
from alert_engine.models.mixins import GuidMixin
from alert_engine.models.types import JSONDocument


class DeliveryChannel(str, enum.Enum):
    """Delivery channel enumeration."""
    SOCKET = "socket"
    EMAIL = "email"


class DeliveryStatus(str, enum.Enum):
    """
    Delivery job status enumeration.

    - PENDING: Waiting for (another) send attempt
    - SENT: Delivered
    - FAILED: Socket delivery found no live connection (never retried)
    - DEAD: Email retries exhausted or permanently rejected
    - CANCELLED: Underlying budget deleted before send
    """
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DEAD = "dead"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != DeliveryStatus.PENDING


class DeliveryJob(Base, GuidMixin):
    """
    Delivery of one alert over one channel.

    Attributes:
        alert_id: Alert being delivered (FK to alerts)
        channel: socket or email
        payload: Channel-specific payload (recipient, template, data)
        status: DeliveryStatus
        attempts: Number of send attempts made
        max_attempts: Attempts allowed before the job is dead
        next_attempt_at: Earliest time of the next attempt
        lease_owner: Worker id currently holding the claim
        lease_expires_at: Claim expiry; past this any worker may reclaim
        message_id: Transport message id once sent
        last_error: Last failure message
        resource_id: Budget the alert is about (for cancellation)
        cancel_requested: Cooperative cancellation flag
    """

    __tablename__ = "delivery_jobs"
    GUID_PREFIX = "dlv"

    id = Column(Integer, primary_key=True, autoincrement=True)

    alert_id = Column(
        Integer,
        ForeignKey("alerts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    channel = Column(Enum(DeliveryChannel, native_enum=False, length=10), nullable=False)
    payload = Column(JSONDocument, nullable=False, default=dict)

    status = Column(
        Enum(DeliveryStatus, native_enum=False, length=20),
        default=DeliveryStatus.PENDING,
        nullable=False,
        index=True,
    )
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    next_attempt_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    lease_owner = Column(String(100), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    message_id = Column(String(255), nullable=True)
    last_error = Column(Text, nullable=True)

    resource_id = Column(String(64), nullable=False, index=True)
    cancel_requested = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )
    completed_at = Column(DateTime, nullable=True)

    alert = relationship("Alert", back_populates="delivery_jobs")

    __table_args__ = (
        Index(
            "ix_delivery_jobs_claimable",
            "channel", "status", "next_attempt_at",
        ),
    )

    def has_live_lease(self, now: datetime) -> bool:
        return self.lease_expires_at is not None and self.lease_expires_at > now

    def to_dict(self) -> dict:
        return {
            "guid": self.guid,
            "alert_guid": self.alert.guid if self.alert else None,
            "channel": self.channel.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_attempt_at": _iso(self.next_attempt_at),
            "message_id": self.message_id,
            "last_error": self.last_error,
            "resource_id": self.resource_id,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self) -> str:
        return (
            f"<DeliveryJob(guid='{self.guid}', channel={self.channel.value}, "
            f"status={self.status.value}, attempts={self.attempts})>"
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None
