"""
Alert model for composed, user-facing budget alerts.

An Alert is created by the evaluator once a condition has won its ledger slot
and passed preference checks. Its content is immutable after creation. It
fans out to one DeliveryJob per enabled channel; dispatched_at records that
the fan-out happened, so alerts composed but never dispatched (full queue,
crash) are found again by the dispatcher sweep.
"""

import enum
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, Index
from sqlalchemy.orm import relationship

from alert_engine.models import Base
from alert_engine.models.mixins import GuidMixin
from alert_engine.models.types import JSONDocument


class AlertKind(str, enum.Enum):
    """
    Alert kind enumeration.

    - BUDGET_WARNING: Overall budget utilization crossed a warning tier (< 100%)
    - CATEGORY_OVERSPEND: A category allocation was exceeded
    - BUDGET_EXCEEDED: Overall budget utilization reached 100% or more
    """
    BUDGET_WARNING = "budget_warning"
    CATEGORY_OVERSPEND = "category_overspend"
    BUDGET_EXCEEDED = "budget_exceeded"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @property
    def template(self) -> str:
        """Email template name for this kind."""
        return self.value.replace("_", "-")


_SEVERITY = {
    AlertKind.BUDGET_WARNING: 1,
    AlertKind.CATEGORY_OVERSPEND: 2,
    AlertKind.BUDGET_EXCEEDED: 3,
}


class Alert(Base, GuidMixin):
    """
    Composed alert for a single (condition, tier) pair.

    Attributes:
        user_id: Recipient
        kind: AlertKind
        tier: Threshold tier that was crossed (e.g. 90 or 100)
        dedup_key: Ledger key this alert consumed
        budget_id: External budget identifier
        category_id: External category identifier (category alerts only)
        title / body: Short human-readable text, used for the live channel
        template: Email template name
        data: Rendering context (utilization, amounts, period, names)
        dispatched_at: When the delivery jobs were created (None until then)
    """

    __tablename__ = "alerts"
    GUID_PREFIX = "alr"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    kind = Column(Enum(AlertKind, native_enum=False, length=30), nullable=False)
    tier = Column(Integer, nullable=False)
    dedup_key = Column(String(64), nullable=False, index=True)

    budget_id = Column(String(64), nullable=False, index=True)
    category_id = Column(String(64), nullable=True)

    title = Column(String(200), nullable=False)
    body = Column(String(500), nullable=False)
    template = Column(String(50), nullable=False)
    data = Column(JSONDocument, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    dispatched_at = Column(DateTime, nullable=True, index=True)

    user = relationship("User")
    delivery_jobs = relationship(
        "DeliveryJob",
        back_populates="alert",
        cascade="all, delete-orphan",
        order_by="DeliveryJob.id",
    )

    __table_args__ = (
        Index("ix_alerts_user_created", "user_id", "created_at"),
    )

    def to_payload(self) -> Dict[str, Any]:
        """Serialize for the live connection channel."""
        return {
            "id": self.guid,
            "kind": self.kind.value,
            "tier": self.tier,
            "budget_id": self.budget_id,
            "category_id": self.category_id,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "created_at": self.created_at.isoformat() + "Z" if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Alert(guid='{self.guid}', kind={self.kind.value}, tier={self.tier})>"
