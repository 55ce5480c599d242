"""
DeferredEvaluation model for quiet-hours catch-ups.

When quiet hours hold back a tier, its ledger slot is already taken, so the
catch-up run at the end of the window is the only way the alert ever goes
out. Storing the catch-up as a row lets it survive a restart: every consumer
polls for due rows and claims them with the same lease scheme the email
worker uses.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index

from alert_engine.models import Base
from alert_engine.models.types import JSONDocument


class DeferredEvaluation(Base):
    """
    A catch-up evaluation waiting for the end of a user's quiet hours.

    Attributes:
        user_id: User the condition belongs to
        condition: The original AlertCondition, JSON-serialized
        tiers: Tiers held back by quiet hours
        run_at: Naive-UTC time the catch-up becomes due
        lease_owner: Consumer currently running it
        lease_expires_at: Claim expiry; past this any consumer may reclaim
    """

    __tablename__ = "deferred_evaluations"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    condition = Column(JSONDocument, nullable=False)
    tiers = Column(JSONDocument, nullable=False)
    run_at = Column(DateTime, nullable=False)

    lease_owner = Column(String(100), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_deferred_evaluations_due", "run_at"),
    )

    def __repr__(self) -> str:
        return f"<DeferredEvaluation(id={self.id}, user_id={self.user_id}, run_at={self.run_at})>"
