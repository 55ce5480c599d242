"""
SuppressionRecord model backing the shared suppression ledger.

A record means "an alert for this dedup key was already delivered and must
not fire again before expires_at". The unique constraint on dedup_key is what
makes create-if-absent atomic across processes.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime

from alert_engine.models import Base


class SuppressionRecord(Base):
    """
    Ledger entry for one dedup key.

    Attributes:
        dedup_key: SHA-256 hex digest of (kind, budget, category, tier bucket)
        delivered_at: When the key was acquired
        expires_at: When the key may be acquired again
    """

    __tablename__ = "suppression_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dedup_key = Column(String(64), nullable=False, unique=True, index=True)
    delivered_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now

    def __repr__(self) -> str:
        return (
            f"<SuppressionRecord(dedup_key='{self.dedup_key[:12]}...', "
            f"expires_at={self.expires_at})>"
        )
