"""
NotificationPreference model for per-user alert configuration.

One row per user. A missing row means "use the defaults"; the row is created
lazily by the first preference update.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship

from alert_engine.models import Base
from alert_engine.models.types import JSONDocument


DEFAULT_THRESHOLDS = [80, 90, 100]


class NotificationPreference(Base):
    """
    Per-user notification configuration.

    Attributes:
        socket_enabled: Live connection channel toggle
        email_enabled: Durable email channel toggle
        thresholds: Sorted utilization tiers that trigger alerts (e.g. [80, 90, 100])
        quiet_hours_start: "HH:MM" local start of the quiet window (nullable)
        quiet_hours_end: "HH:MM" local end of the quiet window (nullable)
        quiet_hours_timezone: IANA timezone for the quiet window
    """

    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    socket_enabled = Column(Boolean, nullable=False, default=True)
    email_enabled = Column(Boolean, nullable=False, default=True)

    thresholds = Column(JSONDocument, nullable=False, default=lambda: list(DEFAULT_THRESHOLDS))

    quiet_hours_start = Column(String(5), nullable=True)
    quiet_hours_end = Column(String(5), nullable=True)
    quiet_hours_timezone = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    user = relationship("User", back_populates="notification_preference")

    @property
    def has_quiet_hours(self) -> bool:
        return bool(self.quiet_hours_start and self.quiet_hours_end)
