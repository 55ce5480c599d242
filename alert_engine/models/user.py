"""
User model.

Users are owned by the surrounding application; the engine only needs to know
that a user exists (so preference lookups can tell an unknown user from a user
without preferences) and where to send email.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship

from alert_engine.models import Base


class User(Base):
    """
    Recipient of budget alerts.

    Attributes:
        email: Email address used for the durable email channel
        first_name: Used for greeting in rendered emails
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    first_name = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    notification_preference = relationship(
        "NotificationPreference",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}')>"
