"""
SQLAlchemy models for the alert engine.

This module provides the declarative base class and imports all models
to ensure they are registered with SQLAlchemy's metadata.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()


# Import all models here so they are registered with Base.metadata
# This is required for Alembic autogenerate to detect models
from alert_engine.models.user import User
from alert_engine.models.notification_preference import (
    NotificationPreference,
    DEFAULT_THRESHOLDS,
)
from alert_engine.models.suppression_record import SuppressionRecord
from alert_engine.models.alert import Alert, AlertKind
from alert_engine.models.delivery_job import DeliveryJob, DeliveryChannel, DeliveryStatus
from alert_engine.models.deferred_evaluation import DeferredEvaluation

__all__ = [
    "Base",
    "User",
    "NotificationPreference",
    "DEFAULT_THRESHOLDS",
    "SuppressionRecord",
    "Alert",
    "AlertKind",
    "DeliveryJob",
    "DeliveryChannel",
    "DeliveryStatus",
    "DeferredEvaluation",
]
