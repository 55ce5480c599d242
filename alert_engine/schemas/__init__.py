"""
Pydantic schemas for API request/response validation and wire formats.
"""

from alert_engine.schemas.conditions import AlertCondition, InboundEvent
from alert_engine.schemas.preferences import (
    ChannelToggles,
    ChannelTogglesUpdate,
    QuietHours,
    NotificationPreferencesResponse,
    NotificationPreferencesUpdate,
)
from alert_engine.schemas.delivery import (
    DeliveryJobResponse,
    DeadLetterListResponse,
    DeliveryStatsResponse,
    CancelDeliveriesResponse,
)

__all__ = [
    "AlertCondition",
    "InboundEvent",
    "ChannelToggles",
    "ChannelTogglesUpdate",
    "QuietHours",
    "NotificationPreferencesResponse",
    "NotificationPreferencesUpdate",
    "DeliveryJobResponse",
    "DeadLetterListResponse",
    "DeliveryStatsResponse",
    "CancelDeliveriesResponse",
]
