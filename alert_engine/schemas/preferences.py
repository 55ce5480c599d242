"""
Pydantic schemas for notification preference API request/response validation.

Business-rule validation (threshold ordering, quiet-hours ranges, timezone
names) happens in PreferenceService so that every caller gets the same
ValidationError, not only HTTP clients.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class ChannelToggles(BaseModel):
    """Per-channel delivery toggles."""

    socket: bool = True
    email: bool = True


class ChannelTogglesUpdate(BaseModel):
    """Partial per-channel toggle update."""

    socket: Optional[bool] = None
    email: Optional[bool] = None


class QuietHours(BaseModel):
    """
    Quiet-hours window in the user's local time.

    The window may wrap past midnight (e.g. 22:00 -> 07:00).
    """

    start: str = Field(..., description="Local start time, HH:MM")
    end: str = Field(..., description="Local end time, HH:MM")
    timezone: str = Field("UTC", description="IANA timezone identifier")


class NotificationPreferencesResponse(BaseModel):
    """Response schema for notification preferences."""

    user_id: int
    channel_enabled: ChannelToggles
    thresholds: List[int] = Field(default_factory=lambda: [80, 90, 100])
    quiet_hours: Optional[QuietHours] = None


class NotificationPreferencesUpdate(BaseModel):
    """
    Schema for updating notification preferences.

    All fields are optional; only provided fields are updated. Sending
    ``"quiet_hours": null`` explicitly clears the quiet window.
    """

    channel_enabled: Optional[ChannelTogglesUpdate] = None
    thresholds: Optional[List[int]] = Field(
        default=None,
        description="Ascending utilization tiers in (0, 100]"
    )
    quiet_hours: Optional[QuietHours] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "channel_enabled": {"email": False},
                "thresholds": [75, 90, 100],
                "quiet_hours": {"start": "22:00", "end": "07:00", "timezone": "Europe/Paris"},
            }
        }
    }

    def to_partial(self) -> dict:
        """Return only the fields the client actually sent."""
        return self.model_dump(exclude_unset=True)
