"""
Preference service for per-user notification configuration.

Provides business logic for:
- Reading preferences (defaults when the user never saved any)
- Partial, validated updates
- Channel and quiet-hours helpers used by the evaluator

Preferences are mutated only through update(); every other component reads
them through get().
"""

import re
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from alert_engine.models import NotificationPreference, User, DEFAULT_THRESHOLDS
from alert_engine.models.delivery_job import DeliveryChannel
from alert_engine.schemas.preferences import (
    ChannelToggles,
    NotificationPreferencesResponse,
    QuietHours,
)
from alert_engine.services.exceptions import NotFoundError, ValidationError
from alert_engine.utils.logging_config import get_logger


logger = get_logger("services")


_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

_UPDATABLE_KEYS = {"channel_enabled", "thresholds", "quiet_hours"}


def _parse_hhmm(value: str, field: str) -> int:
    """Parse "HH:MM" into minutes since midnight."""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a HH:MM string", field=field)
    match = _TIME_PATTERN.match(value)
    if not match:
        raise ValidationError(f"{field} must be a HH:MM string, got '{value}'", field=field)
    return int(match.group(1)) * 60 + int(match.group(2))


def validate_thresholds(thresholds: Any) -> List[int]:
    """
    Validate a threshold list.

    Thresholds must be a non-empty, strictly ascending list of integers in
    (0, 100].

    Raises:
        ValidationError: If the list is malformed
    """
    if not isinstance(thresholds, list) or not thresholds:
        raise ValidationError("thresholds must be a non-empty list", field="thresholds")
    for value in thresholds:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError("thresholds must be integers", field="thresholds")
        if value <= 0 or value > 100:
            raise ValidationError(
                f"threshold {value} is outside (0, 100]", field="thresholds"
            )
    if any(b <= a for a, b in zip(thresholds, thresholds[1:])):
        raise ValidationError(
            "thresholds must be sorted ascending without duplicates", field="thresholds"
        )
    return list(thresholds)


def validate_quiet_hours(quiet_hours: Dict[str, Any]) -> Dict[str, str]:
    """
    Validate a quiet-hours window.

    Raises:
        ValidationError: On bad times, an empty window, or an unknown timezone
    """
    if not isinstance(quiet_hours, dict):
        raise ValidationError("quiet_hours must be an object", field="quiet_hours")
    start = quiet_hours.get("start")
    end = quiet_hours.get("end")
    tz_name = quiet_hours.get("timezone") or "UTC"

    start_minutes = _parse_hhmm(start, "quiet_hours.start")
    end_minutes = _parse_hhmm(end, "quiet_hours.end")
    if start_minutes == end_minutes:
        raise ValidationError(
            "quiet_hours start and end must differ", field="quiet_hours"
        )
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(
            f"Unknown timezone '{tz_name}'", field="quiet_hours.timezone"
        )
    return {"start": start, "end": end, "timezone": tz_name}


class PreferenceService:
    """
    Service for notification preference reads and updates.

    Usage:
        >>> service = PreferenceService(db)
        >>> prefs = service.get(user_id=7)
        >>> prefs.channel_enabled.email
        True
        >>> service.update(7, {"channel_enabled": {"email": False}})
    """

    def __init__(self, db: Session):
        """
        Initialize preference service.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    def _require_user(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if not user:
            raise NotFoundError("User", user_id)
        return user

    def _load(self, user_id: int, for_update: bool = False) -> Optional[NotificationPreference]:
        query = self.db.query(NotificationPreference).filter(
            NotificationPreference.user_id == user_id
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def get_default_preferences(user_id: int) -> NotificationPreferencesResponse:
        """Defaults for a user who never saved preferences."""
        return NotificationPreferencesResponse(
            user_id=user_id,
            channel_enabled=ChannelToggles(socket=True, email=True),
            thresholds=list(DEFAULT_THRESHOLDS),
            quiet_hours=None,
        )

    @staticmethod
    def _to_response(pref: NotificationPreference) -> NotificationPreferencesResponse:
        quiet_hours = None
        if pref.has_quiet_hours:
            quiet_hours = QuietHours(
                start=pref.quiet_hours_start,
                end=pref.quiet_hours_end,
                timezone=pref.quiet_hours_timezone or "UTC",
            )
        return NotificationPreferencesResponse(
            user_id=pref.user_id,
            channel_enabled=ChannelToggles(
                socket=pref.socket_enabled, email=pref.email_enabled
            ),
            thresholds=list(pref.thresholds or DEFAULT_THRESHOLDS),
            quiet_hours=quiet_hours,
        )

    def get(self, user_id: int) -> NotificationPreferencesResponse:
        """
        Get notification preferences for a user.

        Args:
            user_id: User's internal ID

        Returns:
            Stored preferences, or the defaults if none were saved

        Raises:
            NotFoundError: If the user itself does not exist
        """
        self._require_user(user_id)
        pref = self._load(user_id)
        if pref is None:
            return self.get_default_preferences(user_id)
        return self._to_response(pref)

    def update(self, user_id: int, partial: Dict[str, Any]) -> NotificationPreferencesResponse:
        """
        Update notification preferences for a user (partial merge).

        Args:
            user_id: User's internal ID
            partial: Any of channel_enabled ({socket, email}), thresholds,
                quiet_hours ({start, end, timezone} or None to clear)

        Returns:
            Updated preferences

        Raises:
            NotFoundError: If the user does not exist
            ValidationError: If any provided field is malformed
        """
        self._require_user(user_id)

        unknown = set(partial) - _UPDATABLE_KEYS
        if unknown:
            raise ValidationError(
                f"Unknown preference fields: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )

        # Validate everything before touching the row
        thresholds = None
        if "thresholds" in partial:
            thresholds = validate_thresholds(partial["thresholds"])

        quiet_hours = None
        if partial.get("quiet_hours") is not None:
            quiet_hours = validate_quiet_hours(partial["quiet_hours"])

        channels = partial.get("channel_enabled") or {}
        if not isinstance(channels, dict):
            raise ValidationError("channel_enabled must be an object", field="channel_enabled")
        for name, value in channels.items():
            if name not in {c.value for c in DeliveryChannel}:
                raise ValidationError(f"Unknown channel '{name}'", field="channel_enabled")
            if value is not None and not isinstance(value, bool):
                raise ValidationError(
                    f"channel_enabled.{name} must be a boolean", field="channel_enabled"
                )

        try:
            pref = self._apply(user_id, channels, thresholds, quiet_hours, partial)
        except IntegrityError:
            # Another request created the row first; apply on top of it
            self.db.rollback()
            pref = self._apply(user_id, channels, thresholds, quiet_hours, partial)

        logger.info(
            "Updated notification preferences",
            extra={"user_id": user_id, "fields": sorted(partial.keys())},
        )
        return self._to_response(pref)

    def _apply(
        self,
        user_id: int,
        channels: Dict[str, Optional[bool]],
        thresholds: Optional[List[int]],
        quiet_hours: Optional[Dict[str, str]],
        partial: Dict[str, Any],
    ) -> NotificationPreference:
        pref = self._load(user_id, for_update=True)
        if pref is None:
            pref = NotificationPreference(
                user_id=user_id,
                socket_enabled=True,
                email_enabled=True,
                thresholds=list(DEFAULT_THRESHOLDS),
            )
            self.db.add(pref)

        if channels.get("socket") is not None:
            pref.socket_enabled = channels["socket"]
        if channels.get("email") is not None:
            pref.email_enabled = channels["email"]
        if thresholds is not None:
            pref.thresholds = thresholds
        if "quiet_hours" in partial:
            if quiet_hours is None:
                pref.quiet_hours_start = None
                pref.quiet_hours_end = None
                pref.quiet_hours_timezone = None
            else:
                pref.quiet_hours_start = quiet_hours["start"]
                pref.quiet_hours_end = quiet_hours["end"]
                pref.quiet_hours_timezone = quiet_hours["timezone"]

        self.db.commit()
        self.db.refresh(pref)
        return pref

    # ========================================================================
    # Read helpers
    # ========================================================================

    @staticmethod
    def is_channel_enabled(
        prefs: NotificationPreferencesResponse, channel: DeliveryChannel
    ) -> bool:
        return bool(getattr(prefs.channel_enabled, channel.value))

    @staticmethod
    def enabled_channels(prefs: NotificationPreferencesResponse) -> List[DeliveryChannel]:
        """Channels the user receives alerts on, in delivery order."""
        return [
            channel
            for channel in (DeliveryChannel.SOCKET, DeliveryChannel.EMAIL)
            if PreferenceService.is_channel_enabled(prefs, channel)
        ]

    @staticmethod
    def in_quiet_hours(prefs: NotificationPreferencesResponse, at: datetime) -> bool:
        """
        Check whether a naive-UTC instant falls inside the user's quiet window.

        Windows that wrap past midnight (22:00 -> 07:00) are supported. The
        start is inclusive and the end exclusive.
        """
        if prefs.quiet_hours is None:
            return False
        qh = prefs.quiet_hours
        local = at.replace(tzinfo=dt_timezone.utc).astimezone(ZoneInfo(qh.timezone))
        minutes = local.hour * 60 + local.minute
        start = _parse_hhmm(qh.start, "quiet_hours.start")
        end = _parse_hhmm(qh.end, "quiet_hours.end")
        if start < end:
            return start <= minutes < end
        return minutes >= start or minutes < end

    @staticmethod
    def quiet_hours_end(prefs: NotificationPreferencesResponse, at: datetime) -> datetime:
        """
        Return the naive-UTC instant at which the current quiet window ends.

        Args:
            prefs: Preferences with quiet hours configured
            at: Naive-UTC instant inside the window
        """
        qh = prefs.quiet_hours
        tz = ZoneInfo(qh.timezone)
        local = at.replace(tzinfo=dt_timezone.utc).astimezone(tz)
        end_minutes = _parse_hhmm(qh.end, "quiet_hours.end")
        candidate = local.replace(
            hour=end_minutes // 60, minute=end_minutes % 60, second=0, microsecond=0
        )
        if candidate <= local:
            candidate = candidate + timedelta(days=1)
        # Re-attach the zone so DST shifts between now and the end are honoured
        candidate = candidate.replace(tzinfo=None).replace(tzinfo=tz)
        return candidate.astimezone(dt_timezone.utc).replace(tzinfo=None)
