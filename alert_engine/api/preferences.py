"""
Notification preferences API endpoints.

Provides endpoints for:
- Reading the authenticated user's preferences (defaults if never saved)
- Partially updating them
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from alert_engine.api.dependencies import AuthContext, require_user
from alert_engine.db.database import get_db
from alert_engine.schemas.preferences import (
    NotificationPreferencesResponse,
    NotificationPreferencesUpdate,
)
from alert_engine.services.preference_service import PreferenceService
from alert_engine.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/notification-preferences",
    tags=["Notification Preferences"],
)


def get_preference_service(db: Session = Depends(get_db)) -> PreferenceService:
    """Create PreferenceService instance with database session."""
    return PreferenceService(db=db)


@router.get(
    "",
    response_model=NotificationPreferencesResponse,
    summary="Get notification preferences",
)
async def get_preferences(
    ctx: AuthContext = Depends(require_user),
    service: PreferenceService = Depends(get_preference_service),
):
    """
    Get the authenticated user's notification preferences.

    Returns defaults (both channels on, tiers [80, 90, 100], no quiet hours)
    if the user never saved any.
    """
    return service.get(ctx.user_id)


@router.put(
    "",
    response_model=NotificationPreferencesResponse,
    summary="Update notification preferences",
)
async def update_preferences(
    body: NotificationPreferencesUpdate,
    ctx: AuthContext = Depends(require_user),
    service: PreferenceService = Depends(get_preference_service),
):
    """
    Partially update the authenticated user's notification preferences.

    Only provided fields change. Send ``"quiet_hours": null`` to clear the
    quiet window.
    """
    return service.update(ctx.user_id, body.to_partial())
