"""
Inbound budget event endpoint.

The Budget subsystem posts threshold/overspend events here. The event is
validated and queued; evaluation happens in the background so the caller's
financial write never waits on alerting.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from alert_engine.api.dependencies import AuthContext, get_consumer, require_operator
from alert_engine.services.condition_consumer import ConditionConsumer
from alert_engine.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(prefix="/events", tags=["Events"])


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a budget state-change event",
)
async def submit_event(
    payload: Dict[str, Any],
    ctx: AuthContext = Depends(require_operator),
    consumer: ConditionConsumer = Depends(get_consumer),
):
    """
    Queue an inbound event for evaluation.

    Returns 202 with ``accepted: false`` if the queue is full.
    """
    accepted = consumer.submit_event(payload)
    return {"accepted": accepted}
