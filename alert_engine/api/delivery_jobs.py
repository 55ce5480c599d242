"""
Delivery job operator endpoints.

Provides endpoints for:
- Dead-letter inspection and requeue
- Queue statistics
- Cancelling outstanding deliveries of a deleted budget
- Purging finished jobs and expired suppression records
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from alert_engine.api.dependencies import AuthContext, get_ledger, require_operator
from alert_engine.db.database import get_db
from alert_engine.schemas.delivery import (
    CancelDeliveriesResponse,
    DeadLetterListResponse,
    DeliveryJobResponse,
    DeliveryStatsResponse,
    PurgeResponse,
)
from alert_engine.services.delivery_job_service import DeliveryJobService
from alert_engine.services.suppression_ledger import SuppressionLedger
from alert_engine.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(tags=["Delivery Jobs"])


def get_delivery_job_service(db: Session = Depends(get_db)) -> DeliveryJobService:
    """Create DeliveryJobService instance with database session."""
    return DeliveryJobService(db=db)


@router.get(
    "/delivery-jobs/dead-letters",
    response_model=DeadLetterListResponse,
    summary="List dead delivery jobs",
)
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    ctx: AuthContext = Depends(require_operator),
    service: DeliveryJobService = Depends(get_delivery_job_service),
):
    """List email jobs that exhausted their retries or were permanently rejected."""
    jobs, total = service.list_dead_letters(limit=limit, offset=offset)
    return DeadLetterListResponse(
        items=[DeliveryJobResponse(**job.to_dict()) for job in jobs],
        total=total,
    )


@router.post(
    "/delivery-jobs/{guid}/requeue",
    response_model=DeliveryJobResponse,
    summary="Requeue a dead delivery job",
)
async def requeue_delivery_job(
    guid: str,
    ctx: AuthContext = Depends(require_operator),
    service: DeliveryJobService = Depends(get_delivery_job_service),
):
    """Reset a dead email job to pending with a fresh attempt budget."""
    job = service.requeue(guid)
    logger.info("Operator requeued delivery job", extra={"job": guid, "operator": ctx.user_id})
    return DeliveryJobResponse(**job.to_dict())


@router.get(
    "/delivery-jobs/stats",
    response_model=DeliveryStatsResponse,
    summary="Delivery job counts per status",
)
async def get_delivery_stats(
    ctx: AuthContext = Depends(require_operator),
    service: DeliveryJobService = Depends(get_delivery_job_service),
):
    return DeliveryStatsResponse(**service.get_stats())


@router.post(
    "/budgets/{budget_id}/cancel-deliveries",
    response_model=CancelDeliveriesResponse,
    summary="Cancel pending deliveries for a deleted budget",
)
async def cancel_deliveries(
    budget_id: str,
    ctx: AuthContext = Depends(require_operator),
    service: DeliveryJobService = Depends(get_delivery_job_service),
):
    """
    Cancel every pending delivery about a budget.

    Called by the Budget subsystem when a budget is deleted. Jobs already
    claimed by a worker are cancelled before their next attempt.
    """
    count = service.cancel_for_resource(budget_id)
    return CancelDeliveriesResponse(budget_id=budget_id, cancelled_count=count)


@router.post(
    "/delivery-jobs/purge",
    response_model=PurgeResponse,
    summary="Delete finished jobs and expired suppression records",
)
async def purge(
    older_than_days: int = Query(30, ge=1, le=3650),
    ctx: AuthContext = Depends(require_operator),
    service: DeliveryJobService = Depends(get_delivery_job_service),
    ledger: SuppressionLedger = Depends(get_ledger),
):
    """
    Housekeeping for long-running deployments.

    Dead jobs are kept for review; only sent, failed and cancelled jobs older
    than `older_than_days` are removed.
    """
    jobs_deleted = service.purge_finished(older_than_days=older_than_days)
    records_deleted = ledger.purge_expired()
    logger.info(
        "Operator purge",
        extra={
            "operator": ctx.user_id,
            "delivery_jobs": jobs_deleted,
            "suppression_records": records_deleted,
        },
    )
    return PurgeResponse(
        delivery_jobs_deleted=jobs_deleted,
        suppression_records_deleted=records_deleted,
    )
