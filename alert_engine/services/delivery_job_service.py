"""
Delivery job service for operator and lifecycle actions.

Provides business logic for:
- Cooperative cancellation when a budget is deleted
- Dead-letter inspection and requeue
- Queue statistics and cleanup of finished jobs
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, delete, func, or_, update
from sqlalchemy.orm import Session

from alert_engine.models import DeliveryChannel, DeliveryJob, DeliveryStatus
from alert_engine.services.exceptions import ConflictError, NotFoundError, ValidationError
from alert_engine.utils.logging_config import get_logger


logger = get_logger("delivery")


class DeliveryJobService:
    """
    Service for managing delivery jobs outside the normal send path.

    Usage:
        >>> service = DeliveryJobService(db)
        >>> service.cancel_for_resource("bdg_groceries")
        2
        >>> service.requeue("dlv_01hgw2bbg0000000000000001")
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        """
        Initialize delivery job service.

        Args:
            db: SQLAlchemy database session
            clock: Returns the current naive-UTC time
        """
        self.db = db
        self.clock = clock

    def get_by_guid(self, guid: str) -> DeliveryJob:
        """
        Get a delivery job by GUID.

        Raises:
            ValidationError: If the GUID is malformed
            NotFoundError: If no job has that GUID
        """
        try:
            job = DeliveryJob.find_by_guid(self.db, guid)
        except ValueError as e:
            raise ValidationError(str(e), field="guid")
        if not job:
            raise NotFoundError("DeliveryJob", guid)
        return job

    def cancel_for_resource(self, resource_id: str) -> int:
        """
        Cancel outstanding deliveries for a deleted budget.

        Unleased pending jobs are cancelled immediately. Jobs currently leased
        by a worker are flagged; the worker cancels them before its next
        attempt.

        Args:
            resource_id: Budget identifier

        Returns:
            Number of pending jobs cancelled or flagged
        """
        now = self.clock()
        pending = and_(
            DeliveryJob.resource_id == resource_id,
            DeliveryJob.status == DeliveryStatus.PENDING,
        )

        flagged = self.db.execute(
            update(DeliveryJob).where(pending).values(cancel_requested=True)
        ).rowcount

        cancelled = self.db.execute(
            update(DeliveryJob)
            .where(
                pending,
                or_(
                    DeliveryJob.lease_expires_at.is_(None),
                    DeliveryJob.lease_expires_at <= now,
                ),
            )
            .values(
                status=DeliveryStatus.CANCELLED,
                completed_at=now,
                lease_owner=None,
                lease_expires_at=None,
            )
        ).rowcount
        self.db.commit()

        logger.info(
            "Cancelled deliveries for resource",
            extra={
                "resource_id": resource_id,
                "cancelled": cancelled,
                "in_flight": flagged - cancelled,
            },
        )
        return flagged

    def list_dead_letters(
        self, limit: int = 50, offset: int = 0
    ) -> Tuple[List[DeliveryJob], int]:
        """
        List dead email jobs, most recent first.

        Returns:
            Tuple of (jobs, total dead count)
        """
        query = self.db.query(DeliveryJob).filter(DeliveryJob.status == DeliveryStatus.DEAD)
        total = query.count()
        jobs = (
            query.order_by(DeliveryJob.completed_at.desc(), DeliveryJob.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return jobs, total

    def requeue(self, guid: str, max_attempts: Optional[int] = None) -> DeliveryJob:
        """
        Give a dead email job a fresh set of attempts.

        Args:
            guid: Delivery job GUID
            max_attempts: Optional new attempt budget

        Raises:
            NotFoundError: Unknown job
            ConflictError: Job is not a dead email job
        """
        job = self.get_by_guid(guid)
        if job.channel != DeliveryChannel.EMAIL or job.status != DeliveryStatus.DEAD:
            raise ConflictError(
                f"Only dead email jobs can be requeued (job is {job.channel.value}/{job.status.value})",
                current_status=job.status.value,
            )
        if job.cancel_requested:
            raise ConflictError(
                "Job belongs to a deleted budget and cannot be requeued",
                current_status=job.status.value,
            )

        job.status = DeliveryStatus.PENDING
        job.attempts = 0
        if max_attempts is not None:
            job.max_attempts = max_attempts
        job.next_attempt_at = self.clock()
        job.completed_at = None
        job.lease_owner = None
        job.lease_expires_at = None
        self.db.commit()
        self.db.refresh(job)

        logger.info("Requeued dead delivery job", extra={"job": job.guid})
        return job

    def get_stats(self) -> Dict[str, int]:
        """Count delivery jobs per status."""
        stats = {status.value: 0 for status in DeliveryStatus}
        rows = (
            self.db.query(DeliveryJob.status, func.count(DeliveryJob.id))
            .group_by(DeliveryJob.status)
            .all()
        )
        for status, count in rows:
            stats[status.value] = count
        return stats

    def purge_finished(self, older_than_days: int = 30) -> int:
        """
        Delete terminal jobs completed more than `older_than_days` ago.

        Dead jobs are kept for operator review.

        Returns:
            Number of jobs deleted
        """
        if older_than_days < 1:
            raise ValidationError("older_than_days must be at least 1", field="older_than_days")
        cutoff = self.clock() - timedelta(days=older_than_days)
        result = self.db.execute(
            delete(DeliveryJob).where(
                DeliveryJob.status.in_([
                    DeliveryStatus.SENT,
                    DeliveryStatus.FAILED,
                    DeliveryStatus.CANCELLED,
                ]),
                DeliveryJob.completed_at < cutoff,
            )
        )
        self.db.commit()
        if result.rowcount:
            logger.info("Purged finished delivery jobs", extra={"count": result.rowcount})
        return result.rowcount
