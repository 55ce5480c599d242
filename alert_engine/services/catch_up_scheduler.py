"""
Persistent quiet-hours catch-ups.

The evaluator hands deferred tiers to schedule_catch_up(), which stores them
as a DeferredEvaluation row. Consumers poll for due rows with claim_due():
each row is claimed with a conditional UPDATE on its lease, so with several
consumer processes exactly one runs a given catch-up, and a consumer that
dies mid-run only delays it until its lease expires.
"""

import socket
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session

from alert_engine.config.settings import AppSettings, get_settings
from alert_engine.models import DeferredEvaluation
from alert_engine.schemas.conditions import AlertCondition
from alert_engine.utils.logging_config import get_logger


logger = get_logger("services")


class DatabaseCatchUpScheduler:
    """
    CatchUpScheduler backed by the deferred_evaluations table.

    Usage:
        >>> scheduler = DatabaseCatchUpScheduler(SessionLocal)
        >>> scheduler.schedule_catch_up(run_at, condition, [90])
        >>> for deferral_id in scheduler.claim_due():
        ...     consumer.run_deferral(deferral_id)
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Optional[AppSettings] = None,
        owner: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.owner = owner or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.clock = clock

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(seconds=self.settings.catch_up_lease_seconds)

    def schedule_catch_up(
        self, run_at: datetime, condition: AlertCondition, tiers: List[int]
    ) -> None:
        with self.session_factory() as db:
            db.add(DeferredEvaluation(
                user_id=condition.user_id,
                condition=condition.model_dump(mode="json"),
                tiers=sorted(tiers),
                run_at=run_at,
            ))
            db.commit()

    def _claimable(self, now: datetime):
        return and_(
            DeferredEvaluation.run_at <= now,
            or_(
                DeferredEvaluation.lease_expires_at.is_(None),
                DeferredEvaluation.lease_expires_at <= now,
            ),
        )

    def claim_due(self, limit: int = 100) -> List[int]:
        """
        Claim catch-ups whose run time has passed.

        Returns:
            Ids of the DeferredEvaluation rows now leased to this owner
        """
        now = self.clock()
        with self.session_factory() as db:
            candidate_ids = [
                row.id
                for row in db.query(DeferredEvaluation.id)
                .filter(self._claimable(now))
                .order_by(DeferredEvaluation.run_at.asc(), DeferredEvaluation.id.asc())
                .limit(limit)
                .all()
            ]

            claimed = []
            for deferral_id in candidate_ids:
                result = db.execute(
                    update(DeferredEvaluation)
                    .where(DeferredEvaluation.id == deferral_id, self._claimable(now))
                    .values(lease_owner=self.owner, lease_expires_at=now + self.lease_duration)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(deferral_id)
            db.commit()

        if claimed:
            logger.debug("Claimed catch-ups", extra={"owner": self.owner, "count": len(claimed)})
        return claimed

    def holds_lease(self, deferral: DeferredEvaluation) -> bool:
        return (
            deferral.lease_owner == self.owner
            and deferral.lease_expires_at is not None
            and deferral.lease_expires_at > self.clock()
        )

    def pending_count(self) -> int:
        """Number of stored catch-ups, due or not."""
        with self.session_factory() as db:
            return db.query(func.count(DeferredEvaluation.id)).scalar()
