"""
Email delivery worker.

Drains PENDING email DeliveryJobs. Any number of workers (threads or
processes) may run against the same database:

Claiming:
- Candidates are PENDING email jobs whose next_attempt_at has passed and
  whose lease is empty or expired.
- Each candidate is claimed with a conditional UPDATE that re-checks the
  lease in its WHERE clause; only the worker whose UPDATE matched the row
  owns it. A crashed worker's lease simply expires and the job is reclaimed.

Sending:
- cancel_requested is checked before every attempt.
- Right before the network call the lease is renewed with a conditional
  UPDATE that only matches while this worker still holds an unexpired lease.
  A job whose lease ran out while earlier jobs of the batch were sending is
  left to whichever worker reclaims it.
- Delivery is at-least-once. A crash between the SMTP handoff and the SENT
  commit resends the job on the next claim. The job GUID is passed to the
  transport as the idempotency key and becomes the Message-ID, so the
  duplicate is recognisable but not suppressed by SMTP relays.
- Transient failures back off exponentially; the job is DEAD after
  max_attempts. DeliveryPermanentError moves it to DEAD immediately.
"""

import asyncio
import socket
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from alert_engine.config.settings import AppSettings, get_settings
from alert_engine.models import DeliveryChannel, DeliveryJob, DeliveryStatus
from alert_engine.services.exceptions import DeliveryPermanentError, TransientDeliveryError
from alert_engine.utils.logging_config import get_logger
from alert_engine.utils.mail_transport import MailTransport


logger = get_logger("delivery")


# Upper bound on a single retry delay
MAX_BACKOFF = timedelta(hours=6)


class EmailDeliveryWorker:
    """
    Lease-based consumer of the durable email queue.

    Usage:
        >>> worker = EmailDeliveryWorker(SessionLocal, transport)
        >>> worker.run_once()
        3
        >>> await worker.run_forever()
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        transport: MailTransport,
        settings: Optional[AppSettings] = None,
        worker_id: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize the worker.

        Args:
            session_factory: Callable returning a new SQLAlchemy session
            transport: Mail collaborator
            settings: Application settings (lease, backoff, batch size)
            worker_id: Lease owner name (default: hostname + random suffix)
            clock: Returns the current naive-UTC time
        """
        self.session_factory = session_factory
        self.transport = transport
        self.settings = settings or get_settings()
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.clock = clock
        self._stopping = asyncio.Event()

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(seconds=self.settings.email_lease_seconds)

    def backoff_for(self, attempts: int) -> timedelta:
        """Delay before retry number `attempts` (1-based)."""
        delay = timedelta(seconds=self.settings.email_backoff_seconds * (2 ** (attempts - 1)))
        return min(delay, MAX_BACKOFF)

    # ========================================================================
    # Claiming
    # ========================================================================

    def _claimable(self, now: datetime):
        return and_(
            DeliveryJob.channel == DeliveryChannel.EMAIL,
            DeliveryJob.status == DeliveryStatus.PENDING,
            DeliveryJob.next_attempt_at <= now,
            or_(
                DeliveryJob.lease_expires_at.is_(None),
                DeliveryJob.lease_expires_at <= now,
            ),
        )

    def claim_batch(self, db: Session, limit: Optional[int] = None) -> List[DeliveryJob]:
        """
        Claim up to `limit` due email jobs for this worker.

        Args:
            db: Session the claimed jobs are loaded into
            limit: Batch size (default from settings)

        Returns:
            Jobs now leased to this worker
        """
        now = self.clock()
        limit = limit or self.settings.email_batch_size

        query = (
            db.query(DeliveryJob.id)
            .filter(self._claimable(now))
            .order_by(DeliveryJob.next_attempt_at.asc(), DeliveryJob.id.asc())
            .limit(limit)
        )
        # FOR UPDATE SKIP LOCKED only on PostgreSQL (SQLite doesn't support it)
        if db.get_bind().dialect.name == "postgresql":
            query = query.with_for_update(skip_locked=True)
        candidate_ids = [row.id for row in query.all()]

        claimed_ids = []
        lease_expires_at = now + self.lease_duration
        for job_id in candidate_ids:
            result = db.execute(
                update(DeliveryJob)
                .where(DeliveryJob.id == job_id, self._claimable(now))
                .values(lease_owner=self.worker_id, lease_expires_at=lease_expires_at)
            )
            if result.rowcount == 1:
                claimed_ids.append(job_id)
        db.commit()

        if not claimed_ids:
            return []

        jobs = (
            db.query(DeliveryJob)
            .filter(DeliveryJob.id.in_(claimed_ids))
            .order_by(DeliveryJob.next_attempt_at.asc(), DeliveryJob.id.asc())
            .all()
        )
        logger.debug(
            "Claimed email jobs",
            extra={"worker_id": self.worker_id, "count": len(jobs)},
        )
        return jobs

    # ========================================================================
    # Processing
    # ========================================================================

    def _finish(self, job: DeliveryJob, status: DeliveryStatus, now: datetime) -> None:
        job.status = status
        job.completed_at = now
        job.lease_owner = None
        job.lease_expires_at = None

    def _renew_lease(self, db: Session, job: DeliveryJob) -> bool:
        """
        Extend this worker's lease and count the attempt in one conditional UPDATE.

        The UPDATE only matches while the lease is still ours and unexpired, so
        a job another worker may already have reclaimed is never sent. The
        attempt is recorded before the network call so a crash still counts it.
        """
        now = self.clock()
        result = db.execute(
            update(DeliveryJob)
            .where(
                DeliveryJob.id == job.id,
                DeliveryJob.status == DeliveryStatus.PENDING,
                DeliveryJob.lease_owner == self.worker_id,
                DeliveryJob.lease_expires_at > now,
            )
            .values(
                lease_expires_at=now + self.lease_duration,
                attempts=DeliveryJob.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(job)
        return result.rowcount == 1

    def process_job(self, db: Session, job: DeliveryJob) -> DeliveryStatus:
        """
        Make one send attempt for a claimed job.

        Args:
            db: Session the job is attached to
            job: Job leased to this worker

        Returns:
            The job's status after the attempt
        """
        db.refresh(job)
        now = self.clock()

        if (
            job.status != DeliveryStatus.PENDING
            or job.lease_owner != self.worker_id
            or not job.has_live_lease(now)
        ):
            logger.warning(
                "Lost lease before send, skipping job",
                extra={"job": job.guid, "worker_id": self.worker_id, "owner": job.lease_owner},
            )
            return job.status

        if job.cancel_requested:
            self._finish(job, DeliveryStatus.CANCELLED, now)
            db.commit()
            logger.info("Email delivery cancelled", extra={"job": job.guid})
            return job.status

        if not self._renew_lease(db, job):
            logger.warning(
                "Lease expired before send, skipping job",
                extra={"job": job.guid, "worker_id": self.worker_id, "owner": job.lease_owner},
            )
            return job.status

        payload = job.payload or {}
        try:
            message_id = self.transport.send(
                payload.get("template"),
                payload.get("to"),
                payload.get("data") or {},
                idempotency_key=job.guid,
            )
        except DeliveryPermanentError as e:
            job.last_error = e.message
            self._finish(job, DeliveryStatus.DEAD, self.clock())
            db.commit()
            logger.error(
                "Email permanently rejected",
                extra={"job": job.guid, "error": e.message},
            )
            return job.status
        except Exception as e:
            message = e.message if isinstance(e, TransientDeliveryError) else f"{type(e).__name__}: {e}"
            return self._record_transient_failure(db, job, message)

        job.message_id = message_id
        job.last_error = None
        self._finish(job, DeliveryStatus.SENT, self.clock())
        db.commit()
        logger.info(
            "Email delivered",
            extra={"job": job.guid, "attempts": job.attempts, "message_id": message_id},
        )
        return job.status

    def _record_transient_failure(
        self, db: Session, job: DeliveryJob, message: str
    ) -> DeliveryStatus:
        now = self.clock()
        job.last_error = message
        if job.attempts >= job.max_attempts:
            self._finish(job, DeliveryStatus.DEAD, now)
            db.commit()
            logger.error(
                f"Email delivery failed after {job.attempts} attempts",
                extra={"job": job.guid, "error": message},
            )
            return job.status

        backoff = self.backoff_for(job.attempts)
        job.next_attempt_at = now + backoff
        job.lease_owner = None
        job.lease_expires_at = None
        db.commit()
        logger.warning(
            f"Email attempt {job.attempts} failed, retrying in {backoff.total_seconds()}s",
            extra={"job": job.guid, "error": message},
        )
        return job.status

    # ========================================================================
    # Loop
    # ========================================================================

    def run_once(self) -> int:
        """
        Claim and process one batch.

        Returns:
            Number of jobs processed
        """
        processed = 0
        with self.session_factory() as db:
            for job in self.claim_batch(db):
                self.process_job(db, job)
                processed += 1
        return processed

    async def run_forever(self) -> None:
        """Poll until stop() is called. Each batch runs in a worker thread."""
        logger.info("Email worker started", extra={"worker_id": self.worker_id})
        while not self._stopping.is_set():
            try:
                processed = await asyncio.to_thread(self.run_once)
            except Exception as e:
                logger.error(f"Email worker batch failed: {e}", extra={"worker_id": self.worker_id})
                processed = 0
            if processed:
                continue
            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self.settings.email_poll_seconds
                )
            except asyncio.TimeoutError:
                pass
        logger.info("Email worker stopped", extra={"worker_id": self.worker_id})

    def stop(self) -> None:
        self._stopping.set()
