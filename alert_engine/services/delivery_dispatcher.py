"""
Delivery dispatcher: fans an Alert out to its delivery channels.

For each channel enabled in the user's preferences at dispatch time:
- socket: pushed immediately to the user's room through the ConnectionGateway.
  The job is recorded as SENT when at least one connection received it and
  FAILED otherwise. Socket jobs are never retried.
- email: persisted as PENDING. The EmailDeliveryWorker picks it up, so the
  job survives a crash of this process.

Channels are independent: a failure on one never prevents the other.

Alerts reach the dispatcher through an in-memory queue, so the alerts table
doubles as an outbox: the email job is inserted in the same transaction that
sets Alert.dispatched_at through a conditional UPDATE. An alert the queue
rejected, or that was still queued when the process stopped, keeps a NULL
dispatched_at and is dispatched by the sweep that runs on start and every
dispatch_sweep_seconds. The conditional UPDATE makes each alert dispatch
once, however many sweeps and queues see it.

Database work runs in worker threads; only the push runs on the event loop.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from alert_engine.config.settings import AppSettings, get_settings
from alert_engine.models import Alert, DeliveryChannel, DeliveryJob, DeliveryStatus, User
from alert_engine.services.exceptions import NotFoundError
from alert_engine.services.preference_service import PreferenceService
from alert_engine.utils.connection_gateway import ConnectionGateway, user_room
from alert_engine.utils.logging_config import get_logger


logger = get_logger("delivery")


def socket_message(alert: Alert) -> Dict[str, Any]:
    """Server message pushed to live connections."""
    return {"op": "alert", "alert": alert.to_payload()}


def email_payload(alert: Alert, user: User) -> Dict[str, Any]:
    """Everything the email worker needs, frozen at dispatch time."""
    data = dict(alert.data or {})
    data.update({
        "title": alert.title,
        "body": alert.body,
        "first_name": user.first_name,
        "alert_id": alert.guid,
    })
    return {"to": user.email, "template": alert.template, "data": data}


@dataclass
class DispatchClaim:
    """An alert this dispatcher marked dispatched, and what remains to do."""
    alert: Alert
    socket: bool
    email_job: Optional[DeliveryJob]


class DeliveryDispatcher:
    """
    Creates one DeliveryJob per enabled channel for each Alert.

    dispatch() delivers synchronously from the caller's point of view;
    submit() hands the alert to a background task so evaluation never waits
    on a slow push.

    Usage:
        >>> dispatcher = DeliveryDispatcher(SessionLocal, gateway)
        >>> await dispatcher.start()
        >>> dispatcher.submit(alert)
        >>> jobs = await dispatcher.dispatch(alert)
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: ConnectionGateway,
        settings: Optional[AppSettings] = None,
        queue_size: int = 1000,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.clock = clock
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None

    # ========================================================================
    # Dispatch
    # ========================================================================

    async def dispatch(self, alert: Alert) -> List[DeliveryJob]:
        """
        Deliver an alert on every channel the user currently has enabled.

        Args:
            alert: Persisted alert (may be detached from its session)

        Returns:
            The created delivery jobs, detached and fully loaded. Empty when
            the alert was already dispatched.
        """
        return await self.dispatch_alert_id(alert.id)

    async def dispatch_alert_id(self, alert_id: int) -> List[DeliveryJob]:
        claim = await asyncio.to_thread(self._claim, alert_id)
        if claim is None:
            return []

        jobs: List[DeliveryJob] = []
        if claim.socket:
            try:
                jobs.append(await self._dispatch_socket(claim.alert))
            except Exception as e:
                logger.error(
                    "Channel dispatch failed",
                    extra={"alert": claim.alert.guid, "channel": "socket", "error": str(e)},
                )
        if claim.email_job is not None:
            jobs.append(claim.email_job)
        return jobs

    def _claim(self, alert_id: int) -> Optional[DispatchClaim]:
        """
        Mark an alert dispatched and persist its email job, in one transaction.

        Runs in a worker thread. Returns None when another dispatch (the
        queue or a sweep, in this or another process) got there first.
        """
        with self.session_factory() as db:
            alert = db.get(Alert, alert_id)
            if alert is None:
                raise NotFoundError("Alert", alert_id)
            if alert.dispatched_at is not None:
                logger.debug("Alert already dispatched", extra={"alert": alert.guid})
                return None

            prefs = PreferenceService(db).get(alert.user_id)
            channels = PreferenceService.enabled_channels(prefs)

            email_job = None
            if DeliveryChannel.EMAIL in channels:
                try:
                    email_job = self._dispatch_email(db, alert)
                except Exception as e:
                    db.rollback()
                    logger.error(
                        "Channel dispatch failed",
                        extra={"alert": alert.guid, "channel": "email", "error": str(e)},
                    )

            if not self._mark_dispatched(db, alert_id):
                db.rollback()
                logger.debug("Alert claimed by another dispatch", extra={"alert_id": alert_id})
                return None
            db.commit()

            db.refresh(alert)
            if email_job is not None:
                db.refresh(email_job)
                logger.info(
                    "Email delivery queued",
                    extra={"alert": alert.guid, "job": email_job.guid},
                )
            if not channels:
                logger.info(
                    "No channel enabled at dispatch time",
                    extra={"alert": alert.guid, "user_id": alert.user_id},
                )
            return DispatchClaim(
                alert=alert,
                socket=DeliveryChannel.SOCKET in channels,
                email_job=email_job,
            )

    def _mark_dispatched(self, db: Session, alert_id: int) -> bool:
        result = db.execute(
            update(Alert)
            .where(Alert.id == alert_id, Alert.dispatched_at.is_(None))
            .values(dispatched_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _dispatch_email(self, db: Session, alert: Alert) -> DeliveryJob:
        """Stage the PENDING email job; the caller commits it with the claim."""
        user = db.get(User, alert.user_id)
        if user is None:
            raise NotFoundError("User", alert.user_id)

        job = DeliveryJob(
            alert_id=alert.id,
            channel=DeliveryChannel.EMAIL,
            payload=email_payload(alert, user),
            status=DeliveryStatus.PENDING,
            resource_id=alert.budget_id,
            max_attempts=self.settings.email_max_attempts,
            attempts=0,
            next_attempt_at=self.clock(),
        )
        db.add(job)
        db.flush()
        return job

    async def _dispatch_socket(self, alert: Alert) -> DeliveryJob:
        room = user_room(alert.user_id)
        error = None
        try:
            delivered = await self.gateway.push(room, socket_message(alert))
        except Exception as e:
            delivered = 0
            error = f"Push failed: {e}"
        return await asyncio.to_thread(self._record_socket, alert, delivered, error)

    def _record_socket(self, alert: Alert, delivered: int, error: Optional[str]) -> DeliveryJob:
        now = self.clock()
        job = DeliveryJob(
            alert_id=alert.id,
            channel=DeliveryChannel.SOCKET,
            payload={"room": user_room(alert.user_id), "delivered": delivered},
            resource_id=alert.budget_id,
            max_attempts=1,
            attempts=1,
            next_attempt_at=now,
            completed_at=now,
        )
        if delivered > 0:
            job.status = DeliveryStatus.SENT
        else:
            job.status = DeliveryStatus.FAILED
            job.last_error = error or "No live connection"

        with self.session_factory() as db:
            db.add(job)
            db.commit()
            db.refresh(job)

        logger.info(
            "Socket delivery",
            extra={
                "alert": alert.guid,
                "job": job.guid,
                "status": job.status.value,
                "delivered": delivered,
            },
        )
        return job

    # ========================================================================
    # Recovery sweep
    # ========================================================================

    def undispatched_alert_ids(self, limit: int = 500) -> List[int]:
        with self.session_factory() as db:
            rows = (
                db.query(Alert.id)
                .filter(Alert.dispatched_at.is_(None))
                .order_by(Alert.id.asc())
                .limit(limit)
                .all()
            )
            return [row.id for row in rows]

    async def sweep(self) -> int:
        """
        Dispatch every alert that was composed but never dispatched.

        Covers alerts the queue rejected and alerts still queued when a
        previous process stopped.

        Returns:
            Number of alerts found undispatched
        """
        alert_ids = await asyncio.to_thread(self.undispatched_alert_ids)
        for alert_id in alert_ids:
            try:
                await self.dispatch_alert_id(alert_id)
            except Exception as e:
                logger.error(
                    "Sweep dispatch failed",
                    extra={"alert_id": alert_id, "error": str(e)},
                )
        if alert_ids:
            logger.info("Dispatched alerts found by sweep", extra={"count": len(alert_ids)})
        return len(alert_ids)

    async def _sweep_logged(self) -> None:
        try:
            await self.sweep()
        except Exception as e:
            logger.error(f"Dispatch sweep failed: {e}")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.dispatch_sweep_seconds)
            await self._sweep_logged()

    # ========================================================================
    # Background queue
    # ========================================================================

    def submit(self, alert: Alert) -> bool:
        """
        Enqueue an alert for background dispatch without waiting.

        Returns:
            False if the queue is full. The alert stays undispatched in the
            database and the next sweep delivers it.
        """
        try:
            self._queue.put_nowait(alert.id)
        except asyncio.QueueFull:
            logger.warning(
                "Dispatch queue full, alert left for the sweep",
                extra={"alert_id": alert.id, "queue_size": self._queue.maxsize},
            )
            return False
        return True

    async def start(self) -> None:
        """Dispatch whatever a previous process left behind, then start draining."""
        if self._task is None:
            await self._sweep_logged()
            self._task = asyncio.create_task(self._drain())
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        tasks = [task for task in (self._task, self._sweep_task) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._sweep_task = None

    async def join(self) -> None:
        """Wait until every submitted alert has been dispatched."""
        await self._queue.join()

    async def _drain(self) -> None:
        while True:
            alert_id = await self._queue.get()
            try:
                await self.dispatch_alert_id(alert_id)
            except Exception as e:
                logger.error(
                    "Background dispatch failed",
                    extra={"alert_id": alert_id, "error": str(e)},
                )
            finally:
                self._queue.task_done()
