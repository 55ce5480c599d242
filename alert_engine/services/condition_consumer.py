"""
Condition consumer: the engine's inbound side.

The Budget subsystem hands AlertConditions (or raw inbound events) to the
consumer and returns immediately. A bounded asyncio queue decouples the
producer from evaluation; N worker tasks drain it. Each evaluation runs in a
worker thread with its own database session, and every failure is logged
without reaching the producer.

Alerts produced by an evaluation are handed to the DeliveryDispatcher.

Quiet-hours catch-ups are stored by DatabaseCatchUpScheduler. The consumer
runs the due ones on start and then every catch_up_poll_seconds, through the
same evaluate-then-dispatch path, so a restart during quiet hours loses none.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from alert_engine.config.settings import AppSettings, get_settings
from alert_engine.models import Alert, DeferredEvaluation
from alert_engine.schemas.conditions import AlertCondition, InboundEvent
from alert_engine.services.alert_evaluator import AlertEvaluator
from alert_engine.services.catch_up_scheduler import DatabaseCatchUpScheduler
from alert_engine.services.delivery_dispatcher import DeliveryDispatcher
from alert_engine.services.exceptions import ValidationError
from alert_engine.services.suppression_ledger import SuppressionLedger
from alert_engine.utils.logging_config import get_logger


logger = get_logger("services")


def parse_event(payload: Dict[str, Any]) -> AlertCondition:
    """
    Parse an inbound Budget subsystem event.

    Raises:
        ValidationError: If the payload is malformed
    """
    try:
        return InboundEvent.model_validate(payload).to_condition()
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ValidationError(f"Invalid inbound event: {first.get('msg', e)}", field=field)


class ConditionConsumer:
    """
    Bounded queue of conditions drained by worker tasks.

    Usage:
        >>> consumer = ConditionConsumer(SessionLocal, ledger, dispatcher)
        >>> await consumer.start()
        >>> consumer.submit(condition)
        >>> consumer.submit_event({"type": "budget.threshold_crossed", ...})
        >>> await consumer.stop()
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        ledger: SuppressionLedger,
        dispatcher: Optional[DeliveryDispatcher] = None,
        settings: Optional[AppSettings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self.clock = clock
        self.scheduler = DatabaseCatchUpScheduler(session_factory, settings=self.settings, clock=clock)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.settings.consumer_queue_size)
        self._workers: List[asyncio.Task] = []
        self._catch_up_task: Optional[asyncio.Task] = None

    # ========================================================================
    # Producer side
    # ========================================================================

    def submit(self, condition: AlertCondition) -> bool:
        """
        Enqueue a condition without waiting.

        Returns:
            False if the queue is full (the condition is dropped and logged)
        """
        try:
            self._queue.put_nowait(condition)
        except asyncio.QueueFull:
            logger.error(
                "Condition queue full, dropping condition",
                extra={"user_id": condition.user_id, "budget_id": condition.budget_id},
            )
            return False
        return True

    def submit_event(self, payload: Dict[str, Any]) -> bool:
        """
        Parse an inbound event and enqueue the resulting condition.

        Raises:
            ValidationError: If the event is malformed
        """
        return self.submit(parse_event(payload))

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        for index in range(self.settings.consumer_workers):
            self._workers.append(asyncio.create_task(self._worker(index)))
        # Catch-ups that came due while no consumer was running
        await self._run_due_logged()
        self._catch_up_task = asyncio.create_task(self._catch_up_loop())
        logger.info(
            "Condition consumer started",
            extra={"workers": self.settings.consumer_workers},
        )

    async def stop(self) -> None:
        tasks = list(self._workers)
        if self._catch_up_task is not None:
            tasks.append(self._catch_up_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._catch_up_task = None

    async def join(self) -> None:
        """Wait until every queued condition has been evaluated."""
        await self._queue.join()

    # ========================================================================
    # Evaluation
    # ========================================================================

    def _evaluator(self, db: Session) -> AlertEvaluator:
        return AlertEvaluator(
            db, self.ledger, scheduler=self.scheduler, settings=self.settings, clock=self.clock
        )

    def evaluate(self, condition: AlertCondition) -> List[Alert]:
        """Evaluate one condition in a fresh session (blocking)."""
        with self.session_factory() as db:
            return self._evaluator(db).evaluate(condition)

    def run_deferral(self, deferral_id: int) -> List[Alert]:
        """Run one claimed catch-up in a fresh session (blocking)."""
        with self.session_factory() as db:
            deferral = db.get(DeferredEvaluation, deferral_id)
            if deferral is None or not self.scheduler.holds_lease(deferral):
                logger.warning(
                    "Catch-up lease lost, skipping",
                    extra={"deferral_id": deferral_id, "owner": self.scheduler.owner},
                )
                return []
            condition = AlertCondition.model_validate(deferral.condition)
            return self._evaluator(db).evaluate_deferred(
                condition, list(deferral.tiers), deferral=deferral
            )

    def _hand_off(self, alerts: List[Alert]) -> None:
        if self.dispatcher is None:
            return
        for alert in alerts:
            self.dispatcher.submit(alert)

    async def _worker(self, index: int) -> None:
        while True:
            condition = await self._queue.get()
            try:
                alerts = await asyncio.to_thread(self.evaluate, condition)
                self._hand_off(alerts)
            except Exception as e:
                logger.error(
                    f"Condition evaluation failed: {e}",
                    extra={
                        "worker": index,
                        "user_id": condition.user_id,
                        "budget_id": condition.budget_id,
                        "kind": condition.kind.value,
                    },
                )
            finally:
                self._queue.task_done()

    # ========================================================================
    # Quiet-hours catch-ups
    # ========================================================================

    async def run_due_catch_ups(self) -> int:
        """
        Claim and run every stored catch-up whose time has come.

        Returns:
            Number of catch-ups claimed
        """
        deferral_ids = await asyncio.to_thread(self.scheduler.claim_due)
        for deferral_id in deferral_ids:
            try:
                alerts = await asyncio.to_thread(self.run_deferral, deferral_id)
                self._hand_off(alerts)
            except Exception as e:
                # The lease expires and another poll retries it
                logger.error(
                    f"Catch-up evaluation failed: {e}",
                    extra={"deferral_id": deferral_id},
                )
        return len(deferral_ids)

    async def _run_due_logged(self) -> None:
        try:
            await self.run_due_catch_ups()
        except Exception as e:
            logger.error(f"Catch-up poll failed: {e}")

    async def _catch_up_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.catch_up_poll_seconds)
            await self._run_due_logged()
