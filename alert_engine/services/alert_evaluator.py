"""
Alert evaluator: decides whether a budget state change is newly notifiable.

Evaluation flow for one AlertCondition:
1. Load the user's preferences
2. Resolve the tiers the condition crossed; bail out without touching the
   ledger when no channel or no configured tier applies
3. Acquire one ledger slot per tier (lost races produce nothing)
4. Defer non-bypassing kinds during quiet hours (catch-up scheduled at the
   end of the window)
5. Compose and persist one Alert per remaining tier, ascending severity

Tier resolution:
- Thresholds below 100 are warning tiers, 100 is the exceeded tier
- A budget condition notifies the highest crossed warning tier; lower crossed
  warning tiers are recorded in the ledger without an alert so they cannot
  fire later in the same period
- A budget condition at or above 100% also notifies the exceeded tier
- A category condition notifies its single exceeded tier
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Protocol, Set

from sqlalchemy.orm import Session

from alert_engine.config.settings import AppSettings, get_settings
from alert_engine.models import Alert, AlertKind, DeferredEvaluation
from alert_engine.schemas.conditions import AlertCondition
from alert_engine.schemas.preferences import NotificationPreferencesResponse
from alert_engine.services.preference_service import PreferenceService
from alert_engine.services.suppression_ledger import SuppressionLedger, compute_dedup_key
from alert_engine.utils.logging_config import get_logger


logger = get_logger("services")


EXCEEDED_TIER = 100


class CatchUpScheduler(Protocol):
    """Runs a deferred evaluation at a later time."""

    def schedule_catch_up(
        self, run_at: datetime, condition: AlertCondition, tiers: List[int]
    ) -> None:
        ...


@dataclass(frozen=True)
class TierDecision:
    """One tier a condition crossed, and whether it produces an alert."""
    kind: AlertKind
    tier: int
    notify: bool


@dataclass(frozen=True)
class QuietHoursPolicy:
    """
    Which alert kinds are delivered even during quiet hours.

    The default (only BUDGET_EXCEEDED bypasses) comes from settings and can be
    changed with QUIET_HOURS_BYPASS_KINDS.
    """
    bypass_kinds: frozenset = frozenset({AlertKind.BUDGET_EXCEEDED})

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "QuietHoursPolicy":
        kinds = {k for k in AlertKind if k.value in settings.quiet_hours_bypass_set}
        return cls(bypass_kinds=frozenset(kinds))

    def bypasses(self, kind: AlertKind) -> bool:
        return kind in self.bypass_kinds


def resolve_tiers(condition: AlertCondition, thresholds: Iterable[int]) -> List[TierDecision]:
    """
    Resolve the tiers a condition crossed, ascending severity.

    Args:
        condition: The condition being evaluated
        thresholds: The user's configured tiers

    Returns:
        Tier decisions; empty when no configured tier was crossed
    """
    thresholds = sorted(thresholds)
    crossed = [t for t in thresholds if condition.utilization_percentage >= t]

    if condition.is_category:
        if EXCEEDED_TIER in crossed:
            return [TierDecision(AlertKind.CATEGORY_OVERSPEND, EXCEEDED_TIER, True)]
        return []

    decisions = []
    warning_tiers = [t for t in crossed if t < EXCEEDED_TIER]
    for tier in warning_tiers:
        decisions.append(
            TierDecision(AlertKind.BUDGET_WARNING, tier, tier == warning_tiers[-1])
        )
    if EXCEEDED_TIER in crossed:
        decisions.append(TierDecision(AlertKind.BUDGET_EXCEEDED, EXCEEDED_TIER, True))
    return decisions


class AlertEvaluator:
    """
    Turns AlertConditions into Alerts, exactly once per dedup key.

    Safe to call concurrently from many callers as long as each caller uses
    its own session; cross-caller exclusion lives in the SuppressionLedger.

    Usage:
        >>> evaluator = AlertEvaluator(db, ledger, scheduler)
        >>> alerts = evaluator.evaluate(condition)
        >>> [a.kind for a in alerts]
        [<AlertKind.BUDGET_WARNING: 'budget_warning'>, <AlertKind.BUDGET_EXCEEDED: 'budget_exceeded'>]
    """

    def __init__(
        self,
        db: Session,
        ledger: SuppressionLedger,
        scheduler: Optional[CatchUpScheduler] = None,
        settings: Optional[AppSettings] = None,
        policy: Optional[QuietHoursPolicy] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize the evaluator.

        Args:
            db: SQLAlchemy session used for preferences and alert rows
            ledger: Shared suppression ledger
            scheduler: Collaborator running catch-up evaluations after quiet hours
            settings: Application settings (TTLs, quiet-hours policy)
            policy: Quiet-hours bypass policy (default from settings)
            clock: Returns the current naive-UTC time
        """
        self.db = db
        self.ledger = ledger
        self.scheduler = scheduler
        self.settings = settings or get_settings()
        self.policy = policy or QuietHoursPolicy.from_settings(self.settings)
        self.clock = clock
        self.preferences = PreferenceService(db)

    def ttl_for(self, kind: AlertKind) -> timedelta:
        """Ledger TTL for an alert kind."""
        if kind == AlertKind.BUDGET_WARNING:
            return timedelta(hours=self.settings.suppression_ttl_warning_hours)
        return timedelta(hours=self.settings.suppression_ttl_exceeded_hours)

    @staticmethod
    def dedup_key_for(condition: AlertCondition, kind: AlertKind, tier: int) -> str:
        return compute_dedup_key(
            kind.value,
            condition.budget_id,
            condition.category_id,
            condition.period_start,
            condition.period_end,
            tier,
        )

    def evaluate(self, condition: AlertCondition) -> List[Alert]:
        """
        Evaluate a condition.

        Args:
            condition: Budget state change

        Returns:
            Newly composed alerts, ascending severity. Empty when the
            condition is suppressed, disabled, or deferred.

        Raises:
            NotFoundError: If the user does not exist
            TransientInfraError: If the ledger is unreachable
        """
        prefs = self.preferences.get(condition.user_id)

        if not self.preferences.enabled_channels(prefs):
            logger.debug(
                "All channels disabled, skipping condition",
                extra={"user_id": condition.user_id, "budget_id": condition.budget_id},
            )
            return []

        decisions = resolve_tiers(condition, prefs.thresholds)
        if not any(d.notify for d in decisions):
            logger.debug(
                "No configured tier crossed",
                extra={
                    "user_id": condition.user_id,
                    "budget_id": condition.budget_id,
                    "utilization": condition.utilization_percentage,
                },
            )
            return []

        won: List[TierDecision] = []
        for decision in decisions:
            key = self.dedup_key_for(condition, decision.kind, decision.tier)
            if self.ledger.try_acquire(key, self.ttl_for(decision.kind)) and decision.notify:
                won.append(decision)

        if not won:
            logger.debug(
                "Condition suppressed by ledger",
                extra={"user_id": condition.user_id, "budget_id": condition.budget_id},
            )
            return []

        now = self.clock()
        immediate = won
        if self.preferences.in_quiet_hours(prefs, now):
            immediate = [d for d in won if self.policy.bypasses(d.kind)]
            deferred = [d.tier for d in won if not self.policy.bypasses(d.kind)]
            if deferred:
                self._defer(condition, deferred, prefs, now)

        return self._compose_all(condition, immediate)

    def evaluate_deferred(
        self,
        condition: AlertCondition,
        tiers: List[int],
        deferral: Optional[DeferredEvaluation] = None,
    ) -> List[Alert]:
        """
        Catch-up evaluation run after quiet hours end.

        The deferred tiers already own their ledger slots, so they are not
        acquired again. Preferences are re-read: a user who disabled every
        channel meanwhile receives nothing.

        Args:
            condition: The original condition
            tiers: Tiers deferred by evaluate()
            deferral: The stored catch-up being run. It is deleted in the
                same transaction as the composed alerts, or moved to the new
                window end if quiet hours still apply.

        Returns:
            Composed alerts (may be empty)
        """
        prefs = self.preferences.get(condition.user_id)
        if not self.preferences.enabled_channels(prefs):
            self._settle(deferral)
            return []

        now = self.clock()
        if self.preferences.in_quiet_hours(prefs, now):
            # Window moved or was extended since the deferral
            if deferral is None:
                self._defer(condition, tiers, prefs, now)
            else:
                deferral.run_at = self.preferences.quiet_hours_end(prefs, now)
                deferral.lease_owner = None
                deferral.lease_expires_at = None
                self.db.commit()
                logger.info(
                    "Catch-up postponed, still in quiet hours",
                    extra={"user_id": condition.user_id, "run_at": deferral.run_at.isoformat()},
                )
            return []

        wanted: Set[int] = set(tiers)
        decisions = [
            d for d in resolve_tiers(condition, prefs.thresholds)
            if d.notify and d.tier in wanted
        ]
        if not decisions:
            self._settle(deferral)
            return []
        if deferral is not None:
            self.db.delete(deferral)
        return self._compose_all(condition, decisions)

    def _settle(self, deferral: Optional[DeferredEvaluation]) -> None:
        if deferral is not None:
            self.db.delete(deferral)
            self.db.commit()

    def _defer(
        self,
        condition: AlertCondition,
        tiers: List[int],
        prefs: NotificationPreferencesResponse,
        now: datetime,
    ) -> None:
        run_at = self.preferences.quiet_hours_end(prefs, now)
        if self.scheduler is None:
            logger.warning(
                "Quiet hours deferral dropped: no scheduler configured",
                extra={"user_id": condition.user_id, "tiers": tiers},
            )
            return
        self.scheduler.schedule_catch_up(run_at, condition, tiers)
        logger.info(
            "Deferred alert until quiet hours end",
            extra={
                "user_id": condition.user_id,
                "budget_id": condition.budget_id,
                "tiers": tiers,
                "run_at": run_at.isoformat(),
            },
        )

    def _compose_all(
        self, condition: AlertCondition, decisions: List[TierDecision]
    ) -> List[Alert]:
        if not decisions:
            return []
        decisions = sorted(decisions, key=lambda d: (d.kind.severity, d.tier))
        alerts = [self.compose(condition, d.kind, d.tier) for d in decisions]
        self.db.add_all(alerts)
        self.db.commit()
        for alert in alerts:
            self.db.refresh(alert)
            logger.info(
                "Composed alert",
                extra={
                    "guid": alert.guid,
                    "kind": alert.kind.value,
                    "tier": alert.tier,
                    "user_id": alert.user_id,
                },
            )
        return alerts

    def compose(self, condition: AlertCondition, kind: AlertKind, tier: int) -> Alert:
        """
        Build (but do not persist) the Alert for one tier.

        Every AlertKind is handled explicitly; adding a kind without a
        rendering branch raises.
        """
        budget_name = condition.budget_name or condition.budget_id
        category_name = condition.category_name or condition.category_id
        utilization = condition.utilization_percentage
        currency = condition.currency

        if kind == AlertKind.BUDGET_EXCEEDED:
            title = f"Budget Exceeded Alert - {budget_name}"
            over = condition.over_amount or 0.0
            body = (
                f"You have spent {utilization:.1f}% of your {budget_name} budget, "
                f"{currency}{over:,.2f} over the limit."
            )
        elif kind == AlertKind.BUDGET_WARNING:
            title = f"Budget Warning Alert - {budget_name}"
            body = (
                f"You have used {utilization:.1f}% of your {budget_name} budget "
                f"and crossed your {tier}% alert threshold."
            )
        elif kind == AlertKind.CATEGORY_OVERSPEND:
            title = f"Category Overspend Alert - {category_name}"
            over = condition.over_amount or 0.0
            body = (
                f"Spending in {category_name} is at {utilization:.1f}% of its "
                f"allocation in {budget_name}, {currency}{over:,.2f} over."
            )
        else:
            raise ValueError(f"Unhandled alert kind: {kind}")

        data = {
            "budget_id": condition.budget_id,
            "budget_name": budget_name,
            "category_id": condition.category_id,
            "category_name": category_name,
            "utilization_percentage": round(utilization, 1),
            "over_amount": condition.over_amount,
            "currency": currency,
            "tier": tier,
            "period_start": condition.period_start.isoformat(),
            "period_end": condition.period_end.isoformat(),
        }

        return Alert(
            user_id=condition.user_id,
            kind=kind,
            tier=tier,
            dedup_key=self.dedup_key_for(condition, kind, tier),
            budget_id=condition.budget_id,
            category_id=condition.category_id,
            title=title[:200],
            body=body[:500],
            template=kind.template,
            data=data,
        )
