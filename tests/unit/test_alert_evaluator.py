"""
Unit tests for the alert evaluator.

Tests tier resolution, dedup idempotence (including concurrent callers),
preference gating, quiet-hours deferral and alert composition.
"""

import threading
from datetime import datetime, timedelta

import pytest

from alert_engine.models import Alert, AlertKind, SuppressionRecord, User
from alert_engine.services.alert_evaluator import (
    AlertEvaluator,
    QuietHoursPolicy,
    resolve_tiers,
)
from alert_engine.services.exceptions import NotFoundError
from alert_engine.services.suppression_ledger import SuppressionLedger


class RecordingScheduler:
    """CatchUpScheduler that records instead of scheduling."""

    def __init__(self):
        self.scheduled = []

    def schedule_catch_up(self, run_at, condition, tiers):
        self.scheduled.append((run_at, condition, list(tiers)))


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def evaluator(test_db_session, ledger, scheduler, test_settings, clock):
    return AlertEvaluator(
        test_db_session, ledger, scheduler=scheduler, settings=test_settings, clock=clock
    )


class TestResolveTiers:
    """Tests for resolve_tiers()."""

    def test_single_warning_tier(self, make_condition):
        decisions = resolve_tiers(make_condition(1, 85), [80, 90, 100])
        assert [(d.kind, d.tier, d.notify) for d in decisions] == [
            (AlertKind.BUDGET_WARNING, 80, True),
        ]

    def test_jump_past_several_tiers(self, make_condition):
        """70% -> 135%: lower warning tier recorded silently, 90 and 100 notify."""
        decisions = resolve_tiers(make_condition(1, 135), [80, 90, 100])
        assert [(d.kind, d.tier, d.notify) for d in decisions] == [
            (AlertKind.BUDGET_WARNING, 80, False),
            (AlertKind.BUDGET_WARNING, 90, True),
            (AlertKind.BUDGET_EXCEEDED, 100, True),
        ]

    def test_below_every_tier(self, make_condition):
        assert resolve_tiers(make_condition(1, 50), [80, 90, 100]) == []

    def test_exceeded_not_configured(self, make_condition):
        """Without a 100 tier an overspent budget only warns."""
        decisions = resolve_tiers(make_condition(1, 120), [75])
        assert [(d.kind, d.tier) for d in decisions] == [(AlertKind.BUDGET_WARNING, 75)]

    def test_category_overspend(self, make_condition):
        decisions = resolve_tiers(make_condition(1, 110, category_id="cat_dining"), [80, 90, 100])
        assert [(d.kind, d.tier, d.notify) for d in decisions] == [
            (AlertKind.CATEGORY_OVERSPEND, 100, True),
        ]

    def test_category_without_exceeded_tier(self, make_condition):
        assert resolve_tiers(make_condition(1, 110, category_id="cat_dining"), [80, 90]) == []


class TestEvaluate:
    """Tests for AlertEvaluator.evaluate()."""

    def test_scenario_a_exceeded_budget(self, evaluator, sample_user, make_condition, test_db_session):
        """70% -> 135% with tiers [80, 90, 100] yields the 90% and 100% alerts."""
        user = sample_user()
        alerts = evaluator.evaluate(make_condition(user.id, 135, over_amount=175.0))

        assert [(a.kind, a.tier) for a in alerts] == [
            (AlertKind.BUDGET_WARNING, 90),
            (AlertKind.BUDGET_EXCEEDED, 100),
        ]
        assert len({a.dedup_key for a in alerts}) == 2
        # 80, 90 and 100 each hold their own ledger slot
        assert test_db_session.query(SuppressionRecord).count() == 3
        assert test_db_session.query(Alert).count() == 2

    def test_scenario_c_repeated_warning_suppressed(
        self, evaluator, sample_user, make_condition, clock
    ):
        """Two identical warnings a minute apart: the second returns nothing."""
        user = sample_user()
        condition = make_condition(user.id, 82)

        first = evaluator.evaluate(condition)
        clock.advance(minutes=1)
        second = evaluator.evaluate(condition)

        assert len(first) == 1
        assert second == []

    def test_dedup_idempotence(self, evaluator, sample_user, make_condition):
        user = sample_user()
        condition = make_condition(user.id, 91)
        results = [evaluator.evaluate(condition) for _ in range(5)]

        assert sum(1 for r in results if r) == 1

    def test_lower_tier_cannot_fire_after_jump(self, evaluator, sample_user, make_condition):
        """After 70% -> 95%, a later 85% reading does not produce an 80% alert."""
        user = sample_user()
        assert [a.tier for a in evaluator.evaluate(make_condition(user.id, 95))] == [90]
        assert evaluator.evaluate(make_condition(user.id, 85)) == []

    def test_fires_again_after_ttl(self, evaluator, sample_user, make_condition, clock):
        user = sample_user()
        condition = make_condition(user.id, 82)
        assert evaluator.evaluate(condition)
        clock.advance(hours=12)
        assert len(evaluator.evaluate(condition)) == 1

    def test_new_period_is_a_new_key(self, evaluator, sample_user, make_condition):
        user = sample_user()
        assert evaluator.evaluate(make_condition(user.id, 82))
        november = make_condition(
            user.id, 82,
            period_start=datetime(2026, 11, 1),
            period_end=datetime(2026, 11, 30, 23, 59, 59),
        )
        assert len(evaluator.evaluate(november)) == 1

    def test_all_channels_disabled_skips_ledger(
        self, evaluator, sample_user, set_preferences, make_condition, test_db_session
    ):
        """Disabled channels return nothing and leave the ledger untouched."""
        user = sample_user()
        set_preferences(user.id, channel_enabled={"socket": False, "email": False})

        assert evaluator.evaluate(make_condition(user.id, 135)) == []
        assert test_db_session.query(SuppressionRecord).count() == 0

    def test_tier_not_configured_skips_ledger(
        self, evaluator, sample_user, set_preferences, make_condition, test_db_session
    ):
        user = sample_user()
        set_preferences(user.id, thresholds=[95, 100])

        assert evaluator.evaluate(make_condition(user.id, 90)) == []
        assert test_db_session.query(SuppressionRecord).count() == 0

    def test_unknown_user(self, evaluator, make_condition):
        with pytest.raises(NotFoundError):
            evaluator.evaluate(make_condition(404, 90))

    def test_category_overspend_alert(self, evaluator, sample_user, make_condition):
        user = sample_user()
        alerts = evaluator.evaluate(
            make_condition(user.id, 130, category_id="cat_dining", over_amount=60.0)
        )

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.kind == AlertKind.CATEGORY_OVERSPEND
        assert alert.title == "Category Overspend Alert - Dining"
        assert alert.template == "category-overspend"
        assert alert.data["category_id"] == "cat_dining"

    def test_category_and_budget_keys_are_separate(self, evaluator, sample_user, make_condition):
        """A category overspend does not consume the budget's exceeded slot."""
        user = sample_user()
        assert evaluator.evaluate(make_condition(user.id, 130, category_id="cat_dining"))
        kinds = [a.kind for a in evaluator.evaluate(make_condition(user.id, 101))]
        assert AlertKind.BUDGET_EXCEEDED in kinds


class TestConcurrentEvaluate:
    """Dedup idempotence with concurrent callers, each with its own session."""

    def test_single_tier_single_winner(self, file_session_factory, test_settings, make_condition):
        with file_session_factory() as db:
            user = User(email="racer@example.com", first_name="Racer")
            db.add(user)
            db.commit()
            user_id = user.id

        ledger = SuppressionLedger(file_session_factory)
        condition = make_condition(user_id, 85)
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            with file_session_factory() as db:
                alerts = AlertEvaluator(db, ledger, settings=test_settings).evaluate(condition)
                with lock:
                    results.append(len(alerts))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == [0] * 7 + [1]
        with file_session_factory() as db:
            assert db.query(Alert).count() == 1

    def test_multi_tier_each_tier_once(self, file_session_factory, test_settings, make_condition):
        """Every (kind, tier) is composed exactly once across all callers."""
        with file_session_factory() as db:
            user = User(email="racer@example.com")
            db.add(user)
            db.commit()
            user_id = user.id

        ledger = SuppressionLedger(file_session_factory)
        condition = make_condition(user_id, 135)
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            with file_session_factory() as db:
                AlertEvaluator(db, ledger, settings=test_settings).evaluate(condition)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        with file_session_factory() as db:
            composed = sorted((a.kind.value, a.tier) for a in db.query(Alert).all())
        assert composed == [("budget_exceeded", 100), ("budget_warning", 90)]


class TestQuietHours:
    """Tests for quiet-hours deferral."""

    @pytest.fixture
    def quiet_user(self, sample_user, set_preferences):
        user = sample_user()
        set_preferences(user.id, quiet_hours={"start": "22:00", "end": "07:00"})
        return user

    def test_warning_deferred(self, evaluator, quiet_user, make_condition, scheduler, clock):
        """A warning during quiet hours produces nothing now and schedules a catch-up."""
        clock.now = datetime(2026, 10, 15, 23, 0)
        condition = make_condition(quiet_user.id, 91)

        assert evaluator.evaluate(condition) == []
        assert len(scheduler.scheduled) == 1
        run_at, scheduled_condition, tiers = scheduler.scheduled[0]
        assert run_at == datetime(2026, 10, 16, 7, 0)
        assert scheduled_condition == condition
        assert tiers == [90]

    def test_deferred_tier_keeps_its_slot(self, evaluator, quiet_user, make_condition, clock):
        """A repeat during the same quiet window is suppressed, not re-deferred."""
        clock.now = datetime(2026, 10, 15, 23, 0)
        condition = make_condition(quiet_user.id, 91)
        evaluator.evaluate(condition)
        clock.advance(minutes=30)

        assert evaluator.evaluate(condition) == []
        assert len(evaluator.scheduler.scheduled) == 1

    def test_exceeded_bypasses_quiet_hours(self, evaluator, quiet_user, make_condition, scheduler, clock):
        """BUDGET_EXCEEDED is delivered immediately; the warning is deferred."""
        clock.now = datetime(2026, 10, 15, 23, 0)
        alerts = evaluator.evaluate(make_condition(quiet_user.id, 135))

        assert [(a.kind, a.tier) for a in alerts] == [(AlertKind.BUDGET_EXCEEDED, 100)]
        assert [tiers for _, _, tiers in scheduler.scheduled] == [[90]]

    def test_bypass_policy_configurable(
        self, test_db_session, ledger, scheduler, test_settings, quiet_user, make_condition, clock
    ):
        """With an empty bypass set even BUDGET_EXCEEDED waits."""
        clock.now = datetime(2026, 10, 15, 23, 0)
        evaluator = AlertEvaluator(
            test_db_session, ledger, scheduler=scheduler, settings=test_settings,
            policy=QuietHoursPolicy(bypass_kinds=frozenset()), clock=clock,
        )

        assert evaluator.evaluate(make_condition(quiet_user.id, 135)) == []
        assert scheduler.scheduled[0][2] == [90, 100]

    def test_policy_from_settings(self, test_settings):
        settings = test_settings.model_copy(
            update={"quiet_hours_bypass_kinds": "budget_exceeded, category_overspend"}
        )
        policy = QuietHoursPolicy.from_settings(settings)
        assert policy.bypasses(AlertKind.CATEGORY_OVERSPEND)
        assert not policy.bypasses(AlertKind.BUDGET_WARNING)

    def test_outside_quiet_hours_immediate(self, evaluator, quiet_user, make_condition, scheduler):
        assert len(evaluator.evaluate(make_condition(quiet_user.id, 91))) == 1
        assert scheduler.scheduled == []

    def test_catch_up_composes_deferred_tiers(self, evaluator, quiet_user, make_condition, clock):
        clock.now = datetime(2026, 10, 15, 23, 0)
        condition = make_condition(quiet_user.id, 91)
        evaluator.evaluate(condition)

        clock.now = datetime(2026, 10, 16, 7, 0)
        alerts = evaluator.evaluate_deferred(condition, [90])
        assert [(a.kind, a.tier) for a in alerts] == [(AlertKind.BUDGET_WARNING, 90)]

    def test_catch_up_respects_disabled_channels(
        self, evaluator, quiet_user, make_condition, set_preferences, clock
    ):
        clock.now = datetime(2026, 10, 15, 23, 0)
        condition = make_condition(quiet_user.id, 91)
        evaluator.evaluate(condition)
        set_preferences(quiet_user.id, channel_enabled={"socket": False, "email": False})

        clock.now = datetime(2026, 10, 16, 7, 0)
        assert evaluator.evaluate_deferred(condition, [90]) == []

    def test_catch_up_still_quiet_reschedules(
        self, evaluator, quiet_user, make_condition, set_preferences, scheduler, clock
    ):
        """If the window was extended meanwhile, the catch-up is deferred again."""
        clock.now = datetime(2026, 10, 15, 23, 0)
        condition = make_condition(quiet_user.id, 91)
        evaluator.evaluate(condition)
        set_preferences(quiet_user.id, quiet_hours={"start": "22:00", "end": "09:00"})

        clock.now = datetime(2026, 10, 16, 7, 0)
        assert evaluator.evaluate_deferred(condition, [90]) == []
        assert scheduler.scheduled[-1][0] == datetime(2026, 10, 16, 9, 0)

    def test_no_scheduler_drops_deferral(
        self, test_db_session, ledger, test_settings, quiet_user, make_condition, clock
    ):
        clock.now = datetime(2026, 10, 15, 23, 0)
        evaluator = AlertEvaluator(test_db_session, ledger, settings=test_settings, clock=clock)
        assert evaluator.evaluate(make_condition(quiet_user.id, 91)) == []


class TestCompose:
    """Tests for AlertEvaluator.compose()."""

    def test_exceeded_text(self, evaluator, sample_user, make_condition):
        user = sample_user()
        alert = evaluator.compose(
            make_condition(user.id, 135, over_amount=175.0),
            AlertKind.BUDGET_EXCEEDED, 100,
        )
        assert alert.title == "Budget Exceeded Alert - Groceries"
        assert "135.0%" in alert.body
        assert "$175.00 over the limit" in alert.body
        assert alert.template == "budget-exceeded"
        assert alert.data["tier"] == 100

    def test_warning_text(self, evaluator, sample_user, make_condition):
        user = sample_user()
        alert = evaluator.compose(make_condition(user.id, 91), AlertKind.BUDGET_WARNING, 90)
        assert alert.title == "Budget Warning Alert - Groceries"
        assert "90% alert threshold" in alert.body

    def test_falls_back_to_budget_id(self, evaluator, sample_user, make_condition):
        user = sample_user()
        alert = evaluator.compose(
            make_condition(user.id, 91, budget_name=None), AlertKind.BUDGET_WARNING, 90
        )
        assert alert.title == "Budget Warning Alert - bdg_groceries"

    def test_ttl_per_kind(self, evaluator):
        assert evaluator.ttl_for(AlertKind.BUDGET_WARNING) == timedelta(hours=12)
        assert evaluator.ttl_for(AlertKind.BUDGET_EXCEEDED) == timedelta(hours=24)
        assert evaluator.ttl_for(AlertKind.CATEGORY_OVERSPEND) == timedelta(hours=24)
