"""
Unit tests for the delivery dispatcher.

Tests per-channel job creation, preference gating at dispatch time,
channel independence and the background queue.
"""

import threading
from unittest.mock import AsyncMock, patch

import pytest

from alert_engine.models import Alert, AlertKind, DeliveryChannel, DeliveryJob, DeliveryStatus
from alert_engine.services.alert_evaluator import AlertEvaluator
from alert_engine.services.delivery_dispatcher import DeliveryDispatcher
from alert_engine.services.exceptions import NotFoundError


@pytest.fixture
def dispatcher(session_factory, gateway, test_settings, clock):
    return DeliveryDispatcher(session_factory, gateway, settings=test_settings, clock=clock)


class TestDispatch:
    """Tests for DeliveryDispatcher.dispatch()."""

    @pytest.mark.asyncio
    async def test_disabled_email_yields_single_socket_job(
        self, dispatcher, sample_user, set_preferences, make_alert, test_db_session
    ):
        """Email disabled + category overspend: one socket job, zero email jobs."""
        user = sample_user()
        set_preferences(user.id, channel_enabled={"email": False})
        alert = make_alert(user.id, AlertKind.CATEGORY_OVERSPEND, 100, category_id="cat_dining")

        jobs = await dispatcher.dispatch(alert)

        assert [job.channel for job in jobs] == [DeliveryChannel.SOCKET]
        assert test_db_session.query(DeliveryJob).filter(
            DeliveryJob.channel == DeliveryChannel.EMAIL
        ).count() == 0

    @pytest.mark.asyncio
    async def test_socket_sent_to_live_connection(
        self, dispatcher, gateway, sample_user, make_alert, make_token, make_websocket
    ):
        user = sample_user()
        websocket = make_websocket()
        await gateway.authenticate(make_token(user.id), websocket)
        alert = make_alert(user.id)

        jobs = await dispatcher.dispatch(alert)
        socket_job = next(j for j in jobs if j.channel == DeliveryChannel.SOCKET)

        assert socket_job.status == DeliveryStatus.SENT
        assert socket_job.attempts == 1
        assert socket_job.payload["delivered"] == 1
        assert websocket.sent[-1]["op"] == "alert"
        assert websocket.sent[-1]["alert"]["id"] == alert.guid

    @pytest.mark.asyncio
    async def test_socket_failed_without_connection(self, dispatcher, sample_user, make_alert):
        """No live connection: the socket job is FAILED and never retried."""
        user = sample_user()
        jobs = await dispatcher.dispatch(make_alert(user.id))
        socket_job = next(j for j in jobs if j.channel == DeliveryChannel.SOCKET)

        assert socket_job.status == DeliveryStatus.FAILED
        assert socket_job.last_error == "No live connection"
        assert socket_job.max_attempts == 1
        assert socket_job.completed_at is not None

    @pytest.mark.asyncio
    async def test_email_job_persisted_pending(
        self, dispatcher, sample_user, make_alert, test_settings, clock
    ):
        user = sample_user(email="ada@example.com", first_name="Ada")
        jobs = await dispatcher.dispatch(make_alert(user.id))
        email_job = next(j for j in jobs if j.channel == DeliveryChannel.EMAIL)

        assert email_job.status == DeliveryStatus.PENDING
        assert email_job.attempts == 0
        assert email_job.max_attempts == test_settings.email_max_attempts
        assert email_job.next_attempt_at == clock.now
        assert email_job.resource_id == "bdg_groceries"
        assert email_job.payload["to"] == "ada@example.com"
        assert email_job.payload["template"] == "budget-warning"
        assert email_job.payload["data"]["first_name"] == "Ada"
        assert email_job.payload["data"]["budget_name"] == "Groceries"

    @pytest.mark.asyncio
    async def test_preferences_read_at_dispatch_time(
        self, dispatcher, sample_user, set_preferences, make_alert
    ):
        """Channels disabled after evaluation are honoured."""
        user = sample_user()
        alert = make_alert(user.id)
        set_preferences(user.id, channel_enabled={"socket": False})

        jobs = await dispatcher.dispatch(alert)
        assert [job.channel for job in jobs] == [DeliveryChannel.EMAIL]

    @pytest.mark.asyncio
    async def test_all_channels_disabled(self, dispatcher, sample_user, set_preferences, make_alert):
        user = sample_user()
        alert = make_alert(user.id)
        set_preferences(user.id, channel_enabled={"socket": False, "email": False})

        assert await dispatcher.dispatch(alert) == []

    @pytest.mark.asyncio
    async def test_unknown_alert(self, dispatcher):
        with pytest.raises(NotFoundError):
            await dispatcher.dispatch_alert_id(9999)


class TestChannelIndependence:
    """A failure on one channel never prevents the other."""

    @pytest.mark.asyncio
    async def test_push_error_still_queues_email(self, dispatcher, gateway, sample_user, make_alert):
        user = sample_user()
        alert = make_alert(user.id)

        with patch.object(gateway, "push", AsyncMock(side_effect=RuntimeError("gateway down"))):
            jobs = await dispatcher.dispatch(alert)

        by_channel = {job.channel: job for job in jobs}
        assert by_channel[DeliveryChannel.SOCKET].status == DeliveryStatus.FAILED
        assert "gateway down" in by_channel[DeliveryChannel.SOCKET].last_error
        assert by_channel[DeliveryChannel.EMAIL].status == DeliveryStatus.PENDING

    @pytest.mark.asyncio
    async def test_email_error_still_records_socket(self, dispatcher, sample_user, make_alert):
        user = sample_user()
        alert = make_alert(user.id)

        with patch.object(dispatcher, "_dispatch_email", side_effect=RuntimeError("db hiccup")):
            jobs = await dispatcher.dispatch(alert)

        assert [job.channel for job in jobs] == [DeliveryChannel.SOCKET]


class TestBackgroundQueue:
    """Tests for submit() and the drain task."""

    @pytest.mark.asyncio
    async def test_submit_and_join(self, dispatcher, sample_user, make_alert, test_db_session):
        await dispatcher.start()
        try:
            user = sample_user()
            alert = make_alert(user.id)
            assert dispatcher.submit(alert) is True
            await dispatcher.join()
        finally:
            await dispatcher.stop()

        assert test_db_session.query(DeliveryJob).filter(
            DeliveryJob.alert_id == alert.id
        ).count() == 2

    @pytest.mark.asyncio
    async def test_full_queue_rejects(self, session_factory, gateway, test_settings, sample_user, make_alert):
        dispatcher = DeliveryDispatcher(session_factory, gateway, settings=test_settings, queue_size=1)
        user = sample_user()
        alert = make_alert(user.id)

        assert dispatcher.submit(alert) is True
        assert dispatcher.submit(alert) is False

    @pytest.mark.asyncio
    async def test_drain_survives_dispatch_errors(self, dispatcher, sample_user, make_alert, test_db_session):
        """An unknown alert id is logged and the next alert still goes out."""
        await dispatcher.start()
        try:
            user = sample_user()
            alert = make_alert(user.id)
            dispatcher.submit(Alert(id=424242))
            dispatcher.submit(alert)
            await dispatcher.join()
        finally:
            await dispatcher.stop()

        assert test_db_session.query(DeliveryJob).count() == 2


class TestOutbox:
    """Alerts the queue never delivered are found again through dispatched_at."""

    @pytest.fixture
    def scenario_a_alerts(self, session_factory, ledger, sample_user, make_condition, test_settings, clock):
        """135% of the Groceries budget: a 90% warning and the exceeded alert."""
        user = sample_user()
        with session_factory() as db:
            evaluator = AlertEvaluator(db, ledger, settings=test_settings, clock=clock)
            return evaluator.evaluate(make_condition(user.id, 135))

    def _email_jobs(self, db, alert):
        return db.query(DeliveryJob).filter(
            DeliveryJob.alert_id == alert.id,
            DeliveryJob.channel == DeliveryChannel.EMAIL,
        ).count()

    @pytest.mark.asyncio
    async def test_rejected_alert_dispatched_by_sweep(
        self, session_factory, gateway, test_settings, clock, scenario_a_alerts, test_db_session
    ):
        """A full queue delays an alert; the sweep still gives it its email job."""
        dispatcher = DeliveryDispatcher(
            session_factory, gateway, settings=test_settings, queue_size=1, clock=clock
        )
        warning, exceeded = scenario_a_alerts

        assert dispatcher.submit(warning) is True
        assert dispatcher.submit(exceeded) is False

        assert await dispatcher.sweep() == 2
        assert self._email_jobs(test_db_session, warning) == 1
        assert self._email_jobs(test_db_session, exceeded) == 1

        # The queued copy finds the alert already dispatched
        await dispatcher.start()
        try:
            await dispatcher.join()
        finally:
            await dispatcher.stop()
        assert test_db_session.query(DeliveryJob).count() == 4

    @pytest.mark.asyncio
    async def test_crash_before_dispatch_recovered_on_start(
        self, session_factory, gateway, test_settings, clock, scenario_a_alerts, test_db_session
    ):
        """Alerts composed by a process that died before dispatching them."""
        restarted = DeliveryDispatcher(session_factory, gateway, settings=test_settings, clock=clock)

        await restarted.start()
        await restarted.stop()

        for alert in scenario_a_alerts:
            assert self._email_jobs(test_db_session, alert) == 1
            stored = test_db_session.get(Alert, alert.id)
            test_db_session.refresh(stored)
            assert stored.dispatched_at == clock.now
        assert await restarted.sweep() == 0

    @pytest.mark.asyncio
    async def test_dispatch_happens_once(self, dispatcher, sample_user, make_alert, test_db_session):
        user = sample_user()
        alert = make_alert(user.id)

        assert len(await dispatcher.dispatch(alert)) == 2
        assert await dispatcher.dispatch(alert) == []
        assert test_db_session.query(DeliveryJob).count() == 2

    @pytest.mark.asyncio
    async def test_all_channels_disabled_still_marked(
        self, dispatcher, sample_user, set_preferences, make_alert, test_db_session
    ):
        user = sample_user()
        alert = make_alert(user.id)
        set_preferences(user.id, channel_enabled={"socket": False, "email": False})

        await dispatcher.dispatch(alert)
        assert await dispatcher.sweep() == 0


class TestEventLoopOffload:
    """Database work runs in worker threads, never on the event loop."""

    @pytest.mark.asyncio
    async def test_sessions_opened_off_loop(
        self, session_factory, gateway, test_settings, clock, sample_user, make_alert
    ):
        loop_thread = threading.get_ident()
        session_threads = []

        def recording_factory():
            session_threads.append(threading.get_ident())
            return session_factory()

        dispatcher = DeliveryDispatcher(recording_factory, gateway, settings=test_settings, clock=clock)
        user = sample_user()
        jobs = await dispatcher.dispatch(make_alert(user.id))

        assert len(jobs) == 2
        assert session_threads
        assert loop_thread not in session_threads
