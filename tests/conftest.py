"""
Pytest configuration and fixtures for alert engine tests.

Provides shared fixtures for:
- Test database engines and sessions
- Controllable clock
- Sample data factories (users, preferences, conditions)
- Fake collaborators (mail transport, WebSocket transport, push broker)
"""

import os
from datetime import datetime, timedelta
from typing import Any, Dict, List

import pytest
from jose import jwt
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
TEST_JWT_SECRET = "test-secret-key-for-the-alert-engine-0123456789"
os.environ['ALERT_ENGINE_DB_URL'] = 'sqlite:///:memory:'
os.environ['JWT_SECRET_KEY'] = TEST_JWT_SECRET
os.environ['EMAIL_WORKER_ENABLED'] = 'false'
os.environ['REDIS_URL'] = ''
os.environ['CONSUMER_WORKERS'] = '1'

from alert_engine.config.settings import AppSettings
from alert_engine.models import Alert, Base, DeliveryChannel, DeliveryJob, DeliveryStatus, User
from alert_engine.models.alert import AlertKind
from alert_engine.schemas.conditions import AlertCondition
from alert_engine.services.exceptions import DeliveryPermanentError, TransientDeliveryError
from alert_engine.services.preference_service import PreferenceService
from alert_engine.services.suppression_ledger import SuppressionLedger
from alert_engine.utils.connection_gateway import ConnectionGateway


PERIOD_START = datetime(2026, 10, 1)
PERIOD_END = datetime(2026, 10, 31, 23, 59, 59)


def _fk_pragma_on_connect(dbapi_con, con_record):
    dbapi_con.execute('pragma foreign_keys=ON')


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    event.listen(engine, 'connect', _fk_pragma_on_connect)

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope='function')
def session_factory(test_db_engine):
    """Session factory bound to the test engine (for ledger, workers, dispatcher)."""
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture(scope='function')
def test_db_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope='function')
def file_db_engine(tmp_path):
    """
    File-backed SQLite engine for multi-threaded tests.

    Each thread gets its own connection; the busy timeout makes writers wait
    for the database lock instead of failing.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'alerts.db'}",
        connect_args={'check_same_thread': False, 'timeout': 30},
    )
    event.listen(engine, 'connect', _fk_pragma_on_connect)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope='function')
def file_session_factory(file_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=file_db_engine)


# ============================================================================
# Utility Fixtures
# ============================================================================

class FakeClock:
    """Settable naive-UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock starting mid-period, outside any test quiet window (12:00 UTC)."""
    return FakeClock(datetime(2026, 10, 15, 12, 0, 0))


@pytest.fixture
def test_settings():
    """Settings with library defaults, ignoring any .env file."""
    return AppSettings(_env_file=None)


@pytest.fixture
def ledger(session_factory, clock):
    return SuppressionLedger(session_factory, clock=clock)


@pytest.fixture
def make_token():
    """Factory for signed client tokens."""
    def _create(user_id: Any, secret: str = TEST_JWT_SECRET, **claims) -> str:
        payload = {"sub": str(user_id)}
        payload.update(claims)
        return jwt.encode(payload, secret, algorithm="HS256")
    return _create


# ============================================================================
# Sample Data Factories
# ============================================================================

@pytest.fixture
def sample_user(test_db_session):
    """Factory for creating User rows."""
    counter = {"n": 0}

    def _create(email: str = None, first_name: str = "Ada") -> User:
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            first_name=first_name,
        )
        test_db_session.add(user)
        test_db_session.commit()
        test_db_session.refresh(user)
        return user

    return _create


@pytest.fixture
def set_preferences(test_db_session):
    """Apply a partial preference update for a user."""
    def _set(user_id: int, **partial):
        return PreferenceService(test_db_session).update(user_id, partial)
    return _set


@pytest.fixture
def make_condition():
    """Factory for AlertConditions on the October 2026 Groceries budget."""
    def _create(
        user_id: int,
        utilization: float,
        kind: AlertKind = None,
        budget_id: str = "bdg_groceries",
        category_id: str = None,
        over_amount: float = None,
        **extra,
    ) -> AlertCondition:
        if kind is None:
            if category_id:
                kind = AlertKind.CATEGORY_OVERSPEND
            elif utilization >= 100:
                kind = AlertKind.BUDGET_EXCEEDED
            else:
                kind = AlertKind.BUDGET_WARNING
        return AlertCondition(
            kind=kind,
            user_id=user_id,
            budget_id=budget_id,
            category_id=category_id,
            utilization_percentage=utilization,
            over_amount=over_amount,
            period_start=extra.pop("period_start", PERIOD_START),
            period_end=extra.pop("period_end", PERIOD_END),
            budget_name=extra.pop("budget_name", "Groceries"),
            category_name=extra.pop("category_name", "Dining" if category_id else None),
            **extra,
        )
    return _create


# ============================================================================
# Fake Collaborators
# ============================================================================

class FakeMailTransport:
    """
    In-memory transport that deduplicates on the idempotency key, the way a
    provider API with idempotency keys does.

    A second send with an idempotency key that already succeeded returns the
    original message id without delivering again. `failures` is a queue of
    exceptions raised by successive calls.
    """

    def __init__(self):
        self.delivered: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.failures: List[Exception] = []

    def send(self, template: str, to: str, data: Dict[str, Any], idempotency_key: str) -> str:
        self.calls.append(idempotency_key)
        if self.failures:
            raise self.failures.pop(0)
        if idempotency_key not in self.delivered:
            self.delivered[idempotency_key] = {"template": template, "to": to, "data": data}
        return f"<{idempotency_key}@test>"

    def fail_transient(self, times: int = 1):
        self.failures.extend(TransientDeliveryError("503 service unavailable") for _ in range(times))

    def fail_permanent(self):
        self.failures.append(DeliveryPermanentError("550 mailbox unavailable"))


class FakeWebSocket:
    """Records JSON frames sent to a client."""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.close_code = None
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code


class InMemoryBrokerHub:
    """Stands in for a Redis server shared by several gateway processes."""

    def __init__(self):
        self.handlers: Dict[str, Any] = {}
        self.presence_counts: Dict[str, int] = {}
        self.published: List[Dict[str, Any]] = []

    def broker(self, process_id: str) -> "InMemoryPushBroker":
        return InMemoryPushBroker(self, process_id)


class InMemoryPushBroker:
    """PushBroker that fans out through an InMemoryBrokerHub."""

    def __init__(self, hub: InMemoryBrokerHub, process_id: str):
        self.hub = hub
        self.process_id = process_id

    async def start(self, handler) -> None:
        self.hub.handlers[self.process_id] = handler

    async def publish(self, room: str, payload: Dict[str, Any]) -> None:
        self.hub.published.append({"origin": self.process_id, "room": room})
        for process_id, handler in list(self.hub.handlers.items()):
            if process_id != self.process_id:
                await handler(room, payload)

    async def adjust_presence(self, room: str, delta: int) -> None:
        self.hub.presence_counts[room] = self.hub.presence_counts.get(room, 0) + delta

    async def presence(self, room: str) -> int:
        return self.hub.presence_counts.get(room, 0)

    async def stop(self) -> None:
        self.hub.handlers.pop(self.process_id, None)


@pytest.fixture
def mail_transport():
    return FakeMailTransport()


@pytest.fixture
def broker_hub():
    return InMemoryBrokerHub()


@pytest.fixture
def make_websocket():
    """Factory for FakeWebSocket transports."""
    return FakeWebSocket


@pytest.fixture
def gateway():
    """Single-process gateway accepting tokens signed with the test secret."""
    return ConnectionGateway(jwt_secret=TEST_JWT_SECRET)


@pytest.fixture
def make_alert(test_db_session):
    """Factory for persisted alerts on the Groceries budget."""
    counter = {"n": 0}

    def _create(
        user_id: int,
        kind: AlertKind = AlertKind.BUDGET_WARNING,
        tier: int = 90,
        category_id: str = None,
        budget_id: str = "bdg_groceries",
    ) -> Alert:
        counter["n"] += 1
        alert = Alert(
            user_id=user_id,
            kind=kind,
            tier=tier,
            dedup_key=f"{counter['n']:064d}",
            budget_id=budget_id,
            category_id=category_id,
            title=f"{kind.value} alert",
            body="You are close to your limit.",
            template=kind.template,
            data={"budget_name": "Groceries", "tier": tier},
        )
        test_db_session.add(alert)
        test_db_session.commit()
        test_db_session.refresh(alert)
        return alert

    return _create


@pytest.fixture
def make_email_job(test_db_session, sample_user, make_alert, clock):
    """Factory for PENDING email jobs, due now."""
    def _create(user: User = None, budget_id: str = "bdg_groceries", **overrides) -> DeliveryJob:
        user = user or sample_user()
        alert = make_alert(user.id, budget_id=budget_id)
        values = dict(
            alert_id=alert.id,
            channel=DeliveryChannel.EMAIL,
            payload={
                "to": user.email,
                "template": alert.template,
                "data": {"title": alert.title, "body": alert.body},
            },
            status=DeliveryStatus.PENDING,
            resource_id=budget_id,
            attempts=0,
            max_attempts=5,
            next_attempt_at=clock.now,
        )
        values.update(overrides)
        job = DeliveryJob(**values)
        test_db_session.add(job)
        test_db_session.commit()
        test_db_session.refresh(job)
        return job

    return _create


@pytest.fixture
def make_gateway():
    """Factory for gateways accepting tokens signed with the test secret."""
    def _create(**kwargs) -> ConnectionGateway:
        return ConnectionGateway(jwt_secret=TEST_JWT_SECRET, **kwargs)
    return _create
