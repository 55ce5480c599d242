"""
Fixtures for API-level tests.

The application runs with its real lifespan (gateway, consumer, dispatcher)
against the in-memory database configured in the root conftest.
"""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from alert_engine.db.database import SessionLocal, engine
from alert_engine.main import app
from alert_engine.models import Alert, Base, DeliveryChannel, DeliveryJob, DeliveryStatus, User
from alert_engine.models.alert import AlertKind


@pytest.fixture
def app_db():
    """Create the schema on the application's engine for one test."""
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def client(app_db):
    """TestClient running the application lifespan."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def app_user(app_db):
    """Factory for users stored in the application's database."""
    def _create(email: str = "ada@example.com", first_name: str = "Ada") -> User:
        with SessionLocal() as db:
            user = User(email=email, first_name=first_name)
            db.add(user)
            db.commit()
            db.refresh(user)
            return user
    return _create


@pytest.fixture
def auth_headers(make_token):
    """Bearer headers for a user id, optionally with extra claims."""
    def _headers(user_id, **claims):
        return {"Authorization": f"Bearer {make_token(user_id, **claims)}"}
    return _headers


@pytest.fixture
def operator_headers(auth_headers):
    return auth_headers(1000, role="operator")


@pytest.fixture
def app_job(app_db, app_user):
    """Factory for email delivery jobs stored in the application's database."""
    counter = {"n": 0}

    def _create(budget_id: str = "bdg_groceries", **overrides) -> DeliveryJob:
        counter["n"] += 1
        user = app_user(email=f"user{counter['n']}@example.com")
        with SessionLocal() as db:
            alert = Alert(
                user_id=user.id,
                kind=AlertKind.BUDGET_EXCEEDED,
                tier=100,
                dedup_key=f"{counter['n']:064d}",
                budget_id=budget_id,
                title="Budget exceeded",
                body="Groceries is over budget.",
                template=AlertKind.BUDGET_EXCEEDED.template,
                data={"budget_name": "Groceries"},
                dispatched_at=datetime.utcnow(),
            )
            db.add(alert)
            db.flush()
            values = dict(
                alert_id=alert.id,
                channel=DeliveryChannel.EMAIL,
                payload={"to": user.email, "template": alert.template, "data": {}},
                status=DeliveryStatus.PENDING,
                resource_id=budget_id,
            )
            values.update(overrides)
            job = DeliveryJob(**values)
            db.add(job)
            db.commit()
            db.refresh(job)
            db.expunge(job)
            return job

    return _create
