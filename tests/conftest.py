import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.database import Base
from app.integrations.pms.client import Page
from app.models import PmsIntegrationConfig, Practice

SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(
        database_url=SQLALCHEMY_DATABASE_URL,
        pms_max_retries=2,
        pms_backoff_base_seconds=0.1,
        pms_backoff_multiplier=2.0,
        writer_max_concurrency=3,
        health_down_threshold=3,
        sync_per_page=2,
    )


@pytest.fixture
def practice(db):
    p = Practice(name="Bright Smiles Dental")
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


@pytest.fixture
def config(db, practice):
    c = PmsIntegrationConfig(
        practice_id=practice.id,
        api_key="test-key",
        subdomain="bright-smiles",
        location_id="4321",
        environment="sandbox",
        active=True,
    )
    db.add(c)
    db.commit()
    db.refresh(c)
    return c


def page(*records, next_cursor=None):
    return Page(data=list(records), has_more=next_cursor is not None, next_cursor=next_cursor)


@pytest.fixture
def fake_client():
    client = MagicMock()
    client.request_token.return_value = "token-1"
    empty = page()
    client.list_providers.return_value = empty
    client.list_operatories.return_value = empty
    client.list_appointment_types.return_value = empty
    client.list_payment_types.return_value = empty
    client.list_adjustment_types.return_value = empty
    client.list_changed_patients.return_value = empty
    client.list_changed_appointments.return_value = empty
    client.list_changed_payments.return_value = empty
    client.list_changed_adjustments.return_value = empty
    return client


@pytest.fixture
def session_manager(settings, fake_client):
    from app.integrations.pms.session import SessionManager

    sleeps = []
    manager = SessionManager(settings, client_factory=lambda config: fake_client, sleep=sleeps.append)
    manager.sleeps = sleeps
    return manager
