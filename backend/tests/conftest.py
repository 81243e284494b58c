"""
Shared pytest fixtures.

Every test gets its own file-backed SQLite database so background dispatch
tasks, threadpool routes and reconciler threads can each hold a connection.
"""
import os

# Settings are read at import time; configure before anything imports src
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["OPENAI_API_KEY"] = ""
os.environ["DELIVERY_PROVIDER"] = "simulated"

from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from src.lib.db import create_db_engine, drop_db, init_db
from src.lib.metrics import reset_metrics
from src.models import Campaign, CampaignStatus, Customer, CustomerStatus, Segment


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

_emails = count(1)


@pytest.fixture
def engine(tmp_path):
    """SQLite engine on a per-test database file."""
    db_engine = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(db_engine)
    yield db_engine
    drop_db(db_engine)
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def clean_metrics():
    """Start every test from zeroed counters."""
    reset_metrics()
    yield
    reset_metrics()


def make_customer(db_session, **overrides) -> Customer:
    """Insert one customer; unspecified attributes get neutral defaults."""
    n = next(_emails)
    values = {
        "name": f"Customer {n}",
        "email": f"customer{n}@example.com",
        "phone": f"+1555000{n:04d}",
        "total_spent": 0,
        "total_orders": 0,
        "status": CustomerStatus.ACTIVE,
        "registration_date": NOW - timedelta(days=365),
        "last_visit": NOW - timedelta(days=1),
    }
    values.update(overrides)
    customer = Customer(**values)
    db_session.add(customer)
    db_session.commit()
    return customer


def make_segment(db_session, rules, name="Test segment", audience_size=0) -> Segment:
    segment = Segment(name=name, rules=rules, audience_size=audience_size)
    db_session.add(segment)
    db_session.commit()
    return segment


def make_campaign(db_session, segment, template="Hi {name}", status=CampaignStatus.SENDING, **overrides) -> Campaign:
    campaign = Campaign(
        name=overrides.pop("name", "Test campaign"),
        segment_id=segment.id,
        message_template=template,
        status=status,
        **overrides,
    )
    db_session.add(campaign)
    db_session.commit()
    return campaign


@pytest.fixture
def spending_customers(db_session):
    """Three customers: {1, active, 15000}, {2, active, 5000}, {3, churned, 20000}."""
    return [
        make_customer(db_session, id=1, status=CustomerStatus.ACTIVE, total_spent=15000),
        make_customer(db_session, id=2, status=CustomerStatus.ACTIVE, total_spent=5000),
        make_customer(db_session, id=3, status=CustomerStatus.CHURNED, total_spent=20000),
    ]


@pytest.fixture
def customer_factory(db_session):
    return lambda **overrides: make_customer(db_session, **overrides)


@pytest.fixture
def segment_factory(db_session):
    return lambda rules, **kwargs: make_segment(db_session, rules, **kwargs)


@pytest.fixture
def campaign_factory(db_session):
    return lambda segment, **kwargs: make_campaign(db_session, segment, **kwargs)


# ============================================================================
# API fixtures
# ============================================================================


@pytest.fixture
def api_app(session_factory):
    """The FastAPI app with its database dependency bound to the test database."""
    from src.api.app import app
    from src.api.dependencies import get_db

    def _get_test_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_test_db
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(api_app):
    return TestClient(api_app)
