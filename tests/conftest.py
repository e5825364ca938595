import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["PAYOUT_PROCESSING_TOKEN"] = "test-payout-token"
os.environ["OPS_ALERT_EMAILS"] = ""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from settlement.db.session import Base
from settlement.models.audit_log import AuditLog  # noqa: F401
from settlement.models.booking import Booking  # noqa: F401
from settlement.models.email_log import EmailLog  # noqa: F401
from settlement.models.payment import Payment  # noqa: F401
from settlement.models.payout import Payout  # noqa: F401
from settlement.models.payout_item import PayoutItem  # noqa: F401
from settlement.models.time_slot import TimeSlot  # noqa: F401
from settlement.models.tour import Tour  # noqa: F401
from settlement.models.user import User  # noqa: F401
from settlement.services.job_context import JobContext
from tests.factories import FakeProcessor, FixedClock


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def ctx(processor, clock, alerts):
    return JobContext(processor=processor, clock=clock, alert=lambda subject, body: alerts.append((subject, body)))
