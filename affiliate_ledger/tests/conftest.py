from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from affiliate_ledger import db_models  # noqa: F401  registers the tables
from affiliate_ledger.database import Base, build_session_factory
from affiliate_ledger.db_models import VisitRow
from affiliate_ledger.models import (
    ConversionType,
    CreateReferralRequest,
    ProcessConversionRequest,
    RegisterAffiliateRequest,
)
from affiliate_ledger.notifications import NotificationSender
from affiliate_ledger.service import AffiliateLedger

# In-memory SQLite shared by every session of a test through StaticPool
SQLALCHEMY_DATABASE_URL = "sqlite://"


@pytest.fixture
def engine():
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def notifier(mocker):
    return mocker.create_autospec(NotificationSender, instance=True)


@pytest.fixture
def ledger(session_factory, notifier):
    return AffiliateLedger(session_factory=session_factory, notifier=notifier)


@pytest.fixture
def make_affiliate(ledger):
    def _make(code="SMX10", rate="15.00", email=None):
        return ledger.register_affiliate(RegisterAffiliateRequest(
            email=email or f"{code.lower()}@example.com",
            affiliate_code=code,
            commission_rate=Decimal(rate),
        ))
    return _make


@pytest.fixture
def earn(ledger):
    """Create and approve a purchase referral; returns the referral."""
    def _earn(code, order_amount):
        created = ledger.create_referral(CreateReferralRequest(
            affiliate_code=code,
            conversion_type=ConversionType.PURCHASE,
            order_amount=Decimal(order_amount),
        ))
        ledger.process_conversion(ProcessConversionRequest(
            referral_id=created.data.id,
            status="approved",
        ))
        return created.data
    return _earn


@pytest.fixture
def add_visit(session_factory):
    """Insert a visit with an explicit timestamp and conversion flag."""
    def _add(affiliate_id, created_at, converted=False):
        with session_factory.begin() as session:
            row = VisitRow(
                affiliate_id=affiliate_id,
                converted=converted,
                created_at=created_at,
            )
            session.add(row)
            session.flush()
            return row.id
    return _add


def at(day, hour=12):
    return datetime(2026, 10, day, hour, 0, tzinfo=timezone.utc)
