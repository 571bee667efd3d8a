"""
Shared fixtures for the checkout ledger test suite.

Unit tests run against an in-memory SQLite database created fresh for each
test. Race tests use a file-backed SQLite database so each thread gets its
own connection. Time is injected through a controllable clock.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from database import build_engine
from models import Base
from services.guest_reconciliation_service import GuestReconciliationService
from services.investment_holding_service import InvestmentHoldingService
from services.order_expiry_service import OrderExpiryService
from services.order_service import OrderService
from services.payment_confirmation_service import PaymentConfirmationService
from services.wallet_ledger_service import WalletLedgerService

logging.getLogger("sqlalchemy").setLevel(logging.WARNING)

START_TIME = datetime(2024, 3, 1, 12, 0, 0)


class FrozenClock:
    """Clock that only moves when told to"""

    def __init__(self, start: datetime = START_TIME):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


def _make_session_factory(engine):
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def engine():
    test_engine = build_engine("sqlite:///:memory:")
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return _make_session_factory(engine)


@pytest.fixture
def file_session_factory(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
    yield _make_session_factory(test_engine)
    test_engine.dispose()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def order_service(session_factory, clock):
    return OrderService(session_factory=session_factory, clock=clock)


@pytest.fixture
def payment_service(session_factory, clock):
    return PaymentConfirmationService(session_factory=session_factory, clock=clock)


@pytest.fixture
def expiry_service(session_factory, clock):
    return OrderExpiryService(batch_size=50, session_factory=session_factory, clock=clock)


@pytest.fixture
def reconciliation_service(session_factory, clock):
    return GuestReconciliationService(session_factory=session_factory, clock=clock)


@pytest.fixture
def ledger_service(session_factory, clock):
    return WalletLedgerService(session_factory=session_factory, clock=clock)


@pytest.fixture
def holding_service(session_factory, clock):
    return InvestmentHoldingService(session_factory=session_factory, clock=clock)


@pytest.fixture
def pending_order(order_service):
    """A $500 card order owned by an account, inside its 30 minute window"""
    return order_service.create_order(
        owner="user-1001",
        product_id="PLAN-PRO",
        payment_method_code="CARD",
        payment_method_name="Credit Card",
        amount=Decimal("500.00"),
        billing_info={"name": "Ada Buyer", "email": "Ada@Example.com "},
    )
