"""
Infrastructure tests: configuration, database helpers, transactions, locking,
decimal handling and logging setup
"""

import logging
import pytest
from decimal import Decimal
from unittest.mock import patch
from sqlalchemy import inspect

from config import Config, _parse_window_overrides
from database import check_connection, create_tables, managed_session
from models import InvestmentHolding, Order
from services.exceptions import ConflictError, InvalidArgumentError, NotFoundError, StorageError
from utils.atomic_transactions import atomic_transaction
from utils.decimal_precision import MonetaryDecimal
from utils.logging_config import ERROR_LOG_FILENAME, configure_logging
from utils.optimistic_locking import OptimisticLockingError, OptimisticLockManager


def _holding(owner_id="user-1", instrument_id="ACME"):
    return InvestmentHolding(
        owner_id=owner_id,
        instrument_id=instrument_id,
        units=Decimal("1"),
        avg_purchase_price=Decimal("10"),
        total_invested=Decimal("10.00"),
        currency="USD",
        version=1,
    )


class TestConfig:

    def test_parse_window_overrides(self):
        parsed = _parse_window_overrides("btc:60, bank_transfer:1440,bad,x:abc,y:0,")
        assert parsed == {"BTC": 60, "BANK_TRANSFER": 1440}

    def test_window_lookup_falls_back_to_default(self):
        with patch.dict(Config.PAYMENT_WINDOW_OVERRIDES, {"ETH": 45}, clear=True):
            assert Config.get_payment_window_minutes("eth") == 45
            assert Config.get_payment_window_seconds(" ETH ") == 45 * 60
            assert Config.get_payment_window_minutes("CARD") == Config.DEFAULT_PAYMENT_WINDOW_MINUTES
            assert Config.get_payment_window_minutes(None) == Config.DEFAULT_PAYMENT_WINDOW_MINUTES


class TestDatabase:

    def test_check_connection(self, engine):
        assert check_connection(engine) is True

    def test_create_tables(self, engine):
        assert create_tables(engine) is True
        tables = set(inspect(engine).get_table_names())
        assert {"orders", "wallet_transactions", "investment_holdings", "holding_purchases"} <= tables

    def test_managed_session_rolls_back_on_error(self, session_factory):
        with pytest.raises(RuntimeError):
            with managed_session(session_factory) as session:
                session.add(_holding())
                session.flush()
                raise RuntimeError("boom")

        with session_factory() as session:
            assert session.query(InvestmentHolding).count() == 0


class TestAtomicTransaction:

    def test_commits_on_success(self, session_factory):
        with atomic_transaction(session_factory=session_factory) as session:
            session.add(_holding())

        with session_factory() as session:
            assert session.query(InvestmentHolding).count() == 1

    def test_domain_errors_propagate_unchanged(self, session_factory):
        with pytest.raises(NotFoundError):
            with atomic_transaction(session_factory=session_factory) as session:
                session.add(_holding())
                session.flush()
                raise NotFoundError("missing")

        with session_factory() as session:
            assert session.query(InvestmentHolding).count() == 0

    def test_storage_errors_are_wrapped(self, session_factory):
        with atomic_transaction(session_factory=session_factory) as session:
            session.add(_holding())

        with pytest.raises(StorageError) as exc_info:
            with atomic_transaction(session_factory=session_factory) as session:
                session.add(_holding())
                session.flush()

        assert exc_info.value.code == "storage_error"
        assert "IntegrityError" in exc_info.value.message

    def test_nested_blocks_commit_once(self, session_factory):
        session = session_factory()
        try:
            with patch.object(session, "commit", wraps=session.commit) as commit_spy:
                with atomic_transaction(session=session):
                    with atomic_transaction(session=session):
                        session.add(_holding())
                    assert commit_spy.call_count == 0
                assert commit_spy.call_count == 1
        finally:
            session.close()


class TestOptimisticLocking:

    def test_versioned_update(self, session_factory):
        with atomic_transaction(session_factory=session_factory) as session:
            holding = _holding()
            session.add(holding)
            session.flush()
            manager = OptimisticLockManager(session)

            assert manager.versioned_update(InvestmentHolding, holding.id, {"units": Decimal("2")}, 1) == 2
            with pytest.raises(OptimisticLockingError) as exc_info:
                manager.versioned_update(InvestmentHolding, holding.id, {"units": Decimal("3")}, 1)
            assert isinstance(exc_info.value, ConflictError)
            assert exc_info.value.details["expected_version"] == 1

    def test_conditional_update_reports_rowcount(self, session_factory, order_service, pending_order):
        with atomic_transaction(session_factory=session_factory) as session:
            manager = OptimisticLockManager(session)
            criteria = {"order_id": pending_order.order_id, "status": "pending"}

            assert manager.conditional_update(Order, criteria, {"status": "expired"}) == 1
            assert manager.conditional_update(Order, criteria, {"status": "expired"}) == 0

        assert order_service.get_order(pending_order.order_id).status == "expired"


class TestMonetaryDecimal:

    @pytest.mark.parametrize("value", [None, True, "abc", "NaN", "Infinity", float("nan")])
    def test_rejects_non_numbers(self, value):
        with pytest.raises(InvalidArgumentError):
            MonetaryDecimal.to_decimal(value)

    def test_float_goes_through_string(self):
        assert MonetaryDecimal.to_decimal(0.1) == Decimal("0.1")

    def test_rounding_is_half_up(self):
        assert MonetaryDecimal.quantize_usd("2.345") == Decimal("2.35")
        assert MonetaryDecimal.quantize_usd("-2.345") == Decimal("-2.35")
        assert MonetaryDecimal.quantize_units("0.000000005") == Decimal("0.00000001")

    def test_divide_by_zero_is_invalid(self):
        with pytest.raises(InvalidArgumentError):
            MonetaryDecimal.divide_precise("10", "0")
        assert MonetaryDecimal.divide_precise("1", "3") == Decimal("0.33333333")

    def test_validation_helpers(self):
        assert MonetaryDecimal.validate_non_negative(None) == Decimal("0")
        with pytest.raises(InvalidArgumentError):
            MonetaryDecimal.validate_non_negative("-0.01")
        with pytest.raises(InvalidArgumentError):
            MonetaryDecimal.validate_positive("0")
        assert MonetaryDecimal.format_usd("1234.5") == "$1,234.50"


class TestLoggingConfig:

    @pytest.fixture
    def restore_root_logger(self):
        root = logging.getLogger()
        original_level = root.level
        original_handlers = list(root.handlers)
        yield root
        for handler in list(root.handlers):
            if getattr(handler, "_checkout_ledger_handler", False) and handler not in original_handlers:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(original_level)

    def test_repeat_calls_do_not_duplicate_handlers(self, tmp_path, restore_root_logger):
        configure_logging(level="debug", log_dir=str(tmp_path))
        root = configure_logging(level="debug", log_dir=str(tmp_path))

        ours = [h for h in root.handlers if getattr(h, "_checkout_ledger_handler", False)]
        assert len(ours) == 2
        assert root.level == logging.DEBUG

    def test_errors_reach_the_error_file(self, tmp_path, restore_root_logger):
        configure_logging(level="INFO", log_dir=str(tmp_path))

        logging.getLogger("checkout.test").info("routine message")
        logging.getLogger("checkout.test").error("settlement failed")
        for handler in restore_root_logger.handlers:
            handler.flush()

        contents = (tmp_path / ERROR_LOG_FILENAME).read_text(encoding="utf-8")
        assert "settlement failed" in contents
        assert "routine message" not in contents
