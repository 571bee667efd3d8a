"""
Test order creation, lookups and post-payment lifecycle transitions
"""

import re
import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from config import Config
from models import OrderStatus
from services.exceptions import ConflictError, InvalidArgumentError, InvalidStateError, NotFoundError
from services.payment_confirmation_service import PaymentProof
from utils.owner_identity import GuestIdentity, new_guest_identity

PROOF = PaymentProof(transaction_reference="0x" + "ab" * 16)


class TestCreateOrder:
    """Order creation"""

    def test_creates_pending_order_with_window(self, pending_order, clock):
        assert re.fullmatch(r"ORD-\d+-[0-9A-F]{8}", pending_order.order_id)
        assert pending_order.status == OrderStatus.PENDING.value
        assert pending_order.owner_id == "user-1001"
        assert pending_order.is_guest is False
        assert pending_order.payment_method_code == "CARD"
        assert pending_order.payment_window_seconds == 30 * 60
        assert pending_order.expires_at == clock() + timedelta(minutes=30)
        assert pending_order.amount == Decimal("500.00")
        assert pending_order.billing_info["email"] == "ada@example.com"
        assert pending_order.items == [
            {"name": "PLAN-PRO", "quantity": 1, "price": "500.00", "total": "500.00"}
        ]

    def test_guest_order(self, order_service):
        guest = new_guest_identity()
        order = order_service.create_order(
            owner=guest, product_id="P-1", payment_method_code="btc",
            payment_method_name="Bitcoin", amount="150", crypto_rate="60000",
            wallet_address="bc1qexample",
        )

        assert order.owner_id.startswith("guest_")
        assert order.is_guest is True
        assert order.payment_method_code == "BTC"
        assert order.crypto_amount == Decimal("0.00250000")

    def test_guest_owner_id_string_is_recognised(self, order_service):
        order = order_service.create_order(
            owner="guest_1700000000000_deadbeef", product_id="P-1",
            payment_method_code="CARD", payment_method_name="Card", amount="10",
        )
        assert order.is_guest is True

    def test_per_method_window_override(self, order_service, clock):
        with patch.dict(Config.PAYMENT_WINDOW_OVERRIDES, {"BANK_TRANSFER": 1440}):
            order = order_service.create_order(
                owner="user-1", product_id="P-1", payment_method_code="bank_transfer",
                payment_method_name="Bank Transfer", amount="99.99",
            )

        assert order.payment_window_seconds == 1440 * 60
        assert order.expires_at == clock() + timedelta(days=1)

    @pytest.mark.parametrize("amount", ["0", "-10", "abc"])
    def test_rejects_bad_amount(self, order_service, amount):
        with pytest.raises(InvalidArgumentError):
            order_service.create_order(
                owner="user-1", product_id="P-1", payment_method_code="CARD",
                payment_method_name="Card", amount=amount,
            )

    def test_rejects_empty_guest_token(self, order_service):
        with pytest.raises(InvalidArgumentError):
            order_service.create_order(
                owner=GuestIdentity(token="").owner_id, product_id="P-1", payment_method_code="CARD",
                payment_method_name="Card", amount="10",
            )


class TestLookups:
    """Order reads"""

    def test_get_order(self, order_service, pending_order):
        assert order_service.get_order(pending_order.order_id).id == pending_order.id

    def test_get_missing_order(self, order_service):
        with pytest.raises(NotFoundError):
            order_service.get_order("ORD-0-00000000")

    def test_track_order_requires_matching_email(self, order_service, pending_order):
        found = order_service.track_order(pending_order.order_id, "  ADA@example.com")
        assert found.order_id == pending_order.order_id

        with pytest.raises(NotFoundError):
            order_service.track_order(pending_order.order_id, "someone@else.com")

    def test_list_orders_newest_first(self, order_service, clock):
        first = order_service.create_order(
            owner="user-7", product_id="P-1", payment_method_code="CARD", payment_method_name="Card", amount="1",
        )
        clock.advance(minutes=1)
        second = order_service.create_order(
            owner="user-7", product_id="P-2", payment_method_code="CARD", payment_method_name="Card", amount="2",
        )

        orders = order_service.list_orders_for_owner("user-7")
        assert [o.order_id for o in orders] == [second.order_id, first.order_id]
        assert order_service.list_orders_for_owner("user-8") == []


class TestLifecycle:
    """paid -> processing -> completed, with cancellation"""

    def test_full_lifecycle(self, order_service, payment_service, pending_order, clock):
        payment_service.confirm_payment(pending_order.order_id, PROOF)
        clock.advance(minutes=5)
        processing = order_service.start_processing(pending_order.order_id)
        clock.advance(minutes=5)
        completed = order_service.complete_order(pending_order.order_id)

        assert processing.status == "processing"
        assert processing.processing_started_at == clock() - timedelta(minutes=5)
        assert processing.updated_at == processing.processing_started_at
        assert completed.status == "completed"
        assert completed.completed_at == clock()
        assert completed.updated_at == clock()

    def test_cancel_paid_order(self, order_service, payment_service, pending_order):
        payment_service.confirm_payment(pending_order.order_id, PROOF)
        cancelled = order_service.cancel_order(pending_order.order_id, reason="out of stock")

        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_reason == "out of stock"
        assert cancelled.cancelled_at is not None

    def test_cannot_skip_states(self, order_service, payment_service, pending_order):
        with pytest.raises(InvalidStateError):
            order_service.start_processing(pending_order.order_id)
        with pytest.raises(InvalidStateError):
            order_service.cancel_order(pending_order.order_id)

        payment_service.confirm_payment(pending_order.order_id, PROOF)
        with pytest.raises(InvalidStateError):
            order_service.complete_order(pending_order.order_id)

    def test_terminal_states_are_final(self, order_service, payment_service, pending_order):
        payment_service.confirm_payment(pending_order.order_id, PROOF)
        order_service.cancel_order(pending_order.order_id)

        with pytest.raises(InvalidStateError):
            order_service.start_processing(pending_order.order_id)
        assert order_service.get_order(pending_order.order_id).status == "cancelled"

    def test_transition_loses_race(self, order_service, payment_service, session_factory, pending_order):
        payment_service.confirm_payment(pending_order.order_id, PROOF)

        from services import order_service as order_module
        real_load = order_module.load_order

        def load_then_race(session, order_id):
            order = real_load(session, order_id)
            # Another worker cancels between our read and our write
            with session_factory() as other:
                other.execute(
                    order_module.Order.__table__.update()
                    .where(order_module.Order.order_id == order_id)
                    .values(status="cancelled")
                )
                other.commit()
            return order

        with patch.object(order_module, "load_order", side_effect=load_then_race):
            with pytest.raises(ConflictError):
                order_service.start_processing(pending_order.order_id)

        assert order_service.get_order(pending_order.order_id).status == "cancelled"
