"""
Payment Confirmation Service - applies external payment signals to pending orders

The expiry clock is consulted before a proof is looked at. An order found
past its window is durably moved to ``expired`` even though the call itself
fails, so expiry is discovered lazily on access as well as by the sweep.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union
from sqlalchemy.orm import sessionmaker

from config import Config
from models import Order, OrderStatus
from services.exceptions import (
    ConflictError, InvalidArgumentError, InvalidStateError, PaymentWindowExpiredError,
)
from services.order_service import load_order, transition_order
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import Clock, now_from
from utils.decimal_precision import MonetaryDecimal
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentProof:
    """External confirmation signal: the rail's transaction reference plus optional details"""
    transaction_reference: str
    crypto_amount: Optional[Decimal] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PaymentWindow:
    """Read-only view of a pending order's remaining payment time"""
    order_id: str
    expires_at: datetime
    remaining_seconds: int
    total_window_seconds: int
    progress_percentage: Decimal
    is_expired: bool
    amount: Decimal
    crypto_amount: Optional[Decimal]
    currency: str
    wallet_address: Optional[str]
    payment_method: str


class PaymentConfirmationService:
    """confirm_payment and get_payment_window over the order state machine"""

    def __init__(self, session_factory: Optional[sessionmaker] = None, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock

    @staticmethod
    def _validate_proof(proof: PaymentProof) -> str:
        reference = (proof.transaction_reference or "").strip()
        if not reference:
            raise InvalidArgumentError("Transaction reference is required", field="transaction_reference")
        if len(reference) < Config.MIN_TRANSACTION_REFERENCE_LENGTH:
            raise InvalidArgumentError(
                f"Transaction reference must be at least {Config.MIN_TRANSACTION_REFERENCE_LENGTH} characters",
                field="transaction_reference",
            )
        return reference

    @staticmethod
    def _ensure_pending(order: Order) -> None:
        if order.status != OrderStatus.PENDING.value:
            raise InvalidStateError(
                f"Order {order.order_id} is {order.status}, not pending",
                current_status=order.status,
                order_id=order.order_id,
            )

    def confirm_payment(self, order_id: str, proof: Union[PaymentProof, str]) -> Order:
        """
        pending -> paid.

        Raises NotFoundError, InvalidStateError when the order is no longer
        pending, PaymentWindowExpiredError after durably marking a lapsed
        order expired, InvalidArgumentError for a malformed proof and
        ConflictError when a concurrent writer changed the order first.
        """
        if isinstance(proof, str):
            proof = PaymentProof(transaction_reference=proof)
        now = now_from(self.clock)
        window_lapsed = False

        with atomic_transaction(session_factory=self.session_factory) as session:
            order = load_order(session, order_id)
            self._ensure_pending(order)

            if order.expires_at <= now:
                changed = OptimisticLockManager(session).conditional_update(
                    Order,
                    {"order_id": order.order_id, "status": OrderStatus.PENDING.value},
                    {"status": OrderStatus.EXPIRED.value, "updated_at": now},
                    extra_conditions=[Order.expires_at <= now],
                )
                session.refresh(order)
                if changed == 0 and order.status != OrderStatus.EXPIRED.value:
                    raise ConflictError(
                        f"Order {order.order_id} was modified concurrently",
                        order_id=order.order_id,
                        expected_status=OrderStatus.PENDING.value,
                    )
                window_lapsed = True
            else:
                reference = self._validate_proof(proof)
                updates = {
                    "paid_at": now,
                    "confirmed_at": now,
                    "transaction_hash": reference,
                }
                if proof.crypto_amount is not None:
                    updates["crypto_amount"] = MonetaryDecimal.quantize_units(proof.crypto_amount)
                if proof.notes:
                    updates["notes"] = proof.notes
                transition_order(
                    session, order, OrderStatus.PAID, updates,
                    extra_conditions=[Order.expires_at > now],
                    now=now,
                )

        if window_lapsed:
            logger.info(f"⏰ ORDER_EXPIRED: {order.order_id} payment window closed at {order.expires_at}")
            raise PaymentWindowExpiredError(
                f"Payment window for order {order.order_id} expired at {order.expires_at.isoformat()}",
                order_id=order.order_id,
                expires_at=order.expires_at.isoformat(),
            )

        logger.info(f"💰 ORDER_PAID: {order.order_id} reference={order.transaction_hash}")
        return order

    def get_payment_window(self, order_id: str) -> PaymentWindow:
        """
        Remaining time of a pending order's payment window.

        Read-only: a pending order past its window reports zero seconds and
        ``is_expired`` but is left for confirm_payment or the sweep to expire.
        Progress is the share of the window still remaining, measured against
        the window the order was created with.
        """
        now = now_from(self.clock)
        with atomic_transaction(session_factory=self.session_factory) as session:
            order = load_order(session, order_id)
            self._ensure_pending(order)

        total_seconds = order.payment_window_seconds or Config.get_payment_window_seconds(order.payment_method_code)
        remaining_seconds = max(0, int((order.expires_at - now).total_seconds()))
        progress = Decimal(remaining_seconds) / Decimal(total_seconds) * Decimal(100)
        progress = min(Decimal(100), max(Decimal(0), progress)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

        return PaymentWindow(
            order_id=order.order_id,
            expires_at=order.expires_at,
            remaining_seconds=remaining_seconds,
            total_window_seconds=total_seconds,
            progress_percentage=progress,
            is_expired=order.expires_at <= now,
            amount=order.amount,
            crypto_amount=order.crypto_amount,
            currency=order.payment_currency,
            wallet_address=order.wallet_address,
            payment_method=order.payment_method,
        )
