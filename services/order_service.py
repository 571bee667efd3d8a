"""
Order Service - creation, lookups and post-payment lifecycle transitions

Every status change is one status-guarded UPDATE (set status=X only if
status is still what we read). Orders are never deleted.
"""

import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import Order, OrderStatus
from services.exceptions import ConflictError, InvalidArgumentError, NotFoundError
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import Clock, epoch_millis, now_from
from utils.decimal_precision import MonetaryDecimal
from utils.optimistic_locking import OptimisticLockManager
from utils.owner_identity import OwnerIdentity, coerce_owner
from utils.state_validators import OrderStateValidator

logger = logging.getLogger(__name__)


def generate_order_id() -> str:
    """``ORD-<epoch-ms>-<8 upper-case hex>``"""
    return f"{Config.ORDER_ID_PREFIX}-{epoch_millis()}-{secrets.token_hex(4).upper()}"


def load_order(session: Session, order_id: str) -> Order:
    """Fetch an order by public id or raise NotFoundError"""
    if not order_id or not str(order_id).strip():
        raise InvalidArgumentError("order_id is required", field="order_id")
    order = session.execute(
        select(Order).where(Order.order_id == str(order_id).strip())
    ).scalar_one_or_none()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
    return order


def transition_order(
    session: Session,
    order: Order,
    to_status: OrderStatus,
    updates: Optional[Dict[str, Any]] = None,
    extra_conditions: Optional[list] = None,
    now: Optional[datetime] = None,
) -> None:
    """
    Move ``order`` to ``to_status`` with a compare-and-swap on its current status.

    ``now`` stamps ``updated_at`` so the row carries the caller's clock.
    Raises InvalidStateError when the graph forbids the move and ConflictError
    when another writer changed the status first.
    """
    from_status = order.status
    OrderStateValidator.ensure_transition(order.order_id, from_status, to_status)

    values = {"status": to_status.value, **(updates or {})}
    if now is not None:
        values["updated_at"] = now
    changed = OptimisticLockManager(session).conditional_update(
        Order,
        {"order_id": order.order_id, "status": from_status},
        values,
        extra_conditions=extra_conditions,
    )
    if changed == 0:
        logger.warning(
            f"⚠️ ORDER_TRANSITION_CONFLICT: {order.order_id} {from_status} → {to_status.value} lost the race"
        )
        raise ConflictError(
            f"Order {order.order_id} was modified concurrently",
            order_id=order.order_id,
            expected_status=from_status,
        )
    session.refresh(order)


class OrderService:
    """Creates orders and drives them through processing, completion and cancellation"""

    def __init__(self, session_factory: Optional[sessionmaker] = None, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock

    def create_order(
        self,
        owner: Union[str, OwnerIdentity],
        product_id: str,
        payment_method_code: str,
        payment_method_name: str,
        amount: Union[str, int, Decimal],
        payment_currency: Optional[str] = None,
        crypto_rate: Union[str, int, Decimal, None] = None,
        wallet_address: Optional[str] = None,
        billing_info: Optional[Dict[str, Any]] = None,
        items: Optional[List[Dict[str, Any]]] = None,
        extra_data: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """Create a pending order whose payment window depends on the payment method"""
        identity = coerce_owner(owner)
        if not product_id or not str(product_id).strip():
            raise InvalidArgumentError("product_id is required", field="product_id")
        if not payment_method_code or not str(payment_method_code).strip():
            raise InvalidArgumentError("payment_method_code is required", field="payment_method_code")
        amount_decimal = MonetaryDecimal.quantize_usd(MonetaryDecimal.validate_positive(amount, "amount"))
        if amount_decimal <= 0:
            raise InvalidArgumentError(f"amount rounds to zero: {amount}", field="amount")

        crypto_amount = None
        if crypto_rate is not None:
            rate = MonetaryDecimal.validate_positive(crypto_rate, "crypto_rate")
            crypto_amount = MonetaryDecimal.divide_precise(amount_decimal, rate, MonetaryDecimal.UNITS_PRECISION)

        if billing_info and billing_info.get("email"):
            billing_info = {**billing_info, "email": str(billing_info["email"]).strip().lower()}

        if not items:
            items = [{
                "name": str(product_id),
                "quantity": 1,
                "price": str(amount_decimal),
                "total": str(amount_decimal),
            }]

        method_code = str(payment_method_code).strip().upper()
        window_seconds = Config.get_payment_window_seconds(method_code)
        now = now_from(self.clock)

        order = Order(
            order_id=generate_order_id(),
            owner_id=identity.owner_id,
            is_guest=identity.is_guest,
            product_id=str(product_id).strip(),
            status=OrderStatus.PENDING.value,
            payment_method=payment_method_name,
            payment_method_code=method_code,
            payment_currency=(payment_currency or Config.DEFAULT_CURRENCY).upper(),
            amount=amount_decimal,
            crypto_amount=crypto_amount,
            wallet_address=wallet_address,
            payment_window_seconds=window_seconds,
            expires_at=now + timedelta(seconds=window_seconds),
            billing_info=billing_info,
            items=items,
            extra_data=extra_data,
            notes=notes,
            created_at=now,
            updated_at=now,
        )

        with atomic_transaction(session_factory=self.session_factory) as session:
            session.add(order)
            session.flush()

        logger.info(
            f"🛒 ORDER_CREATED: {order.order_id} owner={order.owner_id} guest={order.is_guest} "
            f"amount={amount_decimal} {order.payment_currency} via {method_code} "
            f"window={window_seconds}s"
        )
        return order

    def get_order(self, order_id: str) -> Order:
        with atomic_transaction(session_factory=self.session_factory) as session:
            return load_order(session, order_id)

    def track_order(self, order_id: str, email: str) -> Order:
        """Public order lookup; the billing email must match or the order is reported missing"""
        if not email or not str(email).strip():
            raise InvalidArgumentError("email is required", field="email")
        with atomic_transaction(session_factory=self.session_factory) as session:
            order = session.execute(
                select(Order).where(Order.order_id == str(order_id).strip())
            ).scalar_one_or_none()
            if order is None or order.billing_email != str(email).strip().lower():
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            return order

    def list_orders_for_owner(self, owner_id: str) -> List[Order]:
        """Orders of one owner, newest first"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            stmt = (
                select(Order)
                .where(Order.owner_id == owner_id)
                .order_by(Order.created_at.desc(), Order.id.desc())
            )
            return list(session.execute(stmt).scalars().all())

    def start_processing(self, order_id: str) -> Order:
        """paid -> processing"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            order = load_order(session, order_id)
            now = now_from(self.clock)
            transition_order(
                session, order, OrderStatus.PROCESSING,
                {"processing_started_at": now},
                now=now,
            )
        logger.info(f"⚙️ ORDER_PROCESSING: {order.order_id}")
        return order

    def complete_order(self, order_id: str) -> Order:
        """processing -> completed"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            order = load_order(session, order_id)
            now = now_from(self.clock)
            transition_order(
                session, order, OrderStatus.COMPLETED,
                {"completed_at": now},
                now=now,
            )
        logger.info(f"✅ ORDER_COMPLETED: {order.order_id}")
        return order

    def cancel_order(self, order_id: str, reason: Optional[str] = None) -> Order:
        """paid | processing -> cancelled"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            order = load_order(session, order_id)
            now = now_from(self.clock)
            transition_order(
                session, order, OrderStatus.CANCELLED,
                {"cancelled_at": now, "cancellation_reason": reason},
                now=now,
            )
        logger.info(f"🚫 ORDER_CANCELLED: {order.order_id} reason={reason!r}")
        return order
