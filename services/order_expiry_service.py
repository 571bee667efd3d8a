"""
Order Expiry Service - bulk status transition for lapsed pending orders

Optional maintenance task run by the scheduler. Expiry is a status change
guarded by ``status = pending``; no order is ever deleted.
"""

import logging
from typing import Any, Dict, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import Order, OrderStatus
from services.exceptions import PaymentDomainError
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import Clock, now_from
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)


class OrderExpiryService:
    """Marks pending orders past their window as expired, one batch per run"""

    def __init__(
        self,
        batch_size: Optional[int] = None,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
    ):
        self.batch_size = batch_size or Config.ORDER_EXPIRY_BATCH_SIZE
        self.session_factory = session_factory
        self.clock = clock

    def expire_stale_orders(self, session: Optional[Session] = None) -> Dict[str, Any]:
        """
        Expire up to ``batch_size`` lapsed pending orders.

        Returns ``{"processed", "expired_orders", "errors"}``. Orders paid or
        expired by a request between the scan and the update are skipped by
        the status guard.
        """
        results: Dict[str, Any] = {
            "processed": 0,
            "expired_orders": [],
            "errors": []
        }

        try:
            with atomic_transaction(session=session, session_factory=self.session_factory) as active:
                return self._process_with_session(active, results)
        except PaymentDomainError as e:
            logger.error(f"❌ ORDER_EXPIRY_SERVICE_ERROR: {e}")
            results["errors"].append(str(e))
            return results

    def _process_with_session(self, session: Session, results: Dict[str, Any]) -> Dict[str, Any]:
        cutoff_time = now_from(self.clock)

        stmt = (
            select(Order.order_id)
            .where(
                Order.status == OrderStatus.PENDING.value,
                Order.expires_at <= cutoff_time,
            )
            .order_by(Order.expires_at)
            .limit(self.batch_size)
        )
        candidates = list(session.execute(stmt).scalars().all())
        results["processed"] = len(candidates)

        if not candidates:
            logger.debug("🔍 ORDER_EXPIRY: No lapsed pending orders")
            return results

        logger.info(f"🔍 ORDER_EXPIRY: Found {len(candidates)} lapsed pending orders")

        lock_manager = OptimisticLockManager(session)
        for order_id in candidates:
            changed = lock_manager.conditional_update(
                Order,
                {"order_id": order_id, "status": OrderStatus.PENDING.value},
                {"status": OrderStatus.EXPIRED.value, "updated_at": cutoff_time},
                extra_conditions=[Order.expires_at <= cutoff_time],
            )
            if changed:
                results["expired_orders"].append(order_id)
                logger.info(f"⏰ ORDER_EXPIRED: {order_id} (sweep)")
            else:
                logger.debug(f"⏭️ ORDER_EXPIRY: {order_id} changed state before the sweep reached it")

        logger.info(
            f"✅ ORDER_EXPIRY_COMPLETE: {len(results['expired_orders'])}/{len(candidates)} orders expired"
        )
        return results
