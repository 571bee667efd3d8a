"""
Guest Reconciliation Service - moves a guest's orders to the account they logged in with

Runs at login. The set of orders is fixed by a point-in-time snapshot and
re-owned with one bulk UPDATE, so either every snapshotted order moves or
none does. Orders the guest places after the snapshot stay with the guest
and are picked up by the next run; re-running is always safe.

Only order ownership changes; wallet balances and ledger history are untouched.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union
from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from models import Order
from services.exceptions import ConflictError
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import Clock, now_from
from utils.owner_identity import AccountIdentity, GuestIdentity, parse_account_id, parse_guest_id

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    """Outcome of one reconciliation run"""
    guest_id: str
    owner_id: str
    connected_count: int = 0
    connected_orders: List[Order] = field(default_factory=list)


class GuestReconciliationService:
    """Re-labels guest orders as belonging to an authenticated account"""

    def __init__(self, session_factory: Optional[sessionmaker] = None, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock

    def reconcile(
        self,
        guest_id: Union[str, GuestIdentity],
        authenticated_owner_id: Union[str, AccountIdentity],
    ) -> ReconciliationResult:
        """
        Move every order currently owned by ``guest_id`` to ``authenticated_owner_id``.

        Raises InvalidArgumentError for a malformed guest id or an account id
        that is itself a guest id, and ConflictError if the bulk update does
        not touch exactly the snapshotted orders (nothing is applied then).
        """
        guest = guest_id if isinstance(guest_id, GuestIdentity) else parse_guest_id(guest_id)
        account = (
            authenticated_owner_id if isinstance(authenticated_owner_id, AccountIdentity)
            else parse_account_id(authenticated_owner_id)
        )
        result = ReconciliationResult(guest_id=guest.owner_id, owner_id=account.owner_id)
        connected_at = now_from(self.clock)

        with atomic_transaction(session_factory=self.session_factory) as session:
            snapshot = list(session.execute(
                select(Order.id).where(Order.owner_id == guest.owner_id).order_by(Order.id)
            ).scalars().all())

            if not snapshot:
                logger.info(f"👤 GUEST_RECONCILE: No orders for {guest.owner_id}")
                return result

            stmt = (
                update(Order)
                .where(Order.id.in_(snapshot), Order.owner_id == guest.owner_id)
                .values(
                    owner_id=account.owner_id,
                    is_guest=False,
                    connected_at=connected_at,
                    updated_at=connected_at,
                )
                .execution_options(synchronize_session=False)
            )
            changed = session.execute(stmt).rowcount

            if changed != len(snapshot):
                logger.warning(
                    f"⚠️ GUEST_RECONCILE_CONFLICT: {guest.owner_id} snapshot={len(snapshot)} updated={changed}"
                )
                raise ConflictError(
                    f"Guest orders for {guest.owner_id} changed during reconciliation; retry",
                    guest_id=guest.owner_id,
                    expected=len(snapshot),
                    updated=changed,
                )

            result.connected_orders = list(session.execute(
                select(Order).where(Order.id.in_(snapshot)).order_by(Order.created_at.desc(), Order.id.desc())
            ).scalars().all())
            result.connected_count = changed

        logger.info(
            f"🔗 GUEST_RECONCILED: {result.connected_count} order(s) from {guest.owner_id} → {account.owner_id}"
        )
        return result
