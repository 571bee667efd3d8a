"""
State Transition Validators
===========================

Transition graphs for orders and wallet ledger entries. Services consult
these before issuing a status-guarded UPDATE; the UPDATE itself is what
makes the transition safe under concurrency.
"""

import logging
from typing import Dict, Set, Tuple, Union

from models import OrderStatus, WalletTransactionStatus
from services.exceptions import InvalidStateError

logger = logging.getLogger(__name__)


class OrderStateValidator:
    """
    Order lifecycle graph.

    pending -> paid | expired
    paid -> processing | cancelled
    processing -> completed | cancelled

    No transition may skip a state or move backward.
    """

    VALID_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
        OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.EXPIRED},
        OrderStatus.PAID: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
        OrderStatus.PROCESSING: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
        OrderStatus.COMPLETED: set(),
        OrderStatus.CANCELLED: set(),
        OrderStatus.EXPIRED: set(),
    }

    TERMINAL_STATES: Set[OrderStatus] = {
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
    }

    @staticmethod
    def _coerce(status: Union[str, OrderStatus]) -> OrderStatus:
        return status if isinstance(status, OrderStatus) else OrderStatus(status)

    @classmethod
    def validate_transition(
        cls,
        from_status: Union[str, OrderStatus],
        to_status: Union[str, OrderStatus],
    ) -> Tuple[bool, str]:
        """Return (is_valid, reason); a same-state move is not a transition"""
        try:
            from_enum = cls._coerce(from_status)
            to_enum = cls._coerce(to_status)
        except ValueError as e:
            return False, f"Unknown order status: {e}"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_enum, set())
        if to_enum in valid_next_states:
            return True, "Valid state transition"

        return False, (
            f"Invalid transition: {from_enum.value} -> {to_enum.value}. "
            f"Valid transitions from {from_enum.value}: {sorted(s.value for s in valid_next_states)}"
        )

    @classmethod
    def is_valid_transition(cls, from_status: Union[str, OrderStatus], to_status: Union[str, OrderStatus]) -> bool:
        is_valid, _ = cls.validate_transition(from_status, to_status)
        return is_valid

    @classmethod
    def ensure_transition(
        cls,
        order_id: str,
        from_status: Union[str, OrderStatus],
        to_status: Union[str, OrderStatus],
    ) -> None:
        """Raise InvalidStateError unless ``from_status -> to_status`` is on the graph"""
        is_valid, reason = cls.validate_transition(from_status, to_status)
        if not is_valid:
            current = from_status.value if isinstance(from_status, OrderStatus) else from_status
            logger.warning(f"⚠️ INVALID_TRANSITION: Order {order_id} {reason}")
            raise InvalidStateError(
                f"Order {order_id} cannot move to {cls._coerce(to_status).value} from {current}",
                current_status=current,
                order_id=order_id,
            )

    @classmethod
    def get_valid_next_states(cls, current_status: Union[str, OrderStatus]) -> Set[OrderStatus]:
        return cls.VALID_TRANSITIONS.get(cls._coerce(current_status), set())

    @classmethod
    def is_terminal_state(cls, status: Union[str, OrderStatus]) -> bool:
        return cls._coerce(status) in cls.TERMINAL_STATES


class LedgerStatusValidator:
    """Status progression of a wallet ledger entry, the only mutation an entry allows"""

    VALID_TRANSITIONS: Dict[WalletTransactionStatus, Set[WalletTransactionStatus]] = {
        WalletTransactionStatus.PENDING: {
            WalletTransactionStatus.COMPLETED,
            WalletTransactionStatus.FAILED,
            WalletTransactionStatus.CANCELLED,
            WalletTransactionStatus.UNDER_REVIEW,
        },
        WalletTransactionStatus.UNDER_REVIEW: {
            WalletTransactionStatus.COMPLETED,
            WalletTransactionStatus.FAILED,
            WalletTransactionStatus.CANCELLED,
        },
        WalletTransactionStatus.COMPLETED: {WalletTransactionStatus.REFUNDED},
        WalletTransactionStatus.FAILED: set(),
        WalletTransactionStatus.CANCELLED: set(),
        WalletTransactionStatus.REFUNDED: set(),
    }

    @classmethod
    def is_valid_transition(
        cls,
        from_status: Union[str, WalletTransactionStatus],
        to_status: Union[str, WalletTransactionStatus],
    ) -> bool:
        try:
            from_enum = WalletTransactionStatus(from_status) if isinstance(from_status, str) else from_status
            to_enum = WalletTransactionStatus(to_status) if isinstance(to_status, str) else to_status
        except ValueError:
            return False
        return to_enum in cls.VALID_TRANSITIONS.get(from_enum, set())
