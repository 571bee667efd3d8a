"""
Order and ledger status graphs
"""

import pytest

from models import OrderStatus, WalletTransactionStatus
from services.exceptions import InvalidStateError
from utils.state_validators import LedgerStatusValidator, OrderStateValidator

ALLOWED = [
    ("pending", "paid"),
    ("pending", "expired"),
    ("paid", "processing"),
    ("paid", "cancelled"),
    ("processing", "completed"),
    ("processing", "cancelled"),
]


class TestOrderStateValidator:

    @pytest.mark.parametrize("from_status,to_status", ALLOWED)
    def test_forward_transitions_allowed(self, from_status, to_status):
        assert OrderStateValidator.is_valid_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        ("pending", "processing"),
        ("pending", "completed"),
        ("pending", "cancelled"),
        ("paid", "pending"),
        ("paid", "expired"),
        ("processing", "paid"),
        ("pending", "pending"),
    ])
    def test_skips_and_backward_moves_rejected(self, from_status, to_status):
        is_valid, reason = OrderStateValidator.validate_transition(from_status, to_status)
        assert is_valid is False
        assert "Invalid transition" in reason

    @pytest.mark.parametrize("terminal", ["completed", "cancelled", "expired"])
    def test_terminal_states_have_no_exits(self, terminal):
        assert OrderStateValidator.is_terminal_state(terminal)
        assert OrderStateValidator.get_valid_next_states(terminal) == set()
        for status in OrderStatus:
            assert not OrderStateValidator.is_valid_transition(terminal, status)

    def test_unknown_status_is_invalid(self):
        is_valid, reason = OrderStateValidator.validate_transition("pending", "shipped")
        assert is_valid is False
        assert "Unknown order status" in reason

    def test_ensure_transition_raises_with_current_status(self):
        with pytest.raises(InvalidStateError) as exc_info:
            OrderStateValidator.ensure_transition("ORD-1-AAAA0000", OrderStatus.EXPIRED, OrderStatus.PAID)

        assert exc_info.value.current_status == "expired"
        assert exc_info.value.to_dict()["code"] == "invalid_state"


class TestLedgerStatusValidator:

    def test_pending_progressions(self):
        assert LedgerStatusValidator.is_valid_transition("PENDING", "COMPLETED")
        assert LedgerStatusValidator.is_valid_transition(
            WalletTransactionStatus.UNDER_REVIEW, WalletTransactionStatus.FAILED
        )
        assert LedgerStatusValidator.is_valid_transition("COMPLETED", "REFUNDED")

    def test_final_statuses_do_not_move(self):
        assert not LedgerStatusValidator.is_valid_transition("FAILED", "COMPLETED")
        assert not LedgerStatusValidator.is_valid_transition("COMPLETED", "PENDING")
        assert not LedgerStatusValidator.is_valid_transition("PENDING", "NOPE")
