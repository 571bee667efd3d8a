"""
Pure ledger arithmetic.

Net amount and running balance are derived here, explicitly, before an
entry is persisted. Nothing in this module touches the database.
"""

from decimal import Decimal
from typing import Iterable, Optional, Union

from models import BalanceDirection, WalletTransactionType
from services.exceptions import InvalidArgumentError
from utils.decimal_precision import MonetaryDecimal

# Fees reduce what a credit adds
FEE_NETTED_CREDIT_TYPES = frozenset({
    WalletTransactionType.DEPOSIT,
    WalletTransactionType.REFUND,
    WalletTransactionType.BONUS,
})

# Fees increase what a debit removes
FEE_LOADED_DEBIT_TYPES = frozenset({
    WalletTransactionType.WITHDRAWAL,
    WalletTransactionType.INVESTMENT_BUY,
    WalletTransactionType.FEE,
})

CREDIT_TYPES = FEE_NETTED_CREDIT_TYPES | {WalletTransactionType.INVESTMENT_SELL}
DEBIT_TYPES = FEE_LOADED_DEBIT_TYPES

# Sign depends on the caller
DIRECTIONAL_TYPES = frozenset({
    WalletTransactionType.INTERNAL_TRANSFER,
    WalletTransactionType.ADJUSTMENT,
})


def coerce_type(tx_type: Union[str, WalletTransactionType]) -> WalletTransactionType:
    if isinstance(tx_type, WalletTransactionType):
        return tx_type
    try:
        return WalletTransactionType(str(tx_type).upper())
    except ValueError as e:
        raise InvalidArgumentError(f"Unknown transaction type: {tx_type!r}", field="type") from e


def compute_net_amount(
    tx_type: Union[str, WalletTransactionType],
    amount: Union[str, int, Decimal],
    fees: Union[str, int, Decimal, None] = None,
) -> Decimal:
    """
    Net effect magnitude of an entry.

    DEPOSIT, REFUND, BONUS: amount - fees (fees may not exceed amount)
    WITHDRAWAL, INVESTMENT_BUY, FEE: amount + fees
    anything else: amount
    """
    tx_type = coerce_type(tx_type)
    amount_decimal = MonetaryDecimal.validate_positive(amount, "amount")
    fees_decimal = MonetaryDecimal.validate_non_negative(fees, "fees")

    if tx_type in FEE_NETTED_CREDIT_TYPES:
        if fees_decimal > amount_decimal:
            raise InvalidArgumentError(
                f"{tx_type.value} fees {fees_decimal} exceed amount {amount_decimal}",
                field="fees",
            )
        net = amount_decimal - fees_decimal
    elif tx_type in FEE_LOADED_DEBIT_TYPES:
        net = amount_decimal + fees_decimal
    else:
        net = amount_decimal
    return MonetaryDecimal.quantize_usd(net)


def resolve_direction(
    tx_type: Union[str, WalletTransactionType],
    direction: Union[str, BalanceDirection, None] = None,
) -> BalanceDirection:
    """
    Credit or debit for a type. Fixed-sign types reject a contradicting
    explicit direction; INTERNAL_TRANSFER and ADJUSTMENT require one.
    """
    tx_type = coerce_type(tx_type)
    explicit: Optional[BalanceDirection] = None
    if direction is not None:
        try:
            explicit = direction if isinstance(direction, BalanceDirection) else BalanceDirection(str(direction).upper())
        except ValueError as e:
            raise InvalidArgumentError(f"Unknown direction: {direction!r}", field="direction") from e

    if tx_type in DIRECTIONAL_TYPES:
        if explicit is None:
            raise InvalidArgumentError(
                f"{tx_type.value} requires an explicit direction (CREDIT or DEBIT)",
                field="direction",
            )
        return explicit

    implied = BalanceDirection.CREDIT if tx_type in CREDIT_TYPES else BalanceDirection.DEBIT
    if explicit is not None and explicit != implied:
        raise InvalidArgumentError(
            f"{tx_type.value} is always a {implied.value}, got {explicit.value}",
            field="direction",
        )
    return implied


def signed_net_amount(net_amount: Decimal, direction: Union[str, BalanceDirection]) -> Decimal:
    direction = direction if isinstance(direction, BalanceDirection) else BalanceDirection(direction)
    return net_amount if direction == BalanceDirection.CREDIT else -net_amount


def compute_new_balance(
    previous_balance: Union[str, int, Decimal],
    net_amount: Decimal,
    direction: Union[str, BalanceDirection],
) -> Decimal:
    """previous_balance +/- net_amount, quantized to cents"""
    previous = MonetaryDecimal.to_decimal(previous_balance, "previous_balance")
    return MonetaryDecimal.quantize_usd(previous + signed_net_amount(net_amount, direction))


def fold_balance(entries: Iterable, opening_balance: Union[str, int, Decimal, None] = None) -> Decimal:
    """
    Replay entries (ordered by sequence) into a balance.

    Only entries appended as balance-affecting (recorded COMPLETED, or a
    settlement or reversal entry) move the balance; a PENDING or
    UNDER_REVIEW entry is a zero-effect placeholder whatever its status
    becomes later. Without an explicit opening balance the first entry's
    ``previous_balance`` seeds the fold.
    """
    balance: Optional[Decimal] = (
        MonetaryDecimal.to_decimal(opening_balance, "opening_balance") if opening_balance is not None else None
    )
    for entry in entries:
        if balance is None:
            balance = MonetaryDecimal.to_decimal(entry.previous_balance, "previous_balance")
        if not entry.affects_balance:
            continue
        balance += signed_net_amount(MonetaryDecimal.to_decimal(entry.net_amount, "net_amount"), entry.direction)
    return MonetaryDecimal.quantize_usd(balance if balance is not None else Decimal("0"))
