"""
Wallet Ledger Service - append-only balance-affecting entries

Every entry records previous and new balance with a net amount derived by
utils.ledger_math. Appends for one owner are ordered by an owner-scoped
sequence; the (owner_id, sequence) unique constraint plus the balance check
below act as a compare-and-swap on the owner's balance version.

Stored balances are never rewritten: a status change that moves money
appends a settlement or reversal entry at the head of the chain.
"""

import logging
import secrets
import string
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Union
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import (
    WalletTransaction, WalletTransactionType, WalletTransactionStatus,
    BalanceDirection, DepositType, InvestmentType, TradeSide,
)
from services.exceptions import (
    ConflictError, InvalidArgumentError, InvalidStateError, NotFoundError,
)
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import Clock, epoch_millis, now_from
from utils.decimal_precision import MonetaryDecimal
from utils.ledger_math import (
    coerce_type, compute_net_amount, compute_new_balance, fold_balance, resolve_direction,
)
from utils.optimistic_locking import OptimisticLockManager
from utils.state_validators import LedgerStatusValidator
from utils.transaction_metadata import (
    FundingMetadata, GeneralMetadata, InvestmentMetadata, TransactionMetadata,
    metadata_to_dict, validate_metadata,
)

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class SourceRef:
    """The external event an entry was created from"""
    kind: str  # "deposit" | "trade"
    source_id: str

    KINDS = ("deposit", "trade")

    def __post_init__(self):
        if self.kind not in self.KINDS:
            raise InvalidArgumentError(f"Unknown source kind: {self.kind!r}", field="source_ref")
        if not self.source_id or not str(self.source_id).strip():
            raise InvalidArgumentError("Source id is required", field="source_ref")
        object.__setattr__(self, "source_id", str(self.source_id).strip())

    @classmethod
    def deposit(cls, deposit_id: str) -> "SourceRef":
        return cls("deposit", deposit_id)

    @classmethod
    def trade(cls, trade_id: str) -> "SourceRef":
        return cls("trade", trade_id)

    @classmethod
    def parse(cls, raw: Union[str, "SourceRef"]) -> "SourceRef":
        """Accept ``deposit:<id>`` / ``trade:<id>`` strings"""
        if isinstance(raw, SourceRef):
            return raw
        kind, sep, source_id = str(raw).partition(":")
        if not sep:
            raise InvalidArgumentError(f"Malformed source reference: {raw!r}", field="source_ref")
        return cls(kind.strip().lower(), source_id)

    @property
    def column(self):
        return WalletTransaction.deposit_id if self.kind == "deposit" else WalletTransaction.trade_id

    def __str__(self) -> str:
        return f"{self.kind}:{self.source_id}"


@dataclass(frozen=True)
class DepositEvent:
    """A settled or pending deposit reported by the funding collaborator"""
    deposit_id: str
    owner_id: str
    amount: Decimal
    deposit_type: DepositType
    approved: bool = False
    fees: Decimal = Decimal("0")
    currency: str = field(default_factory=lambda: Config.DEFAULT_CURRENCY)
    transaction_hash: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    payment_proof: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class TradeEvent:
    """A settled trade reported by the brokerage collaborator"""
    trade_id: str
    owner_id: str
    side: TradeSide
    symbol: str
    quantity: Decimal
    price: Decimal
    fees: Decimal = Decimal("0")
    investment_type: InvestmentType = InvestmentType.STOCK
    asset_name: Optional[str] = None
    currency: str = field(default_factory=lambda: Config.DEFAULT_CURRENCY)


# Statuses an entry may be appended with; only COMPLETED moves the balance
_INITIAL_STATUSES = frozenset({
    WalletTransactionStatus.PENDING,
    WalletTransactionStatus.UNDER_REVIEW,
    WalletTransactionStatus.COMPLETED,
})


_SOURCE_TYPES = {
    "deposit": {WalletTransactionType.DEPOSIT},
    "trade": {WalletTransactionType.INVESTMENT_BUY, WalletTransactionType.INVESTMENT_SELL},
}


def generate_transaction_id() -> str:
    """``WTX<epoch-ms><6 upper-case alphanumerics>``"""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"WTX{epoch_millis()}{suffix}"


class WalletLedgerService:
    """Records wallet ledger entries and derives balances by folding them"""

    def __init__(self, session_factory: Optional[sessionmaker] = None, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _owner_entries(session: Session, owner_id: str) -> List[WalletTransaction]:
        stmt = (
            select(WalletTransaction)
            .where(WalletTransaction.owner_id == owner_id)
            .order_by(WalletTransaction.sequence)
        )
        return list(session.execute(stmt).scalars().all())

    @staticmethod
    def _find_by_source(session: Session, source: SourceRef) -> Optional[WalletTransaction]:
        stmt = select(WalletTransaction).where(source.column == source.source_id)
        return session.execute(stmt).scalar_one_or_none()

    def find_by_source(self, source_ref: Union[str, SourceRef]) -> Optional[WalletTransaction]:
        source = SourceRef.parse(source_ref)
        with atomic_transaction(session_factory=self.session_factory) as session:
            return self._find_by_source(session, source)

    def has_entry_for_source(self, source_ref: Union[str, SourceRef]) -> bool:
        """True when the deposit or trade has already produced an entry"""
        return self.find_by_source(source_ref) is not None

    def get_entry(self, transaction_id: str) -> WalletTransaction:
        with atomic_transaction(session_factory=self.session_factory) as session:
            entry = session.execute(
                select(WalletTransaction).where(WalletTransaction.transaction_id == transaction_id)
            ).scalar_one_or_none()
            if entry is None:
                raise NotFoundError(f"Wallet transaction {transaction_id} not found", transaction_id=transaction_id)
            return entry

    def current_balance(self, owner_id: str) -> Decimal:
        """Balance derived by folding the owner's completed entries in sequence order"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            return fold_balance(self._owner_entries(session, owner_id))

    def get_history(self, owner_id: str, limit: Optional[int] = None) -> List[WalletTransaction]:
        """Entries newest first"""
        stmt = (
            select(WalletTransaction)
            .where(WalletTransaction.owner_id == owner_id)
            .order_by(WalletTransaction.sequence.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with atomic_transaction(session_factory=self.session_factory) as session:
            return list(session.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _append(
        self,
        session: Session,
        entry: WalletTransaction,
        source: Optional[SourceRef] = None,
        supplied_previous: Optional[Decimal] = None,
    ) -> WalletTransaction:
        """
        Chain ``entry`` onto the owner's ledger: assign the next sequence and
        the previous and new balance, then flush.

        A supplied previous balance must match the folded balance once the
        owner has entries. Settlement and reversal entries pass none and
        chain onto whatever the fold says.
        """
        owner_id = entry.owner_id
        entries = self._owner_entries(session, owner_id)
        if entries:
            current = fold_balance(entries)
            if supplied_previous is not None and supplied_previous != current:
                logger.warning(
                    f"⚠️ LEDGER_STALE_BALANCE: owner={owner_id} supplied={supplied_previous} current={current}"
                )
                raise ConflictError(
                    f"Stale previous balance for {owner_id}: supplied {supplied_previous}, current {current}",
                    owner_id=owner_id,
                    supplied_balance=str(supplied_previous),
                    current_balance=str(current),
                )
            previous = current
            next_sequence = entries[-1].sequence + 1
        else:
            previous = supplied_previous if supplied_previous is not None else Decimal("0.00")
            next_sequence = 1

        entry.sequence = next_sequence
        entry.previous_balance = previous
        entry.new_balance = (
            compute_new_balance(previous, entry.net_amount, entry.direction)
            if entry.affects_balance else previous
        )
        session.add(entry)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            if source is not None:
                existing = self._find_by_source(session, source)
                if existing is not None:
                    logger.info(
                        f"🔁 LEDGER_IDEMPOTENT: {source} recorded concurrently as {existing.transaction_id}"
                    )
                    return existing
            logger.warning(
                f"⚠️ LEDGER_APPEND_CONFLICT: owner={owner_id} sequence={next_sequence} taken by a concurrent append"
            )
            raise ConflictError(
                f"Concurrent ledger append for {owner_id}; re-read the balance and retry",
                owner_id=owner_id,
                sequence=next_sequence,
            )

        logger.info(
            f"✅ LEDGER_RECORDED: {entry.transaction_id} owner={owner_id} {entry.type} "
            f"{entry.direction} net={entry.net_amount} {previous} → {entry.new_balance} seq={next_sequence}"
        )
        return entry

    def record(
        self,
        owner_id: str,
        tx_type: Union[str, WalletTransactionType],
        amount: Union[str, int, Decimal],
        fees: Union[str, int, Decimal, None],
        previous_balance: Union[str, int, Decimal],
        source_ref: Union[str, SourceRef, None] = None,
        metadata: Optional[TransactionMetadata] = None,
        *,
        direction: Union[str, BalanceDirection, None] = None,
        status: Union[str, WalletTransactionStatus] = WalletTransactionStatus.COMPLETED,
        description: Optional[str] = None,
        currency: Optional[str] = None,
        deposit_type: Optional[DepositType] = None,
        investment_type: Optional[InvestmentType] = None,
    ) -> WalletTransaction:
        """
        Append one ledger entry.

        ``previous_balance`` must match the owner's folded balance once the
        owner has entries; a mismatch means the caller's balance cache is
        stale and raises ConflictError. The first entry's previous balance is
        taken as the opening balance.

        An entry recorded PENDING or UNDER_REVIEW is a placeholder: its new
        balance equals its previous balance until update_status settles it.

        With a ``source_ref``, recording is idempotent: an existing entry for
        that deposit or trade is returned unchanged.
        """
        if not owner_id or not str(owner_id).strip():
            raise InvalidArgumentError("owner_id is required", field="owner_id")
        owner_id = str(owner_id).strip()
        tx_type = coerce_type(tx_type)
        amount_decimal = MonetaryDecimal.quantize_usd(MonetaryDecimal.validate_positive(amount, "amount"))
        if amount_decimal <= 0:
            raise InvalidArgumentError(f"amount rounds to zero: {amount}", field="amount")
        fees_decimal = MonetaryDecimal.quantize_usd(MonetaryDecimal.validate_non_negative(fees, "fees"))
        previous = MonetaryDecimal.quantize_usd(MonetaryDecimal.to_decimal(previous_balance, "previous_balance"))
        resolved_direction = resolve_direction(tx_type, direction)
        metadata = validate_metadata(tx_type, metadata)
        try:
            status_enum = status if isinstance(status, WalletTransactionStatus) else WalletTransactionStatus(status)
        except ValueError as e:
            raise InvalidArgumentError(f"Unknown ledger status: {status!r}", field="status") from e
        if status_enum not in _INITIAL_STATUSES:
            raise InvalidArgumentError(
                f"An entry cannot be recorded as {status_enum.value}",
                field="status",
            )

        source = SourceRef.parse(source_ref) if source_ref is not None else None
        if source is not None and tx_type not in _SOURCE_TYPES[source.kind]:
            raise InvalidArgumentError(
                f"A {source.kind} source cannot produce a {tx_type.value} entry",
                field="source_ref",
            )

        net_amount = compute_net_amount(tx_type, amount_decimal, fees_decimal)
        now = now_from(self.clock)

        with atomic_transaction(session_factory=self.session_factory) as session:
            if source is not None:
                existing = self._find_by_source(session, source)
                if existing is not None:
                    logger.info(
                        f"🔁 LEDGER_IDEMPOTENT: {source} already recorded as {existing.transaction_id}"
                    )
                    return existing

            entry = WalletTransaction(
                transaction_id=generate_transaction_id(),
                owner_id=owner_id,
                type=tx_type.value,
                direction=resolved_direction.value,
                amount=amount_decimal,
                fees=fees_decimal,
                net_amount=net_amount,
                currency=(currency or Config.DEFAULT_CURRENCY).upper(),
                status=status_enum.value,
                affects_balance=status_enum == WalletTransactionStatus.COMPLETED,
                deposit_id=source.source_id if source and source.kind == "deposit" else None,
                trade_id=source.source_id if source and source.kind == "trade" else None,
                deposit_type=deposit_type.value if deposit_type else None,
                investment_type=investment_type.value if investment_type else None,
                description=description or f"{tx_type.value.replace('_', ' ').title()} of {amount_decimal}",
                extra_data=metadata_to_dict(metadata),
                created_at=now,
                updated_at=now,
            )
            return self._append(session, entry, source=source, supplied_previous=previous)

    def record_from_deposit(self, deposit: DepositEvent, previous_balance: Union[str, int, Decimal]) -> WalletTransaction:
        """DEPOSIT entry for a deposit; COMPLETED when approved, PENDING otherwise"""
        metadata = FundingMetadata(
            transaction_hash=deposit.transaction_hash,
            bank_name=deposit.bank_name,
            account_number=deposit.account_number,
            payment_proof=deposit.payment_proof,
            notes=deposit.notes,
        )
        deposit_label = deposit.deposit_type.value.replace("_", " ").title()
        return self.record(
            deposit.owner_id,
            WalletTransactionType.DEPOSIT,
            deposit.amount,
            deposit.fees,
            previous_balance,
            source_ref=SourceRef.deposit(deposit.deposit_id),
            metadata=metadata,
            status=WalletTransactionStatus.COMPLETED if deposit.approved else WalletTransactionStatus.PENDING,
            description=f"Deposit via {deposit_label}",
            currency=deposit.currency,
            deposit_type=deposit.deposit_type,
        )

    def record_from_trade(self, trade: TradeEvent, previous_balance: Union[str, int, Decimal]) -> WalletTransaction:
        """INVESTMENT_BUY / INVESTMENT_SELL entry for a settled trade; amount is quantity x price"""
        quantity = MonetaryDecimal.validate_positive(trade.quantity, "quantity")
        price = MonetaryDecimal.validate_positive(trade.price, "price")
        tx_type = (
            WalletTransactionType.INVESTMENT_BUY if trade.side == TradeSide.BUY
            else WalletTransactionType.INVESTMENT_SELL
        )
        metadata = InvestmentMetadata(
            symbol=trade.symbol,
            quantity=quantity,
            price=price,
            asset_name=trade.asset_name,
        )
        return self.record(
            trade.owner_id,
            tx_type,
            MonetaryDecimal.multiply_precise(quantity, price),
            trade.fees,
            previous_balance,
            source_ref=SourceRef.trade(trade.trade_id),
            metadata=metadata,
            description=f"{trade.side.value} {quantity.normalize():f} shares of {metadata.symbol}",
            currency=trade.currency,
            investment_type=trade.investment_type,
        )

    # ------------------------------------------------------------------
    # Status progression
    # ------------------------------------------------------------------

    @staticmethod
    def _settlement_for(entry: WalletTransaction, now) -> WalletTransaction:
        """Balance-affecting copy of a placeholder that has just completed"""
        return WalletTransaction(
            transaction_id=generate_transaction_id(),
            owner_id=entry.owner_id,
            type=entry.type,
            direction=entry.direction,
            amount=entry.amount,
            fees=entry.fees,
            net_amount=entry.net_amount,
            currency=entry.currency,
            status=WalletTransactionStatus.COMPLETED.value,
            affects_balance=True,
            related_transaction_id=entry.transaction_id,
            deposit_type=entry.deposit_type,
            investment_type=entry.investment_type,
            description=f"Settlement of {entry.transaction_id}",
            extra_data=entry.extra_data,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _reversal_for(entry: WalletTransaction, now) -> Optional[WalletTransaction]:
        """Opposite-direction entry undoing a refunded entry's net effect"""
        net_amount = MonetaryDecimal.quantize_usd(entry.net_amount)
        if net_amount == 0:
            return None
        if entry.direction == BalanceDirection.CREDIT.value:
            tx_type, direction = WalletTransactionType.ADJUSTMENT, BalanceDirection.DEBIT
        else:
            tx_type, direction = WalletTransactionType.REFUND, BalanceDirection.CREDIT
        metadata = GeneralMetadata(
            reference=entry.transaction_id,
            notes=f"{entry.type} {entry.transaction_id} refunded",
        )
        return WalletTransaction(
            transaction_id=generate_transaction_id(),
            owner_id=entry.owner_id,
            type=tx_type.value,
            direction=direction.value,
            amount=net_amount,
            fees=Decimal("0.00"),
            net_amount=net_amount,
            currency=entry.currency,
            status=WalletTransactionStatus.COMPLETED.value,
            affects_balance=True,
            related_transaction_id=entry.transaction_id,
            description=f"Reversal of {entry.transaction_id}",
            extra_data=metadata_to_dict(metadata),
            created_at=now,
            updated_at=now,
        )

    def update_status(
        self,
        transaction_id: str,
        new_status: Union[str, WalletTransactionStatus],
    ) -> WalletTransaction:
        """
        Advance an entry's status, the only mutation a ledger entry allows.

        Past balances are never rewritten. Completing a placeholder appends
        a settlement entry carrying its net effect; refunding a completed
        entry appends a reversal. Either way the new entry chains onto the
        current balance and references the original.
        """
        try:
            target = new_status if isinstance(new_status, WalletTransactionStatus) else WalletTransactionStatus(new_status)
        except ValueError as e:
            raise InvalidArgumentError(f"Unknown ledger status: {new_status!r}", field="status") from e
        now = now_from(self.clock)

        with atomic_transaction(session_factory=self.session_factory) as session:
            entry = session.execute(
                select(WalletTransaction).where(WalletTransaction.transaction_id == transaction_id)
            ).scalar_one_or_none()
            if entry is None:
                raise NotFoundError(f"Wallet transaction {transaction_id} not found", transaction_id=transaction_id)

            current_status = entry.status
            if entry.related_transaction_id is not None:
                raise InvalidStateError(
                    f"Wallet transaction {transaction_id} compensates {entry.related_transaction_id} and is final",
                    current_status=current_status,
                    transaction_id=transaction_id,
                )
            if not LedgerStatusValidator.is_valid_transition(current_status, target):
                raise InvalidStateError(
                    f"Wallet transaction {transaction_id} cannot move from {current_status} to {target.value}",
                    current_status=current_status,
                    transaction_id=transaction_id,
                )

            changed = OptimisticLockManager(session).conditional_update(
                WalletTransaction,
                {"transaction_id": transaction_id, "status": current_status},
                {"status": target.value, "updated_at": now},
            )
            if changed == 0:
                raise ConflictError(
                    f"Wallet transaction {transaction_id} status changed concurrently",
                    transaction_id=transaction_id,
                )
            session.refresh(entry)

            if target == WalletTransactionStatus.COMPLETED and not entry.affects_balance:
                settlement = self._append(session, self._settlement_for(entry, now))
                logger.info(f"💰 LEDGER_SETTLED: {transaction_id} settled by {settlement.transaction_id}")
            elif target == WalletTransactionStatus.REFUNDED:
                reversal = self._reversal_for(entry, now)
                if reversal is not None:
                    reversal = self._append(session, reversal)
                    logger.info(f"↩️ LEDGER_REVERSED: {transaction_id} reversed by {reversal.transaction_id}")

            logger.info(f"✅ LEDGER_STATUS_UPDATED: {transaction_id} {current_status} → {target.value}")
            return entry

    def count_entries(self, owner_id: str) -> int:
        with atomic_transaction(session_factory=self.session_factory) as session:
            return session.execute(
                select(func.count()).select_from(WalletTransaction).where(WalletTransaction.owner_id == owner_id)
            ).scalar_one()
