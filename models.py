"""
Checkout Ledger - Database Schema
=================================

Persistent records for the payment and wallet core:
- Orders with a bounded payment window and a monotonic lifecycle
- Append-only wallet ledger entries with running balances
- Per-owner investment holdings with purchase history

Orders are never deleted. Expiry is a status, not a removal.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class WalletTransactionType(Enum):
    """Balance-affecting event types"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    INVESTMENT_BUY = "INVESTMENT_BUY"
    INVESTMENT_SELL = "INVESTMENT_SELL"
    INTERNAL_TRANSFER = "INTERNAL_TRANSFER"
    REFUND = "REFUND"
    FEE = "FEE"
    BONUS = "BONUS"
    ADJUSTMENT = "ADJUSTMENT"


class WalletTransactionStatus(Enum):
    """Ledger entry status"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    UNDER_REVIEW = "UNDER_REVIEW"
    REFUNDED = "REFUNDED"


class BalanceDirection(Enum):
    """Effect of an entry on the owner's balance"""
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class DepositType(Enum):
    """Funding rail of a deposit"""
    CRYPTO = "CRYPTO"
    BANK_TRANSFER = "BANK_TRANSFER"
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    PAYPAL = "PAYPAL"
    WIRE = "WIRE"
    CHECK = "CHECK"


class InvestmentType(Enum):
    """Instrument class of a trade"""
    STOCK = "STOCK"
    CRYPTO = "CRYPTO"
    ETF = "ETF"
    BOND = "BOND"
    MUTUAL_FUND = "MUTUAL_FUND"


class TradeSide(Enum):
    """Direction of a settled trade"""
    BUY = "BUY"
    SELL = "SELL"


# ============================================================================
# ORDERS
# ============================================================================

class Order(Base):
    """One checkout attempt with a time-bounded payment window"""
    __tablename__ = 'orders'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, index=True)  # Public facing ID

    # Ownership: account id or guest pseudo-id
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_guest: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    connected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)  # Set when a guest order is reconciled

    product_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value, nullable=False)

    # Payment details
    payment_method: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_method_code: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_currency: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    crypto_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    transaction_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Payment window
    payment_window_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Lifecycle timestamps
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Snapshots
    billing_info: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    items: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    extra_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            f"status IN ('{OrderStatus.PENDING.value}', '{OrderStatus.PAID.value}', "
            f"'{OrderStatus.PROCESSING.value}', '{OrderStatus.COMPLETED.value}', "
            f"'{OrderStatus.CANCELLED.value}', '{OrderStatus.EXPIRED.value}')",
            name='ck_order_status_valid'
        ),
        CheckConstraint('amount > 0', name='ck_order_amount_positive'),
        Index('ix_orders_status_expires', 'status', 'expires_at'),
        Index('ix_orders_owner_created', 'owner_id', 'created_at'),
    )

    @property
    def billing_email(self) -> Optional[str]:
        if not self.billing_info:
            return None
        email = self.billing_info.get("email")
        return email.strip().lower() if email else None

    def __repr__(self):
        return f"<Order {self.order_id} {self.status} owner={self.owner_id}>"


# ============================================================================
# WALLET LEDGER
# ============================================================================

class WalletTransaction(Base):
    """Append-only wallet ledger entry"""
    __tablename__ = 'wallet_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)

    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Owner-scoped monotonic balance version
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    type: Mapped[str] = mapped_column(String(24), nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    fees: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=0, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    previous_balance: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    new_balance: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=WalletTransactionStatus.COMPLETED.value, nullable=False
    )
    # Fixed at append time; later status changes append compensating entries instead
    affects_balance: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Set on settlement and reversal entries
    related_transaction_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)

    # Source links (idempotency keys)
    deposit_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    trade_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    deposit_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    investment_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    description: Mapped[str] = mapped_column(Text, nullable=False)
    extra_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)  # Tagged per-type metadata

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint('owner_id', 'sequence', name='uq_wallet_tx_owner_sequence'),
        CheckConstraint('amount > 0', name='ck_wallet_tx_amount_positive'),
        CheckConstraint('fees >= 0', name='ck_wallet_tx_fees_non_negative'),
        CheckConstraint("direction IN ('CREDIT', 'DEBIT')", name='ck_wallet_tx_direction_valid'),
        Index('ix_wallet_tx_owner_status', 'owner_id', 'status'),
    )

    @property
    def source_ref(self) -> Optional[str]:
        if self.deposit_id:
            return f"deposit:{self.deposit_id}"
        if self.trade_id:
            return f"trade:{self.trade_id}"
        return None

    def __repr__(self):
        return (
            f"<WalletTransaction {self.transaction_id} {self.type} {self.direction} "
            f"{self.net_amount} seq={self.sequence}>"
        )


# ============================================================================
# INVESTMENT HOLDINGS
# ============================================================================

class InvestmentHolding(Base):
    """A user's position in one instrument"""
    __tablename__ = 'investment_holdings'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    instrument_id: Mapped[str] = mapped_column(String(32), nullable=False)
    instrument_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    units: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    avg_purchase_price: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    total_invested: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)

    # Optimistic locking version
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    purchases: Mapped[List["HoldingPurchase"]] = relationship(
        "HoldingPurchase",
        back_populates="holding",
        order_by="HoldingPurchase.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint('owner_id', 'instrument_id', name='uq_holding_owner_instrument'),
        CheckConstraint('units >= 0', name='ck_holding_units_non_negative'),
        CheckConstraint('avg_purchase_price > 0', name='ck_holding_avg_price_positive'),
    )

    @property
    def is_closed(self) -> bool:
        return self.units == 0

    def __repr__(self):
        return f"<InvestmentHolding {self.owner_id}/{self.instrument_id} units={self.units}>"


class HoldingPurchase(Base):
    """Purchase history entry of a holding"""
    __tablename__ = 'holding_purchases'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    holding_id: Mapped[int] = mapped_column(
        Integer, ForeignKey('investment_holdings.id'), nullable=False, index=True
    )
    purchased_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    units: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    fees: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=0, nullable=False)

    holding: Mapped["InvestmentHolding"] = relationship("InvestmentHolding", back_populates="purchases")
