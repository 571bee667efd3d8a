"""
Investment Holding Service - per-owner, per-instrument positions

Buys move the weighted-average cost basis; sells never do. Valuation is
computed at read time against a reference price supplied by the caller or
by a PriceSource collaborator and is never stored.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Protocol, Union
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from config import Config
from models import HoldingPurchase, InvestmentHolding, TradeSide
from services.exceptions import (
    ConflictError, InsufficientPositionError, InvalidArgumentError, NotFoundError,
)
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import Clock, now_from
from utils.decimal_precision import MonetaryDecimal
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENTS = Decimal("0.01")


def _display(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


class PriceSource(Protocol):
    """Reference price collaborator"""

    def get_price(self, instrument_id: str) -> Optional[Decimal]:
        ...


@dataclass(frozen=True)
class HoldingValuation:
    """Point-in-time valuation of one holding, rounded to cents for display"""
    owner_id: str
    instrument_id: str
    units: Decimal
    avg_purchase_price: Decimal
    total_invested: Decimal
    current_price: Decimal
    current_value: Decimal
    gain_loss: Decimal
    gain_loss_pct: Decimal
    has_position: bool

    @classmethod
    def zero_position(cls, owner_id: str, instrument_id: str, current_price: Decimal) -> "HoldingValuation":
        return cls(
            owner_id=owner_id,
            instrument_id=instrument_id,
            units=ZERO,
            avg_purchase_price=_display(ZERO),
            total_invested=_display(ZERO),
            current_price=_display(current_price),
            current_value=_display(ZERO),
            gain_loss=_display(ZERO),
            gain_loss_pct=_display(ZERO),
            has_position=False,
        )


@dataclass
class PortfolioValuation:
    """Aggregate of an owner's open holdings"""
    owner_id: str
    total_value: Decimal = field(default_factory=lambda: _display(ZERO))
    total_invested: Decimal = field(default_factory=lambda: _display(ZERO))
    total_gain_loss: Decimal = field(default_factory=lambda: _display(ZERO))
    total_gain_loss_pct: Decimal = field(default_factory=lambda: _display(ZERO))
    holdings: List[HoldingValuation] = field(default_factory=list)


def value_holding(
    owner_id: str,
    instrument_id: str,
    units: Decimal,
    avg_purchase_price: Decimal,
    total_invested: Decimal,
    current_price: Decimal,
) -> HoldingValuation:
    """
    current_value = units * price
    gain_loss = current_value - total_invested
    gain_loss_pct = gain_loss / total_invested * 100, or 0 with nothing invested
    """
    current_value = units * current_price
    gain_loss = current_value - total_invested
    gain_loss_pct = (gain_loss / total_invested * Decimal(100)) if total_invested != 0 else ZERO
    return HoldingValuation(
        owner_id=owner_id,
        instrument_id=instrument_id,
        units=units,
        avg_purchase_price=_display(avg_purchase_price),
        total_invested=_display(total_invested),
        current_price=_display(current_price),
        current_value=_display(current_value),
        gain_loss=_display(gain_loss),
        gain_loss_pct=_display(gain_loss_pct),
        has_position=units > 0,
    )


class InvestmentHoldingService:
    """Applies settled trades to holdings and values them"""

    def __init__(self, session_factory: Optional[sessionmaker] = None, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock

    @staticmethod
    def _normalise_key(owner_id: str, instrument_id: str):
        if not owner_id or not str(owner_id).strip():
            raise InvalidArgumentError("owner_id is required", field="owner_id")
        if not instrument_id or not str(instrument_id).strip():
            raise InvalidArgumentError("instrument_id is required", field="instrument_id")
        return str(owner_id).strip(), str(instrument_id).strip().upper()

    @staticmethod
    def _load_holding(session: Session, owner_id: str, instrument_id: str) -> Optional[InvestmentHolding]:
        stmt = (
            select(InvestmentHolding)
            .where(
                InvestmentHolding.owner_id == owner_id,
                InvestmentHolding.instrument_id == instrument_id,
            )
            .options(selectinload(InvestmentHolding.purchases))
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one_or_none()

    def apply_trade(
        self,
        owner_id: str,
        instrument_id: str,
        side: Union[str, TradeSide],
        units: Union[str, int, Decimal],
        price: Union[str, int, Decimal],
        fees: Union[str, int, Decimal, None] = None,
        instrument_name: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> InvestmentHolding:
        """
        Apply one settled trade.

        BUY creates the holding or re-weights its average price. SELL reduces
        units and shrinks total invested in proportion; the average price is
        unchanged and a fully sold holding is kept with zero units.
        """
        owner_id, instrument_id = self._normalise_key(owner_id, instrument_id)
        try:
            side_enum = side if isinstance(side, TradeSide) else TradeSide(str(side).upper())
        except ValueError as e:
            raise InvalidArgumentError(f"Unknown trade side: {side!r}", field="side") from e
        units_decimal = MonetaryDecimal.quantize_units(MonetaryDecimal.validate_positive(units, "units"))
        price_decimal = MonetaryDecimal.quantize_price(MonetaryDecimal.validate_positive(price, "price"))
        if units_decimal <= 0 or price_decimal <= 0:
            raise InvalidArgumentError("units and price must be positive after rounding", field="units")
        fees_decimal = MonetaryDecimal.quantize_usd(MonetaryDecimal.validate_non_negative(fees, "fees"))
        now = now_from(self.clock)

        with atomic_transaction(session_factory=self.session_factory) as session:
            holding = self._load_holding(session, owner_id, instrument_id)

            if side_enum == TradeSide.BUY:
                holding = self._apply_buy(
                    session, holding, owner_id, instrument_id, units_decimal, price_decimal,
                    fees_decimal, instrument_name, currency, now,
                )
            else:
                holding = self._apply_sell(session, holding, owner_id, instrument_id, units_decimal, now)

        logger.info(
            f"📈 HOLDING_UPDATED: {owner_id}/{instrument_id} {side_enum.value} {units_decimal} @ {price_decimal} "
            f"→ units={holding.units} avg={holding.avg_purchase_price} invested={holding.total_invested}"
        )
        return holding

    def _apply_buy(
        self,
        session: Session,
        holding: Optional[InvestmentHolding],
        owner_id: str,
        instrument_id: str,
        units: Decimal,
        price: Decimal,
        fees: Decimal,
        instrument_name: Optional[str],
        currency: Optional[str],
        now,
    ) -> InvestmentHolding:
        cost = units * price

        if holding is None:
            holding = InvestmentHolding(
                owner_id=owner_id,
                instrument_id=instrument_id,
                instrument_name=instrument_name,
                units=units,
                avg_purchase_price=price,
                total_invested=MonetaryDecimal.quantize_usd(cost),
                currency=(currency or Config.DEFAULT_CURRENCY).upper(),
                version=1,
                created_at=now,
                updated_at=now,
            )
            holding.purchases.append(HoldingPurchase(purchased_at=now, units=units, price=price, fees=fees))
            session.add(holding)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                logger.warning(f"⚠️ HOLDING_CREATE_CONFLICT: {owner_id}/{instrument_id} created concurrently")
                raise ConflictError(
                    f"Holding {owner_id}/{instrument_id} was created concurrently; retry",
                    owner_id=owner_id,
                    instrument_id=instrument_id,
                )
            return holding

        old_units = MonetaryDecimal.to_decimal(holding.units, "units")
        old_avg = MonetaryDecimal.to_decimal(holding.avg_purchase_price, "avg_purchase_price")
        new_units = old_units + units
        if old_units == 0:
            new_avg = price
        else:
            new_avg = MonetaryDecimal.quantize_price((old_units * old_avg + cost) / new_units)

        updates = {
            "units": new_units,
            "avg_purchase_price": new_avg,
            "total_invested": MonetaryDecimal.quantize_usd(
                MonetaryDecimal.to_decimal(holding.total_invested, "total_invested") + cost
            ),
            "updated_at": now,
        }
        if instrument_name and not holding.instrument_name:
            updates["instrument_name"] = instrument_name

        OptimisticLockManager(session).versioned_update(InvestmentHolding, holding.id, updates, holding.version)
        session.add(HoldingPurchase(holding_id=holding.id, purchased_at=now, units=units, price=price, fees=fees))
        session.flush()
        return self._load_holding(session, owner_id, instrument_id)

    def _apply_sell(
        self,
        session: Session,
        holding: Optional[InvestmentHolding],
        owner_id: str,
        instrument_id: str,
        units: Decimal,
        now,
    ) -> InvestmentHolding:
        held = MonetaryDecimal.to_decimal(holding.units, "units") if holding is not None else ZERO
        if holding is None or units > held:
            logger.warning(f"⚠️ INSUFFICIENT_POSITION: {owner_id}/{instrument_id} sell {units} > held {held}")
            raise InsufficientPositionError(
                f"Cannot sell {units} units of {instrument_id}; holding has {held}",
                owner_id=owner_id,
                instrument_id=instrument_id,
                requested=str(units),
                held=str(held),
            )

        remaining = held - units
        total_invested = MonetaryDecimal.to_decimal(holding.total_invested, "total_invested")
        new_total = ZERO if remaining == 0 else total_invested * remaining / held

        OptimisticLockManager(session).versioned_update(
            InvestmentHolding,
            holding.id,
            {"units": remaining, "total_invested": MonetaryDecimal.quantize_usd(new_total), "updated_at": now},
            holding.version,
        )
        return self._load_holding(session, owner_id, instrument_id)

    def get_holding(self, owner_id: str, instrument_id: str) -> InvestmentHolding:
        owner_id, instrument_id = self._normalise_key(owner_id, instrument_id)
        with atomic_transaction(session_factory=self.session_factory) as session:
            holding = self._load_holding(session, owner_id, instrument_id)
            if holding is None:
                raise NotFoundError(
                    f"No holding of {instrument_id} for {owner_id}",
                    owner_id=owner_id,
                    instrument_id=instrument_id,
                )
            return holding

    def list_holdings(self, owner_id: str, include_closed: bool = False) -> List[InvestmentHolding]:
        stmt = (
            select(InvestmentHolding)
            .where(InvestmentHolding.owner_id == owner_id)
            .options(selectinload(InvestmentHolding.purchases))
            .order_by(InvestmentHolding.instrument_id)
        )
        if not include_closed:
            stmt = stmt.where(InvestmentHolding.units > 0)
        with atomic_transaction(session_factory=self.session_factory) as session:
            return list(session.execute(stmt).scalars().all())

    def valuation(
        self,
        owner_id: str,
        instrument_id: str,
        current_price: Union[str, int, Decimal],
    ) -> HoldingValuation:
        """Unrealized gain/loss at ``current_price``; a missing holding yields a zero position"""
        owner_id, instrument_id = self._normalise_key(owner_id, instrument_id)
        price = MonetaryDecimal.validate_non_negative(current_price, "current_price")
        with atomic_transaction(session_factory=self.session_factory) as session:
            holding = self._load_holding(session, owner_id, instrument_id)

        if holding is None:
            return HoldingValuation.zero_position(owner_id, instrument_id, price)

        return value_holding(
            owner_id,
            instrument_id,
            MonetaryDecimal.to_decimal(holding.units, "units"),
            MonetaryDecimal.to_decimal(holding.avg_purchase_price, "avg_purchase_price"),
            MonetaryDecimal.to_decimal(holding.total_invested, "total_invested"),
            price,
        )

    def portfolio_valuation(self, owner_id: str, price_source: PriceSource) -> PortfolioValuation:
        """Value every open holding of ``owner_id`` against ``price_source``"""
        portfolio = PortfolioValuation(owner_id=owner_id)
        total_value = ZERO
        total_invested = ZERO

        for holding in self.list_holdings(owner_id):
            price = price_source.get_price(holding.instrument_id)
            if price is None:
                raise NotFoundError(
                    f"No reference price for {holding.instrument_id}",
                    instrument_id=holding.instrument_id,
                )
            row = value_holding(
                owner_id,
                holding.instrument_id,
                MonetaryDecimal.to_decimal(holding.units, "units"),
                MonetaryDecimal.to_decimal(holding.avg_purchase_price, "avg_purchase_price"),
                MonetaryDecimal.to_decimal(holding.total_invested, "total_invested"),
                MonetaryDecimal.validate_non_negative(price, "current_price"),
            )
            portfolio.holdings.append(row)
            total_value += MonetaryDecimal.to_decimal(holding.units, "units") * MonetaryDecimal.to_decimal(price, "current_price")
            total_invested += MonetaryDecimal.to_decimal(holding.total_invested, "total_invested")

        gain_loss = total_value - total_invested
        portfolio.total_value = _display(total_value)
        portfolio.total_invested = _display(total_invested)
        portfolio.total_gain_loss = _display(gain_loss)
        portfolio.total_gain_loss_pct = _display(
            gain_loss / total_invested * Decimal(100) if total_invested != 0 else ZERO
        )
        return portfolio
