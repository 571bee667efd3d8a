"""
Test holding aggregation and valuation
"""

import pytest
from decimal import Decimal
from unittest.mock import patch
from sqlalchemy import update

from models import TradeSide
from services.exceptions import (
    ConflictError, InsufficientPositionError, InvalidArgumentError, NotFoundError,
)

OWNER = "user-77"


class StaticPrices:
    def __init__(self, prices):
        self.prices = prices

    def get_price(self, instrument_id):
        return self.prices.get(instrument_id)


def _cents(value):
    return value.quantize(Decimal("0.01"))


class TestApplyTrade:
    """Buys and sells"""

    def test_first_buy_creates_holding(self, holding_service, clock):
        holding = holding_service.apply_trade(
            OWNER, "acme", TradeSide.BUY, Decimal("10"), Decimal("100"), Decimal("1.50"), instrument_name="Acme",
        )

        assert holding.instrument_id == "ACME"
        assert holding.units == Decimal("10")
        assert holding.avg_purchase_price == Decimal("100")
        assert holding.total_invested == Decimal("1000.00")
        assert len(holding.purchases) == 1
        assert holding.purchases[0].fees == Decimal("1.50")
        assert holding.purchases[0].purchased_at == clock()

    def test_weighted_average_example(self, holding_service):
        holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("10"), Decimal("100"))
        holding = holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("5"), Decimal("120"))

        assert holding.units == Decimal("15")
        assert _cents(holding.avg_purchase_price) == Decimal("106.67")
        assert holding.total_invested == Decimal("1600.00")
        assert [p.units for p in holding.purchases] == [Decimal("10"), Decimal("5")]
        assert holding.version == 2

        valuation = holding_service.valuation(OWNER, "ACME", Decimal("150"))
        assert valuation.current_value == Decimal("2250.00")
        assert valuation.gain_loss == Decimal("650.00")
        assert valuation.gain_loss_pct == Decimal("40.63")
        assert valuation.avg_purchase_price == Decimal("106.67")
        assert valuation.has_position is True

    def test_sell_keeps_average_and_shrinks_invested(self, holding_service):
        holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("10"), Decimal("100"))
        holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("10"), Decimal("200"))

        holding = holding_service.apply_trade(OWNER, "ACME", "SELL", Decimal("5"), Decimal("300"))

        assert holding.units == Decimal("15")
        assert holding.avg_purchase_price == Decimal("150")
        assert holding.total_invested == Decimal("2250.00")
        assert len(holding.purchases) == 2

    def test_buy_then_sell_same_units_closes_position(self, holding_service):
        holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("10"), Decimal("100"))
        before = holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("4"), Decimal("130"))

        closed = holding_service.apply_trade(OWNER, "ACME", "SELL", Decimal("14"), Decimal("90"))

        assert closed.units == Decimal("0")
        assert closed.avg_purchase_price == before.avg_purchase_price
        assert closed.total_invested == Decimal("0")
        assert holding_service.list_holdings(OWNER) == []
        assert len(holding_service.list_holdings(OWNER, include_closed=True)) == 1

        valuation = holding_service.valuation(OWNER, "ACME", Decimal("95"))
        assert valuation.current_value == Decimal("0.00")
        assert valuation.gain_loss_pct == Decimal("0.00")
        assert valuation.has_position is False

    def test_buy_reopens_closed_position_at_trade_price(self, holding_service):
        holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("2"), Decimal("50"))
        holding_service.apply_trade(OWNER, "ACME", "SELL", Decimal("2"), Decimal("60"))

        reopened = holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("3"), Decimal("70"))

        assert reopened.units == Decimal("3")
        assert reopened.avg_purchase_price == Decimal("70")
        assert reopened.total_invested == Decimal("210.00")

    def test_updates_stamp_clock_time(self, holding_service, clock):
        opened = holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("2"), Decimal("50"))
        clock.advance(hours=1)
        bought = holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("1"), Decimal("60"))
        assert bought.updated_at == clock()
        assert bought.created_at == opened.created_at

        clock.advance(hours=1)
        sold = holding_service.apply_trade(OWNER, "ACME", "SELL", Decimal("1"), Decimal("70"))
        assert sold.updated_at == clock()

    def test_oversell_rejected(self, holding_service):
        holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("3"), Decimal("10"))

        with pytest.raises(InsufficientPositionError):
            holding_service.apply_trade(OWNER, "ACME", "SELL", Decimal("3.5"), Decimal("10"))
        assert holding_service.get_holding(OWNER, "ACME").units == Decimal("3")

    def test_sell_without_holding_rejected(self, holding_service):
        with pytest.raises(InsufficientPositionError):
            holding_service.apply_trade(OWNER, "NONE", "SELL", Decimal("1"), Decimal("10"))

    @pytest.mark.parametrize("units,price,side", [
        (Decimal("0"), Decimal("10"), "BUY"),
        (Decimal("1"), Decimal("-1"), "BUY"),
        (Decimal("1"), Decimal("10"), "HOLD"),
    ])
    def test_invalid_trade_arguments(self, holding_service, units, price, side):
        with pytest.raises(InvalidArgumentError):
            holding_service.apply_trade(OWNER, "ACME", side, units, price)

    def test_concurrent_update_conflicts(self, holding_service, session_factory):
        holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("10"), Decimal("100"))

        from services import investment_holding_service as holding_module
        real_load = holding_module.InvestmentHoldingService._load_holding
        calls = {"count": 0}

        def load_then_race(session, owner_id, instrument_id):
            holding = real_load(session, owner_id, instrument_id)
            calls["count"] += 1
            if calls["count"] == 1:
                # Another settlement bumps the version between our read and our write
                with session_factory() as other:
                    other.execute(
                        update(holding_module.InvestmentHolding)
                        .where(holding_module.InvestmentHolding.id == holding.id)
                        .values(version=holding.version + 1)
                    )
                    other.commit()
            return holding

        with patch.object(holding_module.InvestmentHoldingService, "_load_holding", side_effect=load_then_race):
            with pytest.raises(ConflictError):
                holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("1"), Decimal("100"))

        holding = holding_service.get_holding(OWNER, "ACME")
        assert holding.units == Decimal("10")
        assert len(holding.purchases) == 1


class TestValuation:
    """Read-side valuation"""

    def test_missing_holding_is_zero_position(self, holding_service):
        valuation = holding_service.valuation(OWNER, "GHOST", Decimal("12.5"))

        assert valuation.has_position is False
        assert valuation.units == Decimal("0")
        assert valuation.current_value == Decimal("0.00")
        assert valuation.gain_loss == Decimal("0.00")
        assert valuation.gain_loss_pct == Decimal("0.00")
        assert valuation.current_price == Decimal("12.50")

    def test_loss_is_negative(self, holding_service):
        holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("8"), Decimal("25"))
        valuation = holding_service.valuation(OWNER, "ACME", Decimal("20"))

        assert valuation.gain_loss == Decimal("-40.00")
        assert valuation.gain_loss_pct == Decimal("-20.00")

    def test_get_missing_holding(self, holding_service):
        with pytest.raises(NotFoundError):
            holding_service.get_holding(OWNER, "GHOST")

    def test_portfolio_valuation(self, holding_service):
        holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("10"), Decimal("100"))
        holding_service.apply_trade(OWNER, "BETA", "BUY", Decimal("4"), Decimal("50"))
        holding_service.apply_trade(OWNER, "GONE", "BUY", Decimal("1"), Decimal("10"))
        holding_service.apply_trade(OWNER, "GONE", "SELL", Decimal("1"), Decimal("10"))

        portfolio = holding_service.portfolio_valuation(OWNER, StaticPrices({"ACME": Decimal("110"), "BETA": Decimal("40")}))

        assert [row.instrument_id for row in portfolio.holdings] == ["ACME", "BETA"]
        assert portfolio.total_value == Decimal("1260.00")
        assert portfolio.total_invested == Decimal("1200.00")
        assert portfolio.total_gain_loss == Decimal("60.00")
        assert portfolio.total_gain_loss_pct == Decimal("5.00")

    def test_portfolio_requires_prices(self, holding_service):
        holding_service.apply_trade(OWNER, "ACME", "BUY", Decimal("1"), Decimal("100"))

        with pytest.raises(NotFoundError):
            holding_service.portfolio_valuation(OWNER, StaticPrices({}))
