#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union, Optional

from services.exceptions import InvalidArgumentError

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    USD_PRECISION = Decimal("0.01")  # 2 decimal places for money
    UNITS_PRECISION = Decimal("0.00000001")  # 8 decimal places for units and crypto
    PRICE_PRECISION = Decimal("0.00000001")  # 8 decimal places for unit prices and rates

    @classmethod
    def to_decimal(cls, value: Union[Numeric, float, None], context: str = "monetary") -> Decimal:
        """Convert a numeric value to Decimal, rejecting anything that is not a finite number"""
        if value is None:
            raise InvalidArgumentError(f"{context} is required", field=context)

        if isinstance(value, bool):
            raise InvalidArgumentError(f"{context} must be numeric, got bool", field=context)

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError) as e:
                raise InvalidArgumentError(
                    f"{context} is not a valid number: {value!r}", field=context
                ) from e

        if not decimal_value.is_finite():
            raise InvalidArgumentError(f"{context} must be finite: {value!r}", field=context)

        if abs(decimal_value) > Decimal("999999999999"):  # 999 billion limit
            logger.warning(f"Unusually large monetary value: {decimal_value} in context: {context}")

        return decimal_value

    @classmethod
    def quantize_usd(cls, amount: Union[Numeric, float]) -> Decimal:
        """Quantize amount to money precision (2 decimal places)"""
        decimal_amount = cls.to_decimal(amount, "amount")
        return decimal_amount.quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_units(cls, units: Union[Numeric, float]) -> Decimal:
        """Quantize units or crypto amounts to 8 decimal places"""
        decimal_units = cls.to_decimal(units, "units")
        return decimal_units.quantize(cls.UNITS_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_price(cls, price: Union[Numeric, float]) -> Decimal:
        """Quantize a unit price or exchange rate to 8 decimal places"""
        decimal_price = cls.to_decimal(price, "price")
        return decimal_price.quantize(cls.PRICE_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def multiply_precise(
        cls,
        amount: Union[Numeric, float],
        rate: Union[Numeric, float],
        result_precision: Optional[Decimal] = None,
    ) -> Decimal:
        """Multiply two values with proper precision handling"""
        result = cls.to_decimal(amount, "multiply_amount") * cls.to_decimal(rate, "multiply_rate")
        return result.quantize(result_precision or cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def divide_precise(
        cls,
        dividend: Union[Numeric, float],
        divisor: Union[Numeric, float],
        result_precision: Optional[Decimal] = None,
    ) -> Decimal:
        """Divide with proper precision; division by zero is an invalid argument"""
        dividend_decimal = cls.to_decimal(dividend, "divide_dividend")
        divisor_decimal = cls.to_decimal(divisor, "divide_divisor")

        if divisor_decimal == 0:
            raise InvalidArgumentError(f"Division by zero: {dividend} / {divisor}", field="divisor")

        result = dividend_decimal / divisor_decimal
        return result.quantize(result_precision or cls.PRICE_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def validate_positive(cls, amount: Union[Numeric, float], context: str = "amount") -> Decimal:
        """Validate that amount is positive and return as Decimal"""
        amount_decimal = cls.to_decimal(amount, context)

        if amount_decimal <= 0:
            raise InvalidArgumentError(
                f"{context} must be positive: {amount_decimal}", field=context, value=str(amount_decimal)
            )

        return amount_decimal

    @classmethod
    def validate_non_negative(cls, amount: Union[Numeric, float, None], context: str = "amount") -> Decimal:
        """Validate that amount is zero or more; None counts as zero"""
        if amount is None:
            return Decimal("0")
        amount_decimal = cls.to_decimal(amount, context)

        if amount_decimal < 0:
            raise InvalidArgumentError(
                f"{context} must not be negative: {amount_decimal}", field=context, value=str(amount_decimal)
            )

        return amount_decimal

    @classmethod
    def format_usd(cls, amount: Union[Numeric, float]) -> str:
        """Format amount as USD string with proper precision"""
        amount_decimal = cls.quantize_usd(amount)
        return f"${amount_decimal:,.2f}"
