#!/usr/bin/env python3
"""
Decimal Precision Utilities for Settlement Calculations
Money is carried at 4 decimal places, coins and tickets at whole units.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN, InvalidOperation, getcontext
from typing import Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    MONEY_PRECISION = Decimal("0.0001")  # 4 decimal places for stored money
    USD_PRECISION = Decimal("0.01")  # 2 decimal places for prices and display
    UNIT_PRECISION = Decimal("1")  # Coins and tickets

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Convert any numeric value to Decimal, going through str to avoid float artefacts"""
        if value is None:
            return Decimal("0")

        if isinstance(value, Decimal):
            return value

        try:
            decimal_value = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            logger.error(f"❌ DECIMAL: Failed to convert {value!r} in context {context}: {e}")
            raise ValueError(f"Invalid numeric value {value!r} for {context}") from e

        if not decimal_value.is_finite():
            raise ValueError(f"Non-finite value {value!r} for {context}")

        if abs(decimal_value) > Decimal("999999999999"):
            logger.warning(f"⚠️ DECIMAL: Unusually large value {decimal_value} in context: {context}")

        return decimal_value

    @classmethod
    def quantize_money(cls, amount: Numeric) -> Decimal:
        """Round half-up to the 4-place money unit"""
        return cls.to_decimal(amount, "money").quantize(cls.MONEY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def floor_money(cls, amount: Numeric) -> Decimal:
        """Round down to the 4-place money unit; used for shares so their sum never exceeds the pot"""
        return cls.to_decimal(amount, "money_share").quantize(cls.MONEY_PRECISION, rounding=ROUND_DOWN)

    @classmethod
    def quantize_usd(cls, amount: Numeric) -> Decimal:
        """Quantize to 2 decimal places"""
        return cls.to_decimal(amount, "USD").quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_units(cls, amount: Numeric) -> Decimal:
        """Whole coins / tickets"""
        return cls.to_decimal(amount, "units").quantize(cls.UNIT_PRECISION, rounding=ROUND_DOWN)

    @classmethod
    def canonical(cls, amount: Numeric) -> str:
        """Fixed 4-place text form used inside ledger hashes"""
        return f"{cls.quantize_money(amount):.4f}"

    @classmethod
    def validate_positive(cls, amount: Numeric, context: str = "amount") -> Decimal:
        """Validate that amount is positive and return as Decimal"""
        amount_decimal = cls.to_decimal(amount, context)

        if amount_decimal <= 0:
            raise ValueError(f"Amount must be positive in context {context}: {amount_decimal}")

        return amount_decimal

    @classmethod
    def within_tolerance(cls, amount1: Numeric, amount2: Numeric, tolerance: Numeric = "0.01") -> bool:
        """True when two amounts differ by no more than the tolerance"""
        diff = abs(cls.to_decimal(amount1, "compare_amount1") - cls.to_decimal(amount2, "compare_amount2"))
        return diff <= cls.to_decimal(tolerance, "compare_tolerance")
