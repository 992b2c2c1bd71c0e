"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING, InvalidOperation, getcontext
from typing import Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    WHOLE_UNIT = Decimal("1")
    NGN_PRECISION = Decimal("0.01")  # 2 decimal places for NGN
    TOKEN_PRECISION = Decimal("0.00000001")  # 8 decimal places for token amounts
    RATE_PRECISION = Decimal("0.00000001")  # 8 decimal places for exchange rates

    @classmethod
    def to_decimal(cls, value: Union[str, int, float, Decimal], context: str = "monetary") -> Decimal:
        """Convert a numeric value to Decimal, raising ValueError on junk input"""
        if isinstance(value, Decimal):
            return value
        if value is None or isinstance(value, bool):
            raise ValueError(f"{context}: {value!r} is not a number")
        try:
            # Convert to string first to avoid float precision issues
            decimal_value = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValueError(f"{context}: {value!r} is not a number")
        if not decimal_value.is_finite():
            raise ValueError(f"{context}: {value!r} is not a finite number")
        return decimal_value

    @classmethod
    def round_whole(cls, amount: Decimal) -> Decimal:
        """Round half-up to whole fiat units"""
        return cls.to_decimal(amount).quantize(cls.WHOLE_UNIT, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_ngn(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        """Quantize amount to NGN precision (2 decimal places)"""
        return cls.to_decimal(amount, "NGN").quantize(cls.NGN_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_token(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        """Quantize amount to token precision (8 decimal places)"""
        return cls.to_decimal(amount, "token").quantize(cls.TOKEN_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_rate(cls, rate: Union[str, int, float, Decimal]) -> Decimal:
        return cls.to_decimal(rate, "rate").quantize(cls.RATE_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def ceil_whole(cls, amount: Decimal) -> Decimal:
        return cls.to_decimal(amount).quantize(cls.WHOLE_UNIT, rounding=ROUND_CEILING)

    @classmethod
    def within_tolerance(cls, actual: Decimal, expected: Decimal, tolerance_percent: Decimal) -> bool:
        """True when actual deviates from expected by no more than tolerance_percent"""
        if expected == 0:
            return actual == 0
        deviation = abs(actual - expected) / abs(expected) * Decimal("100")
        return deviation <= tolerance_percent
