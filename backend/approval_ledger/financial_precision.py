"""
LEDGER ENGINE - DECIMAL PRECISION & MONEY UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe arithmetic for ledger figures
3. Amount validation (no negative movements)
4. Rounding at the storage boundary only
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')

Amount = Union[float, int, str, Decimal]


class FinancialPrecisionError(Exception):
    """Raised when a value cannot be interpreted as money"""
    pass


class NegativeValueError(Exception):
    """Raised when a negative financial value is detected"""
    pass


def to_decimal(value: Amount) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if value is None:
        return Decimal('0')
    if isinstance(value, bool):
        raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value)
        except InvalidOperation:
            raise FinancialPrecisionError(f"Cannot convert '{value}' to Decimal")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Amount) -> Decimal:
    """
    Round a value to 2 decimal places (half-up).
    This should be called ONLY at calculation boundaries.
    """
    decimal_value = to_decimal(value)
    return decimal_value.quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Amount) -> float:
    """
    Convert back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    rounded = round_financial(value)
    return float(rounded)


def validate_non_negative(value: Amount, field_name: str) -> None:
    """
    Validate that a financial value is not negative.
    Raises NegativeValueError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value < Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' cannot be negative: {value}"
        )


def validate_positive(value: Amount, field_name: str) -> None:
    """
    Validate that a financial value is strictly positive (> 0).
    Raises NegativeValueError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value <= Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}"
        )


def safe_subtract(a: Amount, b: Amount) -> Decimal:
    """Safe subtraction preserving precision"""
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Amount) -> Decimal:
    """Safe addition of multiple values"""
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def safe_min(a: Amount, b: Amount) -> Decimal:
    return min(to_decimal(a), to_decimal(b))


def meets_tolerance(
    paid: Amount,
    amount: Amount,
    tolerance: Amount = Decimal('0.99')
) -> bool:
    """
    True when `paid` covers `amount` within the rounding tolerance.
    Example: meets_tolerance(990, 1000) is True, meets_tolerance(500, 1000) is False.
    """
    return to_decimal(paid) >= to_decimal(amount) * to_decimal(tolerance)
