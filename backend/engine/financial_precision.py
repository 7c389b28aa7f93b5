"""
DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe financial calculations
3. Value validation (no negative amounts)
4. Rounding at calculation boundary only
5. Minor-unit conversion for the payment provider (centavos)
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union
import logging

from bson import Decimal128

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
ZERO = Decimal('0')

Numeric = Union[float, int, str, Decimal]


class FinancialPrecisionError(Exception):
    """Raised when financial precision validation fails"""
    pass


class NegativeValueError(FinancialPrecisionError):
    """Raised when a negative financial value is detected"""
    pass


def to_decimal(value) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, bool):
        raise FinancialPrecisionError("Cannot convert bool to Decimal")
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        return Decimal(value)
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Numeric) -> Decimal:
    """
    Round a value to 2 decimal places (half up).
    This should be called ONLY at calculation boundaries.
    """
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Numeric) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def to_minor_units(value: Numeric) -> int:
    """Amount in centavos, as the payment provider expects."""
    return int(round_financial(value) * 100)


def from_minor_units(value: int) -> Decimal:
    return round_financial(Decimal(value) / Decimal(100))


def validate_non_negative(value: Numeric, field_name: str) -> None:
    """
    Validate that a financial value is not negative.
    Raises NegativeValueError if validation fails.
    """
    if to_decimal(value) < ZERO:
        raise NegativeValueError(
            f"Financial value '{field_name}' cannot be negative: {value}"
        )


def validate_positive(value: Numeric, field_name: str) -> None:
    """
    Validate that a financial value is strictly positive (> 0).
    Raises NegativeValueError if validation fails.
    """
    if to_decimal(value) <= ZERO:
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}"
        )


def safe_subtract(a: Numeric, b: Numeric) -> Decimal:
    """Safe subtraction preserving precision"""
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Numeric) -> Decimal:
    """Safe addition of multiple values"""
    result = ZERO
    for v in values:
        result += to_decimal(v)
    return result


def calculate_utilization(used: Numeric, total: Numeric) -> float:
    """Percentage of total that has been used, 0 when total is 0."""
    total_dec = to_decimal(total)
    if total_dec == ZERO:
        return 0.0
    return to_float(to_decimal(used) / total_dec * Decimal('100'))
