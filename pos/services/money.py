"""
Money Utilities - Safe Decimal operations for monetary values.

Avoids float precision issues by using Decimal throughout. Every aggregate
the register shows is rounded with ``round_money`` before it feeds the next
aggregate, so repeated recomputation never drifts by a cent.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

Number = Union[str, int, float, Decimal]

# Default precision for money operations (2 decimal places)
MONEY_PRECISION = Decimal("0.01")

# Nudge added before half-up rounding so values like 1.005 computed
# through division land on the expected cent.
MONEY_EPSILON = Decimal("1e-9")

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")


def to_decimal(value: Union[Number, None]) -> Decimal:
    """
    Convert any value to Decimal safely.

    Args:
        value: Value to convert (str, int, float, Decimal, or None)

    Returns:
        Decimal representation of the value, or Decimal("0") if None/invalid
    """
    if value is None:
        return ZERO

    if isinstance(value, Decimal):
        return value

    try:
        # Convert via string to avoid float precision issues
        if isinstance(value, float):
            return Decimal(str(value))
        return Decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        return ZERO


def round_money(value: Number) -> Decimal:
    """
    Round a monetary value to cents, half-up, after adding ``MONEY_EPSILON``.

    Args:
        value: Value to round

    Returns:
        Rounded Decimal value
    """
    decimal_value = to_decimal(value)
    if decimal_value >= 0:
        decimal_value += MONEY_EPSILON
    else:
        decimal_value -= MONEY_EPSILON
    return decimal_value.quantize(MONEY_PRECISION, rounding=ROUND_HALF_UP)


def clamp_percent(value: Number) -> Decimal:
    """Clamp a percentage into [0, 100]."""
    decimal_value = to_decimal(value)
    if decimal_value < ZERO:
        return ZERO
    if decimal_value > HUNDRED:
        return HUNDRED
    return decimal_value


def clamp_rate(value: Number) -> Decimal:
    """Clamp a fractional rate into [0, 1]."""
    decimal_value = to_decimal(value)
    if decimal_value < ZERO:
        return ZERO
    if decimal_value > ONE:
        return ONE
    return decimal_value


def percent(value: Number, percent_value: Number) -> Decimal:
    """Calculate percentage of a monetary value (unrounded)."""
    return to_decimal(value) * to_decimal(percent_value) / HUNDRED


def divide(value: Number, divisor: Number) -> Decimal:
    """Safe division of monetary value."""
    d = to_decimal(divisor)
    if d == 0:
        return ZERO
    return to_decimal(value) / d


def to_float(value: Number) -> float:
    """
    Convert Decimal to float for JSON serialization or external APIs.

    Use only at API boundaries, not for internal calculations.
    """
    return float(to_decimal(value))


def apply_cash_rounding(amount: Number, step: Number = 10) -> Decimal:
    """Round a cash amount to the nearest multiple of ``step`` (half-up)."""
    step_value = to_decimal(step)
    if step_value <= 0:
        return round_money(amount)
    units = (to_decimal(amount) / step_value).quantize(ONE, rounding=ROUND_HALF_UP)
    return round_money(units * step_value)


def format_money(value: Number, currency: str = "PYG") -> str:
    """
    Format monetary value with currency code.

    Guaraní has no minor unit in practice, so it is printed without decimals.
    """
    decimal_value = round_money(value)
    if currency == "PYG":
        formatted = f"{int(decimal_value.quantize(ONE, rounding=ROUND_HALF_UP)):,}".replace(",", ".")
        return f"₲ {formatted}"
    return f"{decimal_value:,.2f} {currency}"
