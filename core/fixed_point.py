"""
Fixed-point decimal helpers.

Every ledger quantity is a plain Python int holding `value * 10**18`. All
division floors, so any rounding loss stays in the ledger.
"""

from decimal import Decimal, localcontext

from ledger_config import DECIMAL_PRECISION
from ledger_errors import PreconditionError


def require_int(value, name="amount"):
    """Reject floats and other non-integers before they reach the ledger."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise PreconditionError(f"{name} must be an int in fixed-point units, got {type(value).__name__}")
    return value


def require_non_negative(value, name="amount"):
    require_int(value, name)
    if value < 0:
        raise PreconditionError(f"{name} must be non-negative, got {value}")
    return value


def dec_mul(x, y, precision=DECIMAL_PRECISION):
    """x * y in fixed point, floored."""
    return x * y // precision


def dec_div(x, y, precision=DECIMAL_PRECISION):
    """x / y in fixed point, floored."""
    if y == 0:
        raise PreconditionError("Division by zero")
    return x * precision // y


def mul_div(x, y, z):
    """x * y / z with a single floor at the end."""
    if z == 0:
        raise PreconditionError("Division by zero")
    return x * y // z


def dec_min(a, b):
    return a if a < b else b


def to_fixed(amount):
    """
    Converts a whole-token amount to raw fixed-point units.

    Args:
        amount: int, str or Decimal token amount (e.g. "1.5")

    Returns:
        The amount scaled by 10**18, floored
    """
    if isinstance(amount, float):
        raise PreconditionError("Pass token amounts as int, str or Decimal, not float")
    with localcontext() as ctx:
        ctx.prec = 78
        return int(Decimal(amount) * DECIMAL_PRECISION)


def from_fixed(value):
    """Raw fixed-point units back to a Decimal token amount."""
    with localcontext() as ctx:
        ctx.prec = 78
        return Decimal(value) / DECIMAL_PRECISION
