"""
Error-corrected per-unit ratios.

Floor division on every liquidation would leak a little value each time, and
across millions of events that drift adds up. Instead each ratio is computed
from `amount * precision + carried_error`, and whatever the floor discarded is
multiplied back out and carried into the next call. The cumulative error stays
below one unit per call and always favors the ledger.
"""

from ledger_config import DECIMAL_PRECISION
from ledger_errors import InvariantViolation, PreconditionError


def error_corrected_ratio(amount, carried_error, denominator, weight=1, precision=DECIMAL_PRECISION):
    """
    Computes a per-unit ratio and the rounding error to carry forward.

    With weight=1 this is the plain per-unit-stake ratio and the new error is
    simply the division remainder. With weight=P it yields the product-weighted
    gain increment used by the stability pool sums.

    Args:
        amount: Amount being distributed (fixed point)
        carried_error: Error carried from the previous call
        denominator: Total principal or total stake receiving the amount
        weight: Extra multiplier folded into the ratio (P for the accumulator)
        precision: Fixed-point unit

    Returns:
        Tuple of (ratio, new_carried_error)
    """
    if denominator <= 0:
        raise PreconditionError(f"Denominator must be positive, got {denominator}")
    if weight <= 0:
        raise PreconditionError(f"Weight must be positive, got {weight}")

    numerator = amount * precision + carried_error
    ratio = numerator * weight // denominator
    new_error = numerator - ratio * denominator // weight
    return ratio, new_error


def principal_loss_ratio(debt, carried_error, total, precision=DECIMAL_PRECISION):
    """
    Computes the fraction of principal lost to an offset, rounded against the depositors.

    The "+1" makes the computed loss never smaller than the true loss, so the
    pool can never pay out principal it no longer holds. The over-estimate is
    carried as a negative correction into the next call.

    Args:
        debt: Debt being absorbed
        carried_error: Error carried from the previous call
        total: Total principal before the offset
        precision: Fixed-point unit

    Returns:
        Tuple of (loss_per_unit, new_carried_error)

    Raises:
        InvariantViolation: If the debt exceeds the total or the ratio exceeds 100%
    """
    if total <= 0:
        raise PreconditionError(f"Total must be positive, got {total}")
    if debt > total:
        raise InvariantViolation(f"Debt to absorb ({debt}) exceeds total principal ({total})")

    # Full depletion: exact, and the carried error resets
    if debt == total:
        return precision, 0

    numerator = debt * precision - carried_error
    loss = numerator // total + 1
    new_error = loss * total - numerator

    if loss > precision:
        raise InvariantViolation(f"Loss per unit ({loss}) exceeds 100%")
    return loss, new_error
