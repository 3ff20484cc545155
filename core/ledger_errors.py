"""
Error types for the CDP ledger engine.

Invariant violations are fatal and mean the caller broke the protocol's
discipline (or the ledger has a bug). Precondition failures are ordinary caller
errors and subclass ValueError, which is what the pool modules have always
raised for bad input.
"""


class LedgerError(Exception):
    """Base class for all ledger errors."""


class InvariantViolation(LedgerError):
    """A ledger invariant would be broken, e.g. P reaching 0 or debt exceeding deposits."""


class PreconditionError(LedgerError, ValueError):
    """The caller passed invalid input or called an operation in the wrong state."""


def require_authorized(authorized_callers, caller):
    """Checks a caller against an allow-list. An empty allow-list admits everyone."""
    if authorized_callers and caller not in authorized_callers:
        raise PreconditionError(f"Caller {caller!r} is not authorized")
