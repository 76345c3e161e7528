"""Exception classes raised by engine services.

Validation errors are raised before any write. Consistency errors mean the
requested change would break a stored invariant. Not-found is kept separate
so callers can map it differently from bad input.
"""


class DuesEngineError(Exception):
    """Base exception for engine errors."""

    pass


class ValidationError(DuesEngineError):
    """Invalid input (non-positive amount or rate, wrong site, bad date range)."""

    pass


class ConsistencyError(DuesEngineError):
    """Operation would violate a stored invariant (e.g., paid > total)."""

    pass


class NotFoundError(DuesEngineError):
    """Referenced unit, due, period, payment, account or entry does not exist."""

    pass


class ConcurrencyConflictError(DuesEngineError):
    """Concurrent write conflict persisted after all retry attempts."""

    pass


__all__ = [
    "DuesEngineError",
    "ValidationError",
    "ConsistencyError",
    "NotFoundError",
    "ConcurrencyConflictError",
]
