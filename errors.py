class LedgerValidationError(ValueError):
    """Rejected before any write; never retried."""


class LedgerNotFoundError(LedgerValidationError):
    pass


class ConcurrencyConflict(RuntimeError):
    """The store aborted the transaction; retry the whole mutation."""


class LedgerInvariantError(RuntimeError):
    """Stored state cannot satisfy the monthly balance invariants."""
