"""Exceptions raised by the valuation and reconciliation engine.

Validation and funding errors are raised before any lot is touched and can be
retried with corrected input. Mutation-layer errors are fatal for the
operation that raised them.
"""

from decimal import Decimal


class PortfolioError(Exception):
    """Base class for every engine error."""


class ValidationError(PortfolioError, ValueError):
    """Input rejected before any mutation.

    Args:
        field: Name of the offending input field.
        constraint: Human-readable statement of the violated rule.
    """

    def __init__(self, field: str, constraint: str):
        self.field = field
        self.constraint = constraint
        super().__init__(f"Invalid {field}: {constraint}")


class InsufficientFundsError(PortfolioError):
    """Cash lots cannot cover a debit."""

    def __init__(self, available: Decimal, required: Decimal, currency: str):
        self.available = available
        self.required = required
        self.currency = currency
        super().__init__(
            f"Insufficient cash. Available: {available:,.2f} {currency}, "
            f"Required: {required:,.2f} {currency}"
        )


class LotNotFoundError(PortfolioError, KeyError):
    """A referenced lot does not exist in the store."""

    def __init__(self, lot_id: str):
        self.lot_id = lot_id
        super().__init__(f"Lot not found: {lot_id}")

    def __str__(self) -> str:
        return f"Lot not found: {self.lot_id}"


class AccountNotFoundError(PortfolioError, KeyError):
    """A referenced account does not exist in the store."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")

    def __str__(self) -> str:
        return f"Account not found: {self.account_id}"


class ConcurrencyConflictError(PortfolioError):
    """A lot changed between read and write."""

    def __init__(self, lot_id: str, expected: int, actual: int):
        self.lot_id = lot_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Lot {lot_id} was modified concurrently: expected version {expected}, found {actual}"
        )


class PartialMutationError(PortfolioError):
    """A storage failure interrupted an operation after lots were mutated.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, operation: str, account_id: str, detail: str):
        self.operation = operation
        self.account_id = account_id
        self.detail = detail
        super().__init__(f"{operation} on account {account_id} failed mid-mutation: {detail}")
