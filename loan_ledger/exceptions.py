"""Exception hierarchy for the loan ledger."""


class LedgerError(Exception):
    """Base exception for all ledger errors."""


class NotFoundError(LedgerError):
    """Raised when a referenced loan or period does not exist."""


class LoanNotFoundError(NotFoundError):
    """Raised when a loan does not exist."""

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found")
        self.loan_id = loan_id


class ScheduleNotFoundError(NotFoundError):
    """Raised when a repayment period does not exist."""

    def __init__(self, schedule_id: str):
        super().__init__(f"Repayment schedule {schedule_id} not found")
        self.schedule_id = schedule_id


class ValidationError(LedgerError, ValueError):
    """Raised when input is malformed; always before a transaction opens."""


class InvalidStateError(LedgerError):
    """Raised when an entity is in an invalid state for the operation."""


class HasDependentsError(LedgerError):
    """Raised when deleting a loan that still has payment history.

    Retry with ``force=True`` to cascade the delete explicitly.
    """

    def __init__(self, loan_id: str, dependents: int):
        super().__init__(
            f"Loan {loan_id} has {dependents} payment ledger entries; "
            f"delete with force=True to remove them as well"
        )
        self.loan_id = loan_id
        self.dependents = dependents


class ReconciliationError(LedgerError):
    """Raised when the schedule collection cannot be aggregated consistently."""
