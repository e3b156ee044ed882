"""
Loan Servicing Error Hierarchy

Recoverable domain errors derive from LoanDomainError (and ValueError);
broken invariants derive from LoanInvariantError and must never be
caught-and-ignored by callers.
"""

from typing import Any, Dict, Optional


class LoanError(Exception):
    """Base exception for all loan servicing errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    @property
    def recoverable(self) -> bool:
        return isinstance(self, LoanDomainError)


class LoanDomainError(LoanError, ValueError):
    """Raised for recoverable failures; no state was mutated."""


class LoanInvariantError(LoanError, RuntimeError):
    """Raised when an internal invariant is violated."""


class InvalidStateTransitionError(LoanDomainError):
    """Raised when the lifecycle has no transition for an event."""

    def __init__(self, event: Any, current_state: Any, message: Optional[str] = None):
        event_value = getattr(event, "value", event)
        state_value = getattr(current_state, "value", current_state)
        super().__init__(
            message or f"Cannot apply '{event_value}' to a loan in state '{state_value}'",
            event=event_value,
            current_state=state_value,
        )
        self.event = event
        self.current_state = current_state


class LoanValidationError(LoanDomainError):
    """Raised when command input is malformed or out of range."""

    def __init__(self, message: str, parameter: Optional[str] = None, **context: Any):
        super().__init__(message, parameter=parameter, **context)
        self.parameter = parameter


class InsufficientCollateralError(LoanDomainError):
    """Raised when disbursed principal exceeds pledged collateral value."""


class LinkedAccountRequiredError(LoanDomainError):
    """Raised when an account-transfer operation has no linked savings account."""


class AlreadyPaidOrWaivedError(LoanDomainError):
    """Raised on a second pay or waive of the same charge or installment."""


class CurrencyMismatchError(LoanDomainError):
    """Raised when two amounts in different currencies are combined."""


class DataIntegrityConflictError(LoanDomainError):
    """Raised on duplicate external ids or concurrent modification."""


class DateMismatchError(LoanDomainError):
    """Raised when the actual disbursement date differs from the expected one."""


class TopupLoanOutstandingExceedsAmountError(LoanDomainError):
    """Raised when a topup loan cannot cover the closed loan's outstanding balance."""


class LoanNotActiveError(LoanDomainError):
    """Raised when an operation requires an active loan."""


class AlreadyClosedWrittenOffError(LoanDomainError):
    """Raised when an operation targets a written-off loan."""


class ReplayInconsistencyError(LoanInvariantError):
    """Raised when reprocessing produces an impossible installment state."""

    def __init__(
        self,
        message: str,
        transaction_id: Optional[int] = None,
        installment_number: Optional[int] = None,
    ):
        super().__init__(
            message,
            transaction_id=transaction_id,
            installment_number=installment_number,
        )
        self.transaction_id = transaction_id
        self.installment_number = installment_number


class AccountingPostingError(LoanInvariantError):
    """Raised when the accounting sink rejects a posting."""
