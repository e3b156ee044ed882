"""
Loan Lifecycle State Machine

Status transitions are keyed by (current status, event). Every
loan-mutating operation validates its event here before touching state;
an undefined transition raises InvalidStateTransitionError and never
silently no-ops.
"""

from enum import Enum
from typing import Dict, FrozenSet, Tuple

from .exceptions import InvalidStateTransitionError


class LoanStatus(Enum):
    """Loan lifecycle states"""
    SUBMITTED_PENDING_APPROVAL = "submitted_pending_approval"
    APPROVED = "approved"
    ACTIVE = "active"
    TRANSFER_IN_PROGRESS = "transfer_in_progress"
    TRANSFER_ON_HOLD = "transfer_on_hold"
    WITHDRAWN = "withdrawn"                    # Withdrawn by applicant
    REJECTED = "rejected"
    CLOSED_OBLIGATIONS_MET = "closed_obligations_met"
    CLOSED_WRITTEN_OFF = "closed_written_off"
    CLOSED_RESCHEDULED = "closed_rescheduled"
    OVERPAID = "overpaid"

    @property
    def is_closed(self) -> bool:
        return self in (
            LoanStatus.CLOSED_OBLIGATIONS_MET,
            LoanStatus.CLOSED_WRITTEN_OFF,
            LoanStatus.CLOSED_RESCHEDULED,
        )

    @property
    def is_active(self) -> bool:
        return self == LoanStatus.ACTIVE

    @property
    def is_under_transfer(self) -> bool:
        return self in (LoanStatus.TRANSFER_IN_PROGRESS, LoanStatus.TRANSFER_ON_HOLD)

    @property
    def is_disbursed(self) -> bool:
        return self in (
            LoanStatus.ACTIVE,
            LoanStatus.TRANSFER_IN_PROGRESS,
            LoanStatus.TRANSFER_ON_HOLD,
            LoanStatus.CLOSED_OBLIGATIONS_MET,
            LoanStatus.CLOSED_WRITTEN_OFF,
            LoanStatus.CLOSED_RESCHEDULED,
            LoanStatus.OVERPAID,
        )


class LoanEvent(Enum):
    """Events that drive lifecycle transitions"""
    APPROVE = "approve"
    UNDO_APPROVAL = "undo_approval"
    REJECT = "reject"
    WITHDRAW = "withdraw"
    DISBURSE = "disburse"
    UNDO_DISBURSAL = "undo_disbursal"
    REPAY = "repay"
    ADJUST_TRANSACTION = "adjust_transaction"
    WAIVE_INTEREST = "waive_interest"
    REFUND = "refund"
    WRITE_OFF = "write_off"
    UNDO_WRITE_OFF = "undo_write_off"
    CLOSE = "close"
    CLOSE_AS_RESCHEDULED = "close_as_rescheduled"
    INITIATE_TRANSFER = "initiate_transfer"
    ACCEPT_TRANSFER = "accept_transfer"
    WITHDRAW_TRANSFER = "withdraw_transfer"
    REJECT_TRANSFER = "reject_transfer"
    # Balance-driven transitions applied after reprocessing
    OBLIGATIONS_MET = "obligations_met"
    OVERPAY = "overpay"
    REOPEN = "reopen"


_S = LoanStatus
_E = LoanEvent

# Statuses in which repayments and adjustments are posted
_REPAYABLE: FrozenSet[LoanStatus] = frozenset({_S.ACTIVE, _S.CLOSED_OBLIGATIONS_MET, _S.OVERPAID})

DEFAULT_TRANSITIONS: Dict[Tuple[LoanStatus, LoanEvent], LoanStatus] = {
    (_S.SUBMITTED_PENDING_APPROVAL, _E.APPROVE): _S.APPROVED,
    (_S.SUBMITTED_PENDING_APPROVAL, _E.REJECT): _S.REJECTED,
    (_S.SUBMITTED_PENDING_APPROVAL, _E.WITHDRAW): _S.WITHDRAWN,
    (_S.APPROVED, _E.UNDO_APPROVAL): _S.SUBMITTED_PENDING_APPROVAL,
    (_S.APPROVED, _E.WITHDRAW): _S.WITHDRAWN,
    (_S.APPROVED, _E.DISBURSE): _S.ACTIVE,
    # Later tranches of a multi-disbursement loan
    (_S.ACTIVE, _E.DISBURSE): _S.ACTIVE,
    (_S.ACTIVE, _E.UNDO_DISBURSAL): _S.APPROVED,
    (_S.ACTIVE, _E.WAIVE_INTEREST): _S.ACTIVE,
    (_S.ACTIVE, _E.WRITE_OFF): _S.CLOSED_WRITTEN_OFF,
    (_S.ACTIVE, _E.CLOSE): _S.CLOSED_OBLIGATIONS_MET,
    (_S.ACTIVE, _E.CLOSE_AS_RESCHEDULED): _S.CLOSED_RESCHEDULED,
    (_S.ACTIVE, _E.INITIATE_TRANSFER): _S.TRANSFER_IN_PROGRESS,
    (_S.OVERPAID, _E.INITIATE_TRANSFER): _S.TRANSFER_IN_PROGRESS,
    (_S.OVERPAID, _E.REFUND): _S.OVERPAID,
    (_S.TRANSFER_IN_PROGRESS, _E.ACCEPT_TRANSFER): _S.ACTIVE,
    (_S.TRANSFER_IN_PROGRESS, _E.WITHDRAW_TRANSFER): _S.ACTIVE,
    (_S.TRANSFER_IN_PROGRESS, _E.REJECT_TRANSFER): _S.TRANSFER_ON_HOLD,
    (_S.TRANSFER_ON_HOLD, _E.ACCEPT_TRANSFER): _S.ACTIVE,
    (_S.TRANSFER_ON_HOLD, _E.WITHDRAW_TRANSFER): _S.ACTIVE,
    (_S.CLOSED_WRITTEN_OFF, _E.UNDO_WRITE_OFF): _S.ACTIVE,
    (_S.ACTIVE, _E.OBLIGATIONS_MET): _S.CLOSED_OBLIGATIONS_MET,
    (_S.OVERPAID, _E.OBLIGATIONS_MET): _S.CLOSED_OBLIGATIONS_MET,
    (_S.ACTIVE, _E.OVERPAY): _S.OVERPAID,
    (_S.CLOSED_OBLIGATIONS_MET, _E.OVERPAY): _S.OVERPAID,
    (_S.CLOSED_OBLIGATIONS_MET, _E.REOPEN): _S.ACTIVE,
    (_S.OVERPAID, _E.REOPEN): _S.ACTIVE,
}

for _status in _REPAYABLE:
    DEFAULT_TRANSITIONS[(_status, _E.REPAY)] = _status
    DEFAULT_TRANSITIONS[(_status, _E.ADJUST_TRANSACTION)] = _status


class LoanLifecycleStateMachine:
    """
    Validates and applies loan status transitions

    The transition table is injectable so products can narrow the
    default lifecycle.
    """

    def __init__(self, transitions: Dict[Tuple[LoanStatus, LoanEvent], LoanStatus] = None):
        self._transitions = dict(transitions or DEFAULT_TRANSITIONS)

    def can_transition(self, current: LoanStatus, event: LoanEvent) -> bool:
        return (current, event) in self._transitions

    def validate(self, current: LoanStatus, event: LoanEvent) -> LoanStatus:
        """
        Validate an event against the current status

        Args:
            current: Current loan status
            event: Event about to be applied

        Returns:
            The status the loan will move to

        Raises:
            InvalidStateTransitionError: If no transition is defined
        """
        try:
            return self._transitions[(current, event)]
        except KeyError:
            raise InvalidStateTransitionError(event, current) from None

    def allowed_events(self, current: LoanStatus) -> FrozenSet[LoanEvent]:
        return frozenset(event for (status, event) in self._transitions if status == current)


DEFAULT_STATE_MACHINE = LoanLifecycleStateMachine()
