"""
Business Event Module

Pre and post hooks fired around each mutating loan operation. A failing
pre hook aborts the operation before anything changes; a failing post
hook is logged and never undoes a committed change.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class BusinessEvent(Enum):
    """Loan business events"""
    LOAN_SUBMITTED = "loan.submitted"
    LOAN_APPROVED = "loan.approved"
    LOAN_APPROVAL_UNDONE = "loan.approval_undone"
    LOAN_REJECTED = "loan.rejected"
    LOAN_WITHDRAWN = "loan.withdrawn"
    LOAN_DISBURSED = "loan.disbursed"
    LOAN_DISBURSAL_UNDONE = "loan.disbursal_undone"
    LOAN_REPAYMENT = "loan.repayment"
    LOAN_INTEREST_WAIVED = "loan.interest_waived"
    LOAN_TRANSACTION_ADJUSTED = "loan.transaction_adjusted"
    LOAN_CHARGE_ADDED = "loan.charge_added"
    LOAN_CHARGE_WAIVED = "loan.charge_waived"
    LOAN_CHARGE_WAIVE_UNDONE = "loan.charge_waive_undone"
    LOAN_CHARGE_PAID = "loan.charge_paid"
    LOAN_CHARGE_REMOVED = "loan.charge_removed"
    LOAN_CHARGE_UPDATED = "loan.charge_updated"
    LOAN_OVERDUE_CHARGES_APPLIED = "loan.overdue_charges_applied"
    LOAN_TRANCHE_ADDED = "loan.tranche_added"
    LOAN_TRANCHE_UPDATED = "loan.tranche_updated"
    LOAN_TRANCHE_REMOVED = "loan.tranche_removed"
    LOAN_WRITTEN_OFF = "loan.written_off"
    LOAN_WRITE_OFF_UNDONE = "loan.write_off_undone"
    LOAN_CLOSED = "loan.closed"
    LOAN_CLOSED_AS_RESCHEDULED = "loan.closed_as_rescheduled"
    LOAN_FORECLOSED = "loan.foreclosed"
    LOAN_REFUNDED = "loan.refunded"
    LOAN_ACCRUAL_ADDED = "loan.accrual_added"
    LOAN_INTEREST_RECALCULATED = "loan.interest_recalculated"
    LOAN_TRANSFER_INITIATED = "loan.transfer_initiated"
    LOAN_TRANSFER_ACCEPTED = "loan.transfer_accepted"
    LOAN_TRANSFER_WITHDRAWN = "loan.transfer_withdrawn"
    LOAN_TRANSFER_REJECTED = "loan.transfer_rejected"


class HookPhase(Enum):
    PRE = "pre"
    POST = "post"


@dataclass
class BusinessEventPayload:
    """Payload for business events"""
    event_type: BusinessEvent
    phase: HookPhase
    loan_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type.value,
            'phase': self.phase.value,
            'loan_id': self.loan_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id,
        }


class BusinessEventNotifier:
    """Publish/subscribe dispatcher for loan business events"""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._handlers: Dict[HookPhase, Dict[BusinessEvent, List[Callable]]] = {
            HookPhase.PRE: {},
            HookPhase.POST: {},
        }
        self._lock = RLock()
        self.logger = logging.getLogger("loan_servicing.events")

    def subscribe(self, event_type: BusinessEvent, handler: Callable, phase: HookPhase = HookPhase.POST) -> None:
        """Subscribe to a specific event type in one phase"""
        with self._lock:
            self._handlers[phase].setdefault(event_type, []).append(handler)
            self.logger.debug(
                f"Subscribed handler {getattr(handler, '__name__', repr(handler))} "
                f"to {phase.value} {event_type.value}"
            )

    def unsubscribe(self, event_type: BusinessEvent, handler: Callable, phase: HookPhase = HookPhase.POST) -> None:
        with self._lock:
            try:
                self._handlers[phase].get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(
                    f"Handler {getattr(handler, '__name__', repr(handler))} was not subscribed to {event_type.value}"
                )

    def notify_pre(self, event_type: BusinessEvent, loan_id: str, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Fire pre hooks

        Handler errors propagate so that the caller aborts the operation.
        """
        if not self.enabled:
            return
        payload = BusinessEventPayload(event_type, HookPhase.PRE, loan_id, data or {})
        with self._lock:
            handlers = list(self._handlers[HookPhase.PRE].get(event_type, []))
        for handler in handlers:
            handler(payload)

    def notify_post(self, event_type: BusinessEvent, loan_id: str, data: Optional[Dict[str, Any]] = None) -> List[Exception]:
        """
        Fire post hooks

        Returns:
            Errors raised by handlers; each is logged, none is re-raised
        """
        if not self.enabled:
            return []
        payload = BusinessEventPayload(event_type, HookPhase.POST, loan_id, data or {})
        with self._lock:
            handlers = list(self._handlers[HookPhase.POST].get(event_type, []))
        errors = []
        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                self.logger.error(
                    f"Error in post hook {getattr(handler, '__name__', repr(handler))} "
                    f"for {event_type.value} on loan {loan_id}: {e}"
                )
                errors.append(e)
        return errors

    def clear(self) -> None:
        with self._lock:
            for phase_handlers in self._handlers.values():
                phase_handlers.clear()

    def get_handler_count(self, phase: Optional[HookPhase] = None) -> int:
        with self._lock:
            phases = [phase] if phase else list(HookPhase)
            return sum(len(h) for p in phases for h in self._handlers[p].values())
