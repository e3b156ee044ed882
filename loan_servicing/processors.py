"""
Transaction Processor Strategies

Allocate a transaction's amount across installment components in a
product-defined order, and replay a full transaction history against a
schedule. Strategies are registered under the product's processor code.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Callable, Dict, List, Optional, Sequence, Type

from .charges import LoanCharge, charges_due_on_installment
from .currency import Money, Currency
from .exceptions import ReplayInconsistencyError
from .installments import Component, RepaymentInstallment
from .transactions import (
    ChangedTransactionDetail, LoanTransaction, LoanTransactionType, sort_for_replay
)


_PROCESSORS: Dict[str, Type['LoanRepaymentScheduleTransactionProcessor']] = {}

DEFAULT_PROCESSOR_CODE = "mifos-standard-strategy"


def register_processor(code: str) -> Callable:
    def _decorator(cls):
        _PROCESSORS[code.lower()] = cls
        cls.code = code.lower()
        return cls
    return _decorator


def get_processor(code: Optional[str] = None) -> 'LoanRepaymentScheduleTransactionProcessor':
    """
    Instantiate a registered transaction processor

    Args:
        code: Processor code configured on the product; the default
            strategy when omitted

    Returns:
        Processor instance
    """
    key = (code or DEFAULT_PROCESSOR_CODE).lower()
    try:
        return _PROCESSORS[key]()
    except KeyError as exc:
        raise ValueError(f"Unknown transaction processor '{code}'. Available: {sorted(_PROCESSORS)}") from exc


def available_processors() -> List[str]:
    return sorted(_PROCESSORS)


class _Allocation:
    """Running component totals for one transaction"""

    def __init__(self, currency: Currency):
        zero = Money.zero(currency)
        self.amounts = {component: zero for component in Component}

    def add(self, component: Component, amount: Money) -> None:
        self.amounts[component] = self.amounts[component] + amount

    @property
    def principal(self) -> Money:
        return self.amounts[Component.PRINCIPAL]

    @property
    def interest(self) -> Money:
        return self.amounts[Component.INTEREST]

    @property
    def fee(self) -> Money:
        return self.amounts[Component.FEE]

    @property
    def penalty(self) -> Money:
        return self.amounts[Component.PENALTY]


class LoanRepaymentScheduleTransactionProcessor(ABC):
    """
    Base transaction processor

    Subclasses define the component order; allocation walks
    installments oldest first and, within each installment, pays the
    components in that order.
    """

    code: str = ""

    @property
    @abstractmethod
    def component_order(self) -> Sequence[Component]:
        """Order in which an installment's components are paid"""

    # ------------------------------------------------------------------ #
    # Full replay
    # ------------------------------------------------------------------ #

    def reprocess(
        self,
        transactions: List[LoanTransaction],
        installments: List[RepaymentInstallment],
        charges: List[LoanCharge],
    ) -> ChangedTransactionDetail:
        """
        Replay every non-reversed transaction from a clean schedule

        Transactions without an id have not been recorded yet and are
        allocated in place. Recorded transactions are allocated on a
        copy; when the copy's breakdown differs, it is reported in the
        returned detail against the original's id.

        Args:
            transactions: All loan transactions, reversed ones included
            installments: Schedule to allocate against
            charges: Active loan charges

        Returns:
            ChangedTransactionDetail, empty when nothing changed
        """
        for installment in installments:
            installment.reset_derived_components()
        for charge in charges:
            charge.reset_derived_state()

        changed = ChangedTransactionDetail()
        for transaction in sort_for_replay([t for t in transactions if t.is_not_reversed]):
            if not transaction.transaction_type.allocates_to_schedule:
                continue
            if transaction.id is None:
                transaction.reset_components()
                self.handle_transaction(transaction, installments, charges)
                continue
            candidate = transaction.copy_for_replay()
            self.handle_transaction(candidate, installments, charges)
            if not transaction.components_match(candidate):
                changed.record(transaction.id, candidate)
        return changed

    # ------------------------------------------------------------------ #
    # Single transaction
    # ------------------------------------------------------------------ #

    def handle_transaction(
        self,
        transaction: LoanTransaction,
        installments: List[RepaymentInstallment],
        charges: List[LoanCharge],
    ) -> None:
        """Allocate one transaction against the current installment state"""
        transaction_type = transaction.transaction_type
        if not transaction_type.allocates_to_schedule:
            return

        if transaction_type.is_repayment_like:
            self._handle_repayment(transaction, installments, charges)
        elif transaction_type == LoanTransactionType.REPAYMENT_AT_DISBURSEMENT:
            self._handle_repayment_at_disbursement(transaction, charges)
        elif transaction_type == LoanTransactionType.WAIVE_INTEREST:
            self._handle_interest_waiver(transaction, installments)
        elif transaction_type == LoanTransactionType.WAIVE_CHARGES:
            self._handle_charge_waiver(transaction, installments, charges)
        elif transaction_type == LoanTransactionType.CHARGE_PAYMENT:
            self._handle_charge_payment(transaction, installments, charges)
        elif transaction_type.is_write_off:
            self._handle_write_off(transaction, installments, charges)
        else:
            raise ReplayInconsistencyError(
                f"No allocation rule for {transaction_type.value} transactions",
                transaction_id=transaction.id,
            )

        for installment in installments:
            installment.check_integrity(transaction.id)

    # ------------------------------------------------------------------ #
    # Allocation rules
    # ------------------------------------------------------------------ #

    def _installments_for_repayment(
        self,
        transaction: LoanTransaction,
        installments: List[RepaymentInstallment],
    ) -> List[RepaymentInstallment]:
        return sorted(installments, key=lambda i: i.installment_number)

    def _pay_installment(
        self,
        installment: RepaymentInstallment,
        on_date: date,
        amount: Money,
        allocation: _Allocation,
        charges: List[LoanCharge],
        first: bool,
        last: bool,
        components: Optional[Sequence[Component]] = None,
    ) -> Money:
        remaining = amount
        for component in components or self.component_order:
            if not remaining.is_positive():
                break
            applied = installment.pay_component(component, on_date, remaining)
            if applied.is_zero():
                continue
            if component in (Component.FEE, Component.PENALTY):
                _apply_to_charges(
                    charges, installment, applied, first, last,
                    penalty=component == Component.PENALTY, action="pay",
                )
            allocation.add(component, applied)
            remaining = remaining - applied
        return remaining

    def _handle_repayment(
        self,
        transaction: LoanTransaction,
        installments: List[RepaymentInstallment],
        charges: List[LoanCharge],
    ) -> None:
        allocation = _Allocation(transaction.currency)
        remaining = transaction.amount
        ordered = self._installments_for_repayment(transaction, installments)
        first, last = _ends(installments)
        for installment in ordered:
            if not remaining.is_positive():
                break
            if installment.total_outstanding.is_zero():
                continue
            remaining = self._pay_installment(
                installment, transaction.transaction_date, remaining, allocation, charges,
                installment is first, installment is last,
            )
        remaining = self._handle_remaining(transaction, installments, charges, remaining, allocation)
        transaction.update_components(
            allocation.principal, allocation.interest, allocation.fee, allocation.penalty
        )
        if remaining.is_positive():
            transaction.overpayment_portion = transaction.overpayment_portion + remaining

    def _handle_remaining(
        self,
        transaction: LoanTransaction,
        installments: List[RepaymentInstallment],
        charges: List[LoanCharge],
        remaining: Money,
        allocation: _Allocation,
    ) -> Money:
        """Hook for strategies that treat leftover amounts specially"""
        return remaining

    def _handle_repayment_at_disbursement(
        self,
        transaction: LoanTransaction,
        charges: List[LoanCharge],
    ) -> None:
        zero = Money.zero(transaction.currency)
        fee = zero
        penalty = zero
        remaining = transaction.amount
        for charge in sorted(charges, key=lambda c: c.id):
            if not (charge.active and charge.is_disbursement_charge and not charge.is_account_transfer):
                continue
            if charge.due_date is None or charge.due_date > transaction.transaction_date:
                continue
            if not remaining.is_positive():
                break
            applied = charge.pay(remaining)
            if charge.is_penalty:
                penalty = penalty + applied
            else:
                fee = fee + applied
            remaining = remaining - applied
        transaction.update_components_and_total(zero, zero, fee, penalty)

    def _handle_interest_waiver(
        self,
        transaction: LoanTransaction,
        installments: List[RepaymentInstallment],
    ) -> None:
        zero = Money.zero(transaction.currency)
        remaining = transaction.amount
        waived = zero
        for installment in sorted(installments, key=lambda i: i.installment_number):
            if not remaining.is_positive():
                break
            applied = installment.waive_component(Component.INTEREST, transaction.transaction_date, remaining)
            waived = waived + applied
            remaining = remaining - applied
        transaction.update_components_and_total(zero, waived, zero, zero)
        transaction.adjust_interest_component()

    def _handle_charge_waiver(
        self,
        transaction: LoanTransaction,
        installments: List[RepaymentInstallment],
        charges: List[LoanCharge],
    ) -> None:
        charge = _find_charge(charges, transaction)
        zero = Money.zero(transaction.currency)
        number = transaction.installment_number if charge.is_installment_fee else None
        pending = charge.installment_charge(number).is_pending if number else charge.is_pending
        waived = charge.waive(number) if pending else zero

        installment = _installment_for_charge(charge, installments, number)
        component = Component.PENALTY if charge.is_penalty else Component.FEE
        if installment is not None and waived.is_positive():
            applied = installment.waive_component(component, transaction.transaction_date, waived)
            if applied != waived:
                raise ReplayInconsistencyError(
                    f"Charge {charge.id} waiver of {waived.to_string()} exceeds installment "
                    f"{installment.installment_number} outstanding",
                    transaction_id=transaction.id,
                    installment_number=installment.installment_number,
                )
        if charge.is_penalty:
            transaction.update_components_and_total(zero, zero, zero, waived)
        else:
            transaction.update_components_and_total(zero, zero, waived, zero)

    def _handle_charge_payment(
        self,
        transaction: LoanTransaction,
        installments: List[RepaymentInstallment],
        charges: List[LoanCharge],
    ) -> None:
        charge = _find_charge(charges, transaction)
        zero = Money.zero(transaction.currency)
        number = transaction.installment_number if charge.is_installment_fee else None
        installment = _installment_for_charge(charge, installments, number)
        component = Component.PENALTY if charge.is_penalty else Component.FEE

        if installment is not None:
            outstanding = charge.installment_charge(number).amount_outstanding if number else charge.amount_outstanding
            applied = installment.pay_component(
                component, transaction.transaction_date, transaction.amount.min(outstanding)
            )
            charge.pay(applied, number)
        else:
            applied = charge.pay(transaction.amount, number)

        remaining = transaction.amount - applied
        if charge.is_penalty:
            transaction.update_components(zero, zero, zero, applied)
        else:
            transaction.update_components(zero, zero, applied, zero)
        if remaining.is_positive():
            transaction.overpayment_portion = transaction.overpayment_portion + remaining

    def _handle_write_off(
        self,
        transaction: LoanTransaction,
        installments: List[RepaymentInstallment],
        charges: List[LoanCharge],
    ) -> None:
        allocation = _Allocation(transaction.currency)
        first, last = _ends(installments)
        for installment in sorted(installments, key=lambda i: i.installment_number):
            if installment.total_outstanding.is_zero():
                continue
            written_off = installment.write_off_outstanding(transaction.transaction_date)
            for component, amount in written_off.items():
                if amount.is_zero():
                    continue
                allocation.add(component, amount)
                if component in (Component.FEE, Component.PENALTY):
                    _apply_to_charges(
                        charges, installment, amount, installment is first, installment is last,
                        penalty=component == Component.PENALTY, action="write_off",
                    )
        transaction.update_components_and_total(
            allocation.principal, allocation.interest, allocation.fee, allocation.penalty
        )


# ---------------------------------------------------------------------- #
# Strategies
# ---------------------------------------------------------------------- #

@register_processor("mifos-standard-strategy")
class PenaltiesFeesInterestPrincipalProcessor(LoanRepaymentScheduleTransactionProcessor):
    """Default order: penalties, fees, interest, principal"""

    @property
    def component_order(self) -> Sequence[Component]:
        return (Component.PENALTY, Component.FEE, Component.INTEREST, Component.PRINCIPAL)


@register_processor("principal-interest-penalties-fees-order-strategy")
class PrincipalInterestPenaltiesFeesProcessor(LoanRepaymentScheduleTransactionProcessor):

    @property
    def component_order(self) -> Sequence[Component]:
        return (Component.PRINCIPAL, Component.INTEREST, Component.PENALTY, Component.FEE)


@register_processor("interest-principal-penalties-fees-order-strategy")
class InterestPrincipalPenaltiesFeesProcessor(LoanRepaymentScheduleTransactionProcessor):

    @property
    def component_order(self) -> Sequence[Component]:
        return (Component.INTEREST, Component.PRINCIPAL, Component.PENALTY, Component.FEE)


@register_processor("early-repayment-strategy")
class EarlyRepaymentProcessor(PenaltiesFeesInterestPrincipalProcessor):
    """
    Pays installments due on or before the transaction date in the
    default order; any remainder reduces principal from the last
    installment backwards, shortening the tenure.
    """

    def _installments_for_repayment(self, transaction, installments):
        current = [
            i for i in installments
            if i.from_date < transaction.transaction_date or i.installment_number == 1
        ]
        return sorted(current, key=lambda i: i.installment_number)

    def _handle_remaining(self, transaction, installments, charges, remaining, allocation):
        first, last = _ends(installments)
        for installment in sorted(installments, key=lambda i: i.installment_number, reverse=True):
            if not remaining.is_positive():
                break
            remaining = self._pay_installment(
                installment, transaction.transaction_date, remaining, allocation, charges,
                installment is first, installment is last, components=(Component.PRINCIPAL,),
            )
        return remaining


# ---------------------------------------------------------------------- #
# Helpers
# ---------------------------------------------------------------------- #

def _ends(installments: List[RepaymentInstallment]):
    if not installments:
        return None, None
    ordered = sorted(installments, key=lambda i: i.installment_number)
    return ordered[0], ordered[-1]


def _find_charge(charges: List[LoanCharge], transaction: LoanTransaction) -> LoanCharge:
    for charge in charges:
        if charge.id == transaction.loan_charge_id:
            return charge
    raise ReplayInconsistencyError(
        f"Transaction references unknown charge {transaction.loan_charge_id}",
        transaction_id=transaction.id,
    )


def _installment_for_charge(
    charge: LoanCharge,
    installments: List[RepaymentInstallment],
    installment_number: Optional[int],
) -> Optional[RepaymentInstallment]:
    if charge.is_disbursement_charge:
        return None
    first, last = _ends(installments)
    for installment in installments:
        if installment_number is not None:
            if installment.installment_number == installment_number:
                return installment
        elif charge.is_due_on_installment(installment, installment is first, installment is last):
            return installment
    return None


def _apply_to_charges(
    charges: List[LoanCharge],
    installment: RepaymentInstallment,
    amount: Money,
    first: bool,
    last: bool,
    penalty: bool,
    action: str,
) -> Money:
    """Spread an installment fee or penalty amount over the charges behind it"""
    remaining = amount
    for charge in charges_due_on_installment(charges, installment, first, last, penalty):
        if not remaining.is_positive():
            break
        number = installment.installment_number if charge.is_installment_fee else None
        if action == "pay":
            applied = charge.pay(remaining, number)
        else:
            applied = charge.write_off(remaining, number)
        remaining = remaining - applied
    return remaining
