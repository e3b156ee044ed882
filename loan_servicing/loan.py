"""
Loan Aggregate Module

The Loan owns its installments, charges and transactions and is the
only place they change. Every operation validates its lifecycle event
and its input before mutating anything, so a raised LoanDomainError
always leaves the aggregate untouched.

Transactions are replayed against the schedule by the product's
transaction processor; the ordered, non-reversed transaction list fully
determines every installment balance.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .accounting import AccountingBridgeData, AccountingType
from .charges import (
    ChargeCalculationType, ChargeDefinition, ChargePaymentMode, ChargeTimeType, LoanCharge,
)
from .collateral import CollateralItem, total_collateral_value
from .currency import Money, Currency
from .exceptions import (
    AlreadyClosedWrittenOffError, AlreadyPaidOrWaivedError, CurrencyMismatchError,
    DateMismatchError, InsufficientCollateralError, InvalidStateTransitionError,
    LinkedAccountRequiredError, LoanNotActiveError, LoanValidationError,
)
from .installments import RepaymentInstallment
from .lifecycle import DEFAULT_STATE_MACHINE, LoanEvent, LoanLifecycleStateMachine, LoanStatus
from .processors import DEFAULT_PROCESSOR_CODE, get_processor
from .schedule import (
    DefaultScheduleGenerator, DisbursementEvent, HolidayCalendar, LoanTerms,
    RecalculationContext, ScheduleGenerator, WorkingDays, maturity_date,
)
from .transactions import (
    ChangedTransactionDetail, LoanTransaction, LoanTransactionType, PaymentDetail, sort_for_replay,
)


class LoanType(Enum):
    """Who the loan is made to"""
    INDIVIDUAL = "individual"
    GROUP = "group"
    JLG = "jlg"  # Joint liability group member loan


class LoanSubStatus(Enum):
    FORECLOSED = "foreclosed"


@dataclass
class LoanProductSettings:
    """Product switches copied onto the loan at creation"""
    product_id: str = "default"
    transaction_processor_code: str = DEFAULT_PROCESSOR_CODE
    interest_recalculation_enabled: bool = False
    compound_fees_on_recalculation: bool = False
    accounting_type: AccountingType = AccountingType.CASH
    multi_disbursement: bool = False
    sync_disbursement_with_expected_date: bool = False
    in_arrears_tolerance: Decimal = Decimal('0')
    overdue_charge_definition_ids: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.in_arrears_tolerance, Decimal):
            self.in_arrears_tolerance = Decimal(str(self.in_arrears_tolerance))

    @property
    def accrual_accounting(self) -> bool:
        return self.accounting_type.is_accrual


@dataclass
class LoanTranche:
    """One planned disbursement of a multi-disbursement loan"""
    id: int
    expected_date: date
    principal: Money
    actual_date: Optional[date] = None
    net_disbursal_amount: Optional[Money] = None

    @property
    def is_disbursed(self) -> bool:
        return self.actual_date is not None


@dataclass
class PostDatedCheck:
    installment_number: int
    amount: Money
    check_number: str
    bank_name: Optional[str] = None


_REPAYMENT_TYPES = (LoanTransactionType.REPAYMENT,)

# Transactions allowed to exist when a disbursal is undone
_UNDOABLE_WITH_DISBURSAL = (
    LoanTransactionType.DISBURSEMENT,
    LoanTransactionType.REPAYMENT_AT_DISBURSEMENT,
    LoanTransactionType.ACCRUAL,
)


class Loan:
    """
    Loan aggregate root

    Collaborators (schedule generator, transaction processor, lifecycle
    state machine, calendars) are injected; the processor is chosen by
    the product's processor code.
    """

    def __init__(
        self,
        loan_id: str,
        client_id: Optional[str],
        terms: LoanTerms,
        submitted_on_date: date,
        product: Optional[LoanProductSettings] = None,
        group_id: Optional[str] = None,
        loan_type: LoanType = LoanType.INDIVIDUAL,
        external_id: Optional[str] = None,
        tranches: Optional[Iterable[LoanTranche]] = None,
        collateral: Optional[Iterable[CollateralItem]] = None,
        linked_account_id: Optional[str] = None,
        topup_loan_id: Optional[str] = None,
        schedule_generator: Optional[ScheduleGenerator] = None,
        state_machine: Optional[LoanLifecycleStateMachine] = None,
        holiday_calendar: Optional[HolidayCalendar] = None,
        working_days: Optional[WorkingDays] = None,
    ):
        if client_id is None and group_id is None:
            raise LoanValidationError("A loan needs a client or a group", parameter="client_id")
        self.loan_id = loan_id
        self.client_id = client_id
        self.group_id = group_id
        self.loan_type = loan_type
        self.external_id = external_id
        self.terms = terms
        self.product = product or LoanProductSettings()
        self.processor = get_processor(self.product.transaction_processor_code)
        self.schedule_generator = schedule_generator or DefaultScheduleGenerator()
        self.state_machine = state_machine or DEFAULT_STATE_MACHINE
        self.holiday_calendar = holiday_calendar or HolidayCalendar()
        self.working_days = working_days or WorkingDays()
        self.linked_account_id = linked_account_id
        self.topup_loan_id = topup_loan_id

        self.status = LoanStatus.SUBMITTED_PENDING_APPROVAL
        self.sub_status: Optional[LoanSubStatus] = None
        self.submitted_on_date = submitted_on_date
        self.approved_on_date: Optional[date] = None
        self.rejected_on_date: Optional[date] = None
        self.withdrawn_on_date: Optional[date] = None
        self.expected_disbursement_date = terms.expected_disbursement_date
        self.actual_disbursement_date: Optional[date] = None
        self.closed_on_date: Optional[date] = None
        self.written_off_on_date: Optional[date] = None
        self.overpaid_on_date: Optional[date] = None
        self.approved_principal = terms.principal_amount
        self.net_disbursal_amount: Optional[Money] = None
        self.loan_counter: Optional[int] = None
        self.loan_product_counter: Optional[int] = None

        self._principal = terms.principal_amount
        self._installments: List[RepaymentInstallment] = []
        self._charges: List[LoanCharge] = []
        self._transactions: List[LoanTransaction] = []
        self._tranches: List[LoanTranche] = sorted(tranches or [], key=lambda t: (t.expected_date, t.id))
        self._tranche_transactions: Dict[int, List[LoanTransaction]] = {}
        self._collateral: List[CollateralItem] = list(collateral or [])
        self._post_dated_checks: List[PostDatedCheck] = []
        self._next_sequence = 1
        self._next_transaction_id = 1
        self._next_charge_id = 1

        for tranche in self._tranches:
            if tranche.principal.currency != self.currency:
                raise CurrencyMismatchError("Tranche currency must match the loan currency")
        if self._tranches:
            self.expected_disbursement_date = self._tranches[0].expected_date
        self._regenerate_schedule()

    # ------------------------------------------------------------------ #
    # Read-only views
    # ------------------------------------------------------------------ #

    @property
    def currency(self) -> Currency:
        return self.terms.currency

    @property
    def installments(self) -> Tuple[RepaymentInstallment, ...]:
        return tuple(self._installments)

    @property
    def charges(self) -> Tuple[LoanCharge, ...]:
        return tuple(c for c in self._charges if c.active)

    @property
    def transactions(self) -> Tuple[LoanTransaction, ...]:
        return tuple(self._transactions)

    @property
    def tranches(self) -> Tuple[LoanTranche, ...]:
        return tuple(self._tranches)

    @property
    def collateral(self) -> Tuple[CollateralItem, ...]:
        return tuple(self._collateral)

    @property
    def post_dated_checks(self) -> Tuple[PostDatedCheck, ...]:
        return tuple(self._post_dated_checks)

    @property
    def principal(self) -> Money:
        """Principal the schedule is built on"""
        if self._tranches:
            return Money.total(self.currency, (t.principal for t in self._tranches))
        return self._principal

    @property
    def maturity_date(self) -> Optional[date]:
        return maturity_date(self._installments)

    @property
    def is_foreclosed(self) -> bool:
        return self.sub_status == LoanSubStatus.FORECLOSED

    def active_transactions(self) -> List[LoanTransaction]:
        return [t for t in self._transactions if t.is_not_reversed]

    def get_transaction(self, transaction_id: int) -> Optional[LoanTransaction]:
        for transaction in self._transactions:
            if transaction.id == transaction_id:
                return transaction
        return None

    def get_charge(self, charge_id: int) -> Optional[LoanCharge]:
        for charge in self._charges:
            if charge.id == charge_id and charge.active:
                return charge
        return None

    # ------------------------------------------------------------------ #
    # Balances
    # ------------------------------------------------------------------ #

    def _sum_installments(self, attribute: str) -> Money:
        return Money.total(self.currency, (getattr(i, attribute) for i in self._installments))

    @property
    def principal_outstanding(self) -> Money:
        return self._sum_installments('principal_outstanding')

    @property
    def interest_outstanding(self) -> Money:
        return self._sum_installments('interest_outstanding')

    @property
    def fee_charges_outstanding(self) -> Money:
        return self._sum_installments('fee_charges_outstanding')

    @property
    def penalty_charges_outstanding(self) -> Money:
        return self._sum_installments('penalty_charges_outstanding')

    @property
    def total_outstanding(self) -> Money:
        return self._sum_installments('total_outstanding')

    @property
    def disbursed_amount(self) -> Money:
        return Money.total(
            self.currency, (t.amount for t in self.active_transactions() if t.is_disbursement)
        )

    @property
    def total_overpaid(self) -> Money:
        """Overpayments not yet refunded"""
        active = self.active_transactions()
        overpaid = Money.total(self.currency, (t.overpayment_portion for t in active))
        refunded = Money.total(self.currency, (t.amount for t in active if t.transaction_type.is_refund))
        return (overpaid - refunded).non_negative()

    def get_receivable_interest(self, till_date: date, exclude_transaction_id: Optional[int] = None) -> Money:
        """
        Interest accrued up to a date and not yet repaid or waived

        Args:
            till_date: Last date included
            exclude_transaction_id: Transaction ignored, e.g. one being adjusted

        Returns:
            Receivable interest, never negative
        """
        receivable = Money.zero(self.currency)
        for transaction in self.active_transactions():
            if transaction.transaction_date > till_date or transaction.id == exclude_transaction_id:
                continue
            if transaction.is_accrual:
                receivable = receivable + transaction.interest_portion
            elif transaction.is_repayment_like or transaction.is_interest_waiver:
                receivable = receivable - transaction.interest_portion
        return receivable.non_negative()

    def _last_transaction_date(self) -> Optional[date]:
        dates = [t.transaction_date for t in self.active_transactions() if not t.is_accrual]
        return max(dates) if dates else None

    # ------------------------------------------------------------------ #
    # Application lifecycle
    # ------------------------------------------------------------------ #

    def approve(
        self,
        approved_on_date: date,
        business_date: date,
        approved_principal: Optional[Money] = None,
        expected_disbursement_date: Optional[date] = None,
    ) -> None:
        new_status = self.state_machine.validate(self.status, LoanEvent.APPROVE)
        if approved_on_date < self.submitted_on_date:
            raise LoanValidationError(
                "Approval date cannot be before the submitted date", parameter="approved_on_date"
            )
        self._check_not_future(approved_on_date, business_date, "approved_on_date")
        if approved_principal is not None:
            self._check_currency(approved_principal)
            if not approved_principal.is_positive() or approved_principal > self.terms.principal_amount:
                raise LoanValidationError(
                    f"Approved principal must be positive and at most {self.terms.principal_amount.to_string()}",
                    parameter="approved_principal",
                )
        if expected_disbursement_date is not None and expected_disbursement_date < approved_on_date:
            raise LoanValidationError(
                "Expected disbursement date cannot be before approval", parameter="expected_disbursement_date"
            )

        self.status = new_status
        self.approved_on_date = approved_on_date
        if approved_principal is not None:
            self.approved_principal = approved_principal
            if not self._tranches:
                self._principal = approved_principal
                self._update_percentage_charges()
        if expected_disbursement_date is not None and not self._tranches:
            self.expected_disbursement_date = expected_disbursement_date
        self._regenerate_schedule()

    def undo_approval(self) -> None:
        new_status = self.state_machine.validate(self.status, LoanEvent.UNDO_APPROVAL)
        self.status = new_status
        self.approved_on_date = None
        self.approved_principal = self.terms.principal_amount
        if not self._tranches:
            self._principal = self.terms.principal_amount
            self._update_percentage_charges()
        self._regenerate_schedule()

    def reject(self, rejected_on_date: date, business_date: date) -> None:
        new_status = self.state_machine.validate(self.status, LoanEvent.REJECT)
        if rejected_on_date < self.submitted_on_date:
            raise LoanValidationError("Rejection date cannot be before the submitted date", parameter="rejected_on_date")
        self._check_not_future(rejected_on_date, business_date, "rejected_on_date")
        self.status = new_status
        self.rejected_on_date = rejected_on_date
        self.closed_on_date = rejected_on_date

    def withdraw_by_applicant(self, withdrawn_on_date: date, business_date: date) -> None:
        new_status = self.state_machine.validate(self.status, LoanEvent.WITHDRAW)
        if withdrawn_on_date < self.submitted_on_date:
            raise LoanValidationError("Withdrawal date cannot be before the submitted date", parameter="withdrawn_on_date")
        self._check_not_future(withdrawn_on_date, business_date, "withdrawn_on_date")
        self.status = new_status
        self.withdrawn_on_date = withdrawn_on_date
        self.closed_on_date = withdrawn_on_date

    # ------------------------------------------------------------------ #
    # Disbursement
    # ------------------------------------------------------------------ #

    def disburse(
        self,
        actual_disbursement_date: date,
        business_date: date,
        principal: Optional[Money] = None,
        net_disbursal_amount: Optional[Money] = None,
        payment_detail: Optional[PaymentDetail] = None,
        tranche_id: Optional[int] = None,
        external_id: Optional[str] = None,
        post_dated_checks: Optional[Iterable[PostDatedCheck]] = None,
        validate_collateral: bool = True,
    ) -> Tuple[ChangedTransactionDetail, LoanTransaction]:
        """
        Disburse the loan, or the next tranche of a multi-disbursement loan

        Args:
            actual_disbursement_date: Date the money is released
            business_date: Current business date
            principal: Amount disbursed; the approved or tranche amount when omitted
            net_disbursal_amount: Amount paid out after disbursement charges
            payment_detail: How the money was paid out
            tranche_id: Tranche to disburse; the next pending one when omitted
            external_id: External reference of the disbursement transaction
            post_dated_checks: Checks collected against future installments
            validate_collateral: Check pledged collateral covers the disbursal

        Returns:
            Tuple of (ChangedTransactionDetail, disbursement transaction)
        """
        new_status = self.state_machine.validate(self.status, LoanEvent.DISBURSE)
        self._check_not_future(actual_disbursement_date, business_date, "actual_disbursement_date")
        if actual_disbursement_date < (self.approved_on_date or self.submitted_on_date):
            raise LoanValidationError(
                "Disbursement date cannot be before the approval date", parameter="actual_disbursement_date"
            )

        tranche = None
        if self._tranches:
            tranche = self._resolve_tranche(tranche_id)
            expected_date = tranche.expected_date
            amount = principal or tranche.principal
            already_disbursed = Money.total(self.currency, (t.principal for t in self._tranches if t.is_disbursed))
            limit = self.approved_principal - already_disbursed
            first_disbursement = not any(t.is_disbursed for t in self._tranches)
        else:
            if self.status != LoanStatus.APPROVED:
                raise InvalidStateTransitionError(
                    LoanEvent.DISBURSE, self.status, f"Loan {self.loan_id} is already disbursed"
                )
            expected_date = self.expected_disbursement_date
            amount = principal or self.approved_principal
            limit = self.approved_principal
            first_disbursement = True

        self._check_currency(amount)
        if not amount.is_positive():
            raise LoanValidationError("Disbursal amount must be positive", parameter="principal")
        if amount > limit:
            raise LoanValidationError(
                f"Disbursal amount {amount.to_string()} exceeds approved amount {limit.to_string()}",
                parameter="principal",
            )
        if self.product.sync_disbursement_with_expected_date and actual_disbursement_date != expected_date:
            raise DateMismatchError(
                f"Actual disbursement date {actual_disbursement_date.isoformat()} must match "
                f"expected date {expected_date.isoformat()}",
                expected_date=expected_date.isoformat(),
            )
        if validate_collateral and self.loan_type == LoanType.INDIVIDUAL and self._collateral:
            collateral_value = total_collateral_value(self._collateral, self.currency)
            if self.disbursed_amount + amount > collateral_value:
                raise InsufficientCollateralError(
                    f"Disbursal of {amount.to_string()} exceeds pledged collateral value "
                    f"{collateral_value.to_string()}",
                    collateral_value=str(collateral_value.amount),
                )

        due_charges = self._disbursement_charges_due(tranche, first_disbursement)
        regular_charges = Money.total(
            self.currency, (c.amount for c in due_charges if not c.is_account_transfer)
        )
        if net_disbursal_amount is None:
            net_disbursal_amount = (amount - regular_charges).non_negative()
        else:
            self._check_currency(net_disbursal_amount)
            if net_disbursal_amount > amount or net_disbursal_amount.is_negative():
                raise LoanValidationError(
                    "Net disbursal amount cannot exceed the disbursed principal", parameter="net_disbursal_amount"
                )

        # All validation done; mutate
        schedule_changed = not self._installments or self.product.multi_disbursement
        if tranche is not None:
            if amount != tranche.principal:
                tranche.principal = amount
                schedule_changed = True
            tranche.actual_date = actual_disbursement_date
            tranche.net_disbursal_amount = net_disbursal_amount
        else:
            if amount != self._principal:
                self._principal = amount
                schedule_changed = True
            self.actual_disbursement_date = actual_disbursement_date
        if first_disbursement:
            self.actual_disbursement_date = actual_disbursement_date
        if actual_disbursement_date != expected_date:
            schedule_changed = True
        self._update_percentage_charges()
        for charge in due_charges:
            charge.due_date = actual_disbursement_date

        self.status = new_status
        self.net_disbursal_amount = net_disbursal_amount
        if schedule_changed:
            self._regenerate_schedule()
        else:
            self._apply_charges_to_schedule()

        disbursement = self._new_transaction(
            LoanTransactionType.DISBURSEMENT, actual_disbursement_date, amount, business_date,
            payment_detail=payment_detail, external_id=external_id,
        )
        created = [disbursement]
        if regular_charges.is_positive():
            created.append(self._new_transaction(
                LoanTransactionType.REPAYMENT_AT_DISBURSEMENT, actual_disbursement_date,
                regular_charges, business_date, payment_detail=payment_detail,
            ))
        if tranche is not None:
            self._tranche_transactions[tranche.id] = created
        self._post_dated_checks.extend(post_dated_checks or [])

        changed = self._recompute(actual_disbursement_date)
        return changed, disbursement

    def undo_disbursal(self, business_date: date) -> List[int]:
        """
        Return a disbursed loan to APPROVED

        Only possible while nothing but the disbursement (and charges
        collected with it) has been posted.

        Returns:
            Ids of the reversed transactions
        """
        new_status = self.state_machine.validate(self.status, LoanEvent.UNDO_DISBURSAL)
        for transaction in self.active_transactions():
            if transaction.transaction_type not in _UNDOABLE_WITH_DISBURSAL:
                raise LoanValidationError(
                    f"Cannot undo disbursal: loan has a {transaction.transaction_type.value} "
                    f"transaction on {transaction.transaction_date.isoformat()}",
                    parameter="transaction_id",
                    transaction_id=transaction.id,
                )

        reversed_ids = []
        for transaction in self.active_transactions():
            transaction.reverse()
            reversed_ids.append(transaction.id)
        self.status = new_status
        self.actual_disbursement_date = None
        self.net_disbursal_amount = None
        self._principal = self.approved_principal
        for tranche in self._tranches:
            tranche.actual_date = None
            tranche.net_disbursal_amount = None
        self._tranche_transactions.clear()
        self._post_dated_checks.clear()
        for charge in self._charges:
            if charge.is_disbursement_charge:
                charge.due_date = None
        self._update_percentage_charges()
        self._regenerate_schedule()
        self._recompute(business_date)
        return reversed_ids

    def undo_last_disbursal(self, business_date: date) -> ChangedTransactionDetail:
        """Reverse the most recent tranche of a multi-disbursement loan"""
        if not self.state_machine.can_transition(self.status, LoanEvent.UNDO_DISBURSAL):
            raise InvalidStateTransitionError(LoanEvent.UNDO_DISBURSAL, self.status)
        if not (self.product.multi_disbursement and self._tranches):
            raise LoanValidationError("Only multi-disbursement loans can undo their last disbursal")
        disbursed = sorted((t for t in self._tranches if t.is_disbursed), key=lambda t: (t.actual_date, t.id))
        if len(disbursed) < 2:
            raise LoanValidationError("Last disbursal can be undone only when more than one tranche is disbursed")
        last = disbursed[-1]
        for transaction in self.active_transactions():
            if (transaction.transaction_date >= last.actual_date
                    and transaction.transaction_type not in _UNDOABLE_WITH_DISBURSAL):
                raise LoanValidationError(
                    "Cannot undo last disbursal: a transaction is dated on or after it",
                    transaction_id=transaction.id,
                )

        for transaction in self._tranche_transactions.pop(last.id, []):
            transaction.reverse()
        for charge in self._charges:
            if charge.is_disbursement_charge and charge.tranche_id == last.id:
                charge.due_date = None
        last.actual_date = None
        last.net_disbursal_amount = None
        self._regenerate_schedule()
        return self._recompute(business_date)

    def _resolve_tranche(self, tranche_id: Optional[int]) -> LoanTranche:
        if tranche_id is None:
            for tranche in self._tranches:
                if not tranche.is_disbursed:
                    return tranche
            raise LoanValidationError("All tranches are already disbursed", parameter="tranche_id")
        for tranche in self._tranches:
            if tranche.id == tranche_id:
                if tranche.is_disbursed:
                    raise LoanValidationError(
                        f"Tranche {tranche_id} is already disbursed", parameter="tranche_id"
                    )
                return tranche
        raise LoanValidationError(f"Unknown tranche {tranche_id}", parameter="tranche_id")

    def _disbursement_charges_due(self, tranche: Optional[LoanTranche], first: bool) -> List[LoanCharge]:
        due = []
        for charge in self.charges:
            if not charge.is_disbursement_charge or charge.due_date is not None:
                continue
            if charge.tranche_id is None and first:
                due.append(charge)
            elif tranche is not None and charge.tranche_id == tranche.id:
                due.append(charge)
        return due

    def disbursement_charges_for(self, transaction: LoanTransaction) -> List[LoanCharge]:
        """Charges that fell due with a disbursement transaction"""
        return [
            c for c in self.charges
            if c.is_disbursement_charge and c.due_date == transaction.transaction_date
        ]

    # ------------------------------------------------------------------ #
    # Tranche edits
    # ------------------------------------------------------------------ #

    def add_tranche(
        self, expected_date: date, principal: Money, business_date: date
    ) -> Tuple[LoanTranche, Optional[ChangedTransactionDetail]]:
        """
        Plan another disbursement of a multi-disbursement loan

        Returns:
            Tuple of (new tranche, ChangedTransactionDetail or None for
            loans not yet disbursed)
        """
        self._check_tranches_editable()
        self._check_tranche_amount(principal)
        self._check_tranche_date(expected_date)
        self._check_tranche_total(self.principal + principal)

        tranche = LoanTranche(
            id=max(t.id for t in self._tranches) + 1, expected_date=expected_date, principal=principal
        )
        self._tranches.append(tranche)
        return tranche, self._after_tranche_edit(business_date)

    def update_tranche(
        self,
        tranche_id: int,
        business_date: date,
        expected_date: Optional[date] = None,
        principal: Optional[Money] = None,
    ) -> Tuple[LoanTranche, Optional[ChangedTransactionDetail]]:
        """Move or resize a tranche that is not disbursed yet"""
        self._check_tranches_editable()
        tranche = self._resolve_tranche(tranche_id)
        new_date = expected_date or tranche.expected_date
        new_principal = principal or tranche.principal
        self._check_tranche_amount(new_principal)
        self._check_tranche_date(new_date)
        self._check_tranche_total(self.principal - tranche.principal + new_principal)

        tranche.expected_date = new_date
        tranche.principal = new_principal
        return tranche, self._after_tranche_edit(business_date)

    def remove_tranche(self, tranche_id: int, business_date: date) -> Optional[ChangedTransactionDetail]:
        """Drop an undisbursed tranche together with the charges raised on it"""
        self._check_tranches_editable()
        tranche = self._resolve_tranche(tranche_id)
        if len(self._tranches) == 1:
            raise LoanValidationError("A multi-disbursement loan needs at least one tranche", parameter="tranche_id")

        self._tranches.remove(tranche)
        for charge in self._charges:
            if charge.tranche_id == tranche.id:
                charge.active = False
        return self._after_tranche_edit(business_date)

    def _check_tranches_editable(self) -> None:
        if not (self.product.multi_disbursement and self._tranches):
            raise LoanValidationError("Only multi-disbursement loans have tranches", parameter="tranche_id")
        if self.status not in (LoanStatus.SUBMITTED_PENDING_APPROVAL, LoanStatus.APPROVED, LoanStatus.ACTIVE):
            raise LoanNotActiveError(
                f"Tranches of a loan in state '{self.status.value}' cannot be changed", status=self.status.value
            )

    def _check_tranche_amount(self, principal: Money) -> None:
        self._check_currency(principal)
        if not principal.is_positive():
            raise LoanValidationError("Tranche principal must be positive", parameter="principal")

    def _check_tranche_date(self, expected_date: date) -> None:
        if expected_date < self.submitted_on_date:
            raise LoanValidationError(
                "Tranche expected date cannot be before the submitted date", parameter="expected_date"
            )
        disbursed_dates = [t.actual_date for t in self._tranches if t.is_disbursed]
        if disbursed_dates and expected_date < max(disbursed_dates):
            raise LoanValidationError(
                f"Tranche expected date cannot be before the last disbursal on {max(disbursed_dates).isoformat()}",
                parameter="expected_date",
            )

    def _check_tranche_total(self, total: Money) -> None:
        if total > self.approved_principal:
            raise LoanValidationError(
                f"Tranches total {total.to_string()} exceeds approved amount {self.approved_principal.to_string()}",
                parameter="principal",
            )

    def _after_tranche_edit(self, business_date: date) -> Optional[ChangedTransactionDetail]:
        self._tranches.sort(key=lambda t: (t.expected_date, t.id))
        if not any(t.is_disbursed for t in self._tranches):
            self.expected_disbursement_date = self._tranches[0].expected_date
        self._update_percentage_charges()
        self._regenerate_schedule()
        if not self.status.is_disbursed:
            return None
        return self._recompute(business_date, recalculate_from=self.actual_disbursement_date)

    # ------------------------------------------------------------------ #
    # Repayment, waiver and adjustment
    # ------------------------------------------------------------------ #

    def make_repayment(
        self,
        transaction_type: LoanTransactionType,
        transaction_date: date,
        amount: Money,
        business_date: date,
        payment_detail: Optional[PaymentDetail] = None,
        external_id: Optional[str] = None,
    ) -> Tuple[LoanTransaction, ChangedTransactionDetail]:
        """
        Post a repayment

        Returns:
            Tuple of (new transaction, ChangedTransactionDetail of
            earlier transactions whose allocation changed)
        """
        self._check_repayable()
        if transaction_type not in _REPAYMENT_TYPES:
            raise LoanValidationError(
                f"{transaction_type.value} is not a repayment type", parameter="transaction_type"
            )
        self._check_amount(amount, "transaction_amount")
        self._check_transaction_date(transaction_date, business_date)

        transaction = self._new_transaction(
            transaction_type, transaction_date, amount, business_date,
            payment_detail=payment_detail, external_id=external_id,
        )
        changed = self._process_new_transaction(transaction, recalculate_from=transaction_date)
        return transaction, changed

    def waive_interest(
        self,
        amount: Money,
        transaction_date: date,
        business_date: date,
        external_id: Optional[str] = None,
    ) -> Tuple[LoanTransaction, ChangedTransactionDetail]:
        """
        Waive interest, oldest installment first

        With accrual accounting, only interest already accrued and still
        receivable on the date is waived as interest; the excess is
        booked as unrecognized income.
        """
        self.state_machine.validate(self.status, LoanEvent.WAIVE_INTEREST)
        self._check_amount(amount, "transaction_amount")
        self._check_transaction_date(transaction_date, business_date)

        unrecognized = self._unrecognized_interest(amount, transaction_date)
        transaction = self._new_transaction(
            LoanTransactionType.WAIVE_INTEREST, transaction_date, amount, business_date,
            external_id=external_id, unrecognized_income_portion=unrecognized,
        )
        changed = self._process_new_transaction(transaction, recalculate_from=transaction_date)
        return transaction, changed

    def _unrecognized_interest(
        self, amount: Money, on_date: date, exclude_transaction_id: Optional[int] = None
    ) -> Money:
        if not self.product.accrual_accounting:
            return Money.zero(self.currency)
        receivable = self.get_receivable_interest(on_date, exclude_transaction_id)
        return amount - amount.min(receivable)

    def adjust_existing_transaction(
        self,
        transaction_id: int,
        transaction_date: date,
        amount: Money,
        business_date: date,
        payment_detail: Optional[PaymentDetail] = None,
        external_id: Optional[str] = None,
    ) -> Tuple[Optional[LoanTransaction], ChangedTransactionDetail]:
        """
        Replace a repayment or interest waiver with corrected values

        An amount of zero reverses the transaction without a
        replacement. Transactions from the adjusted date onwards are
        reprocessed.

        Returns:
            Tuple of (replacement or None, ChangedTransactionDetail)
        """
        original = self.get_transaction(transaction_id)
        if original is None:
            raise LoanValidationError(f"Unknown transaction {transaction_id}", parameter="transaction_id")
        if self.status == LoanStatus.CLOSED_WRITTEN_OFF:
            raise AlreadyClosedWrittenOffError(
                f"Loan {self.loan_id} is written off; transactions cannot be adjusted"
            )
        if original.is_reversed:
            raise LoanValidationError(
                f"Transaction {transaction_id} is already reversed", parameter="transaction_id"
            )
        if not (original.transaction_type == LoanTransactionType.REPAYMENT or original.is_interest_waiver):
            raise LoanValidationError(
                f"{original.transaction_type.value} transactions cannot be adjusted", parameter="transaction_id"
            )
        if self.is_foreclosed:
            raise LoanValidationError("Transactions of a foreclosed loan cannot be adjusted")
        self.state_machine.validate(self.status, LoanEvent.ADJUST_TRANSACTION)
        self._check_currency(amount)
        if amount.is_negative():
            raise LoanValidationError("Transaction amount cannot be negative", parameter="transaction_amount")
        self._check_transaction_date(transaction_date, business_date)

        unrecognized = Money.zero(self.currency)
        if original.is_interest_waiver and amount.is_positive():
            unrecognized = self._unrecognized_interest(amount, transaction_date, original.id)

        original.reverse()
        replacement = None
        if amount.is_positive():
            replacement = self._new_transaction(
                original.transaction_type, transaction_date, amount, business_date,
                payment_detail=payment_detail, external_id=external_id,
                unrecognized_income_portion=unrecognized,
            )
        changed = self._recompute(
            business_date, recalculate_from=min(original.transaction_date, transaction_date)
        )
        if replacement is not None:
            changed.record(original.id, replacement)
        return replacement, changed

    # ------------------------------------------------------------------ #
    # Charges
    # ------------------------------------------------------------------ #

    def add_loan_charge(
        self,
        definition: ChargeDefinition,
        business_date: date,
        due_date: Optional[date] = None,
        amount: Optional[Decimal] = None,
    ) -> Tuple[List[LoanCharge], Optional[ChangedTransactionDetail]]:
        """
        Attach a charge to the loan

        Percent-of-disbursement charges on a tranched loan create one
        charge per pending tranche. A charge dated before the business
        date or the last transaction is applied on back date: the
        history is reprocessed, or the schedule recalculated when fees
        compound into interest.

        Returns:
            Tuple of (charges created, ChangedTransactionDetail or None
            for loans not yet disbursed)
        """
        if self.status not in (LoanStatus.SUBMITTED_PENDING_APPROVAL, LoanStatus.APPROVED, LoanStatus.ACTIVE):
            raise LoanNotActiveError(
                f"Charges cannot be added to a loan in state '{self.status.value}'", status=self.status.value
            )
        if definition.currency != self.currency:
            raise CurrencyMismatchError(
                f"Charge currency {definition.currency.code} does not match loan currency {self.currency.code}"
            )
        if definition.payment_mode == ChargePaymentMode.ACCOUNT_TRANSFER and not self.linked_account_id:
            raise LinkedAccountRequiredError(
                f"Charge {definition.name} is collected by account transfer but loan {self.loan_id} "
                f"has no linked savings account"
            )
        if definition.time_type == ChargeTimeType.OVERDUE_INSTALLMENT:
            raise LoanValidationError(
                "Overdue installment charges are applied to overdue installments, not added", parameter="charge_id"
            )
        if (definition.time_type == ChargeTimeType.INSTALLMENT_FEE
                and self.status == LoanStatus.ACTIVE
                and self.product.interest_recalculation_enabled):
            raise LoanValidationError(
                "Installment fees cannot be added to an active loan with interest recalculation",
                parameter="charge_id",
            )
        if definition.time_type.is_disbursement and self.status == LoanStatus.ACTIVE:
            if not any(not t.is_disbursed for t in self._tranches):
                raise LoanValidationError(
                    "Disbursement charges cannot be added after the loan is disbursed", parameter="charge_id"
                )
        disbursement_date = self.actual_disbursement_date or self.expected_disbursement_date
        if due_date is not None and due_date < disbursement_date:
            raise LoanValidationError(
                f"Charge due date cannot be before the disbursement date {disbursement_date.isoformat()}",
                parameter="due_date",
            )

        charge_id = self._next_charge_id
        new_charges = []
        pending_tranches = [t for t in self._tranches if not t.is_disbursed]
        if definition.calculation_type == ChargeCalculationType.PERCENT_OF_DISBURSEMENT_AMOUNT and pending_tranches:
            for tranche in pending_tranches:
                new_charges.append(LoanCharge.create(
                    charge_id, definition, tranche.principal, due_date, amount, tranche_id=tranche.id
                ))
                charge_id += 1
        else:
            new_charges.append(LoanCharge.create(
                charge_id, definition, self._percentage_base(definition.calculation_type), due_date, amount
            ))
            charge_id += 1

        self._next_charge_id = charge_id
        self._charges.extend(new_charges)
        self._apply_charges_to_schedule()
        if self.status != LoanStatus.ACTIVE:
            return new_charges, None

        last_date = self._last_transaction_date()
        applied_on_back_date = (
            due_date is None
            or due_date < business_date
            or (last_date is not None and due_date < last_date)
        )
        recalculate_from = None
        if (applied_on_back_date
                and self.product.interest_recalculation_enabled
                and self.product.compound_fees_on_recalculation):
            recalculate_from = due_date or disbursement_date
        return new_charges, self._recompute(business_date, recalculate_from=recalculate_from)

    def waive_loan_charge(
        self,
        charge_id: int,
        business_date: date,
        installment_number: Optional[int] = None,
        external_id: Optional[str] = None,
    ) -> Tuple[LoanTransaction, ChangedTransactionDetail]:
        """
        Waive a pending charge, or one installment of an installment fee

        Raises:
            AlreadyPaidOrWaivedError: If nothing is left to waive
        """
        self._check_active()
        charge = self._require_charge(charge_id)
        installment_number, outstanding = self._charge_outstanding(charge, installment_number)
        if not outstanding.is_positive():
            raise AlreadyPaidOrWaivedError(
                f"Charge {charge_id} is already paid or waived",
                charge_id=charge_id,
                installment_number=installment_number,
            )
        self._check_transaction_date(business_date, business_date)

        transaction = self._new_transaction(
            LoanTransactionType.WAIVE_CHARGES, business_date, outstanding, business_date,
            external_id=external_id, loan_charge_id=charge.id, installment_number=installment_number,
        )
        changed = self._process_new_transaction(transaction)
        return transaction, changed

    def undo_waive_loan_charge(self, transaction_id: int, business_date: date) -> ChangedTransactionDetail:
        self._check_active()
        transaction = self.get_transaction(transaction_id)
        if transaction is None or not transaction.is_charge_waiver or transaction.is_reversed:
            raise LoanValidationError(
                f"Transaction {transaction_id} is not an active charge waiver", parameter="transaction_id"
            )
        transaction.reverse()
        return self._recompute(business_date)

    def pay_loan_charge(
        self,
        charge_id: int,
        transaction_date: date,
        amount: Money,
        business_date: date,
        installment_number: Optional[int] = None,
        payment_detail: Optional[PaymentDetail] = None,
    ) -> Tuple[LoanTransaction, ChangedTransactionDetail]:
        """Pay an account-transfer charge directly from the linked account"""
        self._check_active()
        charge = self._require_charge(charge_id)
        if not charge.is_account_transfer:
            raise LoanValidationError(
                f"Charge {charge_id} is collected through repayments", parameter="charge_id"
            )
        if not self.linked_account_id:
            raise LinkedAccountRequiredError(f"Loan {self.loan_id} has no linked savings account")
        installment_number, outstanding = self._charge_outstanding(charge, installment_number)
        if not outstanding.is_positive():
            raise AlreadyPaidOrWaivedError(
                f"Charge {charge_id} is already paid or waived", charge_id=charge_id
            )
        self._check_amount(amount, "amount")
        if amount > outstanding:
            raise LoanValidationError(
                f"Payment {amount.to_string()} exceeds charge outstanding {outstanding.to_string()}",
                parameter="amount",
            )
        self._check_transaction_date(transaction_date, business_date)

        transaction = self._new_transaction(
            LoanTransactionType.CHARGE_PAYMENT, transaction_date, amount, business_date,
            payment_detail=payment_detail, loan_charge_id=charge.id, installment_number=installment_number,
        )
        changed = self._process_new_transaction(transaction, recalculate_from=transaction_date)
        return transaction, changed

    def remove_loan_charge(self, charge_id: int) -> LoanCharge:
        self._check_submitted("removed")
        charge = self._require_charge(charge_id)
        charge.active = False
        self._apply_charges_to_schedule()
        return charge

    def update_loan_charge(
        self,
        charge_id: int,
        amount: Decimal,
        due_date: Optional[date] = None,
    ) -> LoanCharge:
        self._check_submitted("updated")
        charge = self._require_charge(charge_id)
        if Decimal(str(amount)) < Decimal('0'):
            raise LoanValidationError("Charge amount cannot be negative", parameter="amount")
        if due_date is not None:
            if not charge.is_specified_due_date:
                raise LoanValidationError("Only specified-due-date charges have a due date", parameter="due_date")
            if due_date < self.expected_disbursement_date:
                raise LoanValidationError(
                    "Charge due date cannot be before the disbursement date", parameter="due_date"
                )
            charge.due_date = due_date
        charge.update_amount(amount, self._percentage_base(charge.definition.calculation_type))
        self._apply_charges_to_schedule()
        return charge

    def apply_overdue_charges(
        self,
        definitions: Iterable[ChargeDefinition],
        business_date: date,
        grace_days: int = 0,
    ) -> Tuple[List[LoanCharge], Optional[ChangedTransactionDetail]]:
        """
        Penalize installments still unpaid more than grace_days after their due date

        Each definition applies at most once per installment. Percentage
        penalties are taken of the installment's outstanding principal,
        interest, or both, by calculation type.

        Args:
            definitions: Overdue installment charge definitions
            business_date: Current business date
            grace_days: Days past the due date before a penalty applies

        Returns:
            Tuple of (charges created, ChangedTransactionDetail or None
            when no installment became chargeable)
        """
        self._check_active()
        definitions = list(definitions)
        for definition in definitions:
            if definition.time_type != ChargeTimeType.OVERDUE_INSTALLMENT:
                raise LoanValidationError(
                    f"Charge {definition.name} is not an overdue installment charge",
                    parameter="charge_definition_id",
                )
            if definition.currency != self.currency:
                raise CurrencyMismatchError(
                    f"Charge currency {definition.currency.code} does not match loan currency {self.currency.code}"
                )
        if grace_days < 0:
            raise LoanValidationError("Grace days cannot be negative", parameter="grace_days")

        already_applied = {
            (c.definition.id, c.overdue_installment_number) for c in self.charges if c.is_overdue_charge
        }
        charge_id = self._next_charge_id
        new_charges = []
        for installment in sorted(self._installments, key=lambda i: i.installment_number):
            chargeable_from = installment.due_date + timedelta(days=grace_days)
            unpaid = installment.principal_outstanding + installment.interest_outstanding
            if not unpaid.is_positive() or chargeable_from >= business_date:
                continue
            for definition in definitions:
                if (definition.id, installment.installment_number) in already_applied:
                    continue
                new_charges.append(LoanCharge.create(
                    charge_id, definition, self._overdue_base(installment, definition.calculation_type),
                    due_date=chargeable_from,
                    overdue_installment_number=installment.installment_number,
                ))
                charge_id += 1

        if not new_charges:
            return [], None
        self._next_charge_id = charge_id
        self._charges.extend(new_charges)
        self._apply_charges_to_schedule()
        return new_charges, self._recompute(business_date)

    @staticmethod
    def _overdue_base(installment: RepaymentInstallment, calculation_type: ChargeCalculationType) -> Money:
        if calculation_type == ChargeCalculationType.PERCENT_OF_INTEREST:
            return installment.interest_outstanding
        if calculation_type == ChargeCalculationType.PERCENT_OF_AMOUNT_AND_INTEREST:
            return installment.principal_outstanding + installment.interest_outstanding
        return installment.principal_outstanding

    def _require_charge(self, charge_id: int) -> LoanCharge:
        charge = self.get_charge(charge_id)
        if charge is None:
            raise LoanValidationError(f"Unknown charge {charge_id}", parameter="charge_id")
        return charge

    def _charge_outstanding(self, charge: LoanCharge, installment_number: Optional[int]) -> Tuple[Optional[int], Money]:
        if charge.is_installment_fee:
            if installment_number is None:
                line = charge.first_unpaid_installment_charge()
            else:
                line = charge.installment_charge(installment_number)
            if line is None or not line.is_pending:
                raise AlreadyPaidOrWaivedError(
                    f"Installment {installment_number} of charge {charge.id} is already paid or waived",
                    charge_id=charge.id,
                    installment_number=installment_number,
                )
            return line.installment_number, line.amount_outstanding
        if not charge.is_pending:
            return None, Money.zero(self.currency)
        return None, charge.amount_outstanding

    def _percentage_base(self, calculation_type: ChargeCalculationType) -> Money:
        interest = Money.total(self.currency, (i.interest_due for i in self._installments))
        if calculation_type == ChargeCalculationType.PERCENT_OF_INTEREST:
            return interest
        if calculation_type == ChargeCalculationType.PERCENT_OF_AMOUNT_AND_INTEREST:
            return self.principal + interest
        return self.principal

    def _update_percentage_charges(self) -> None:
        for charge in self.charges:
            if (not charge.definition.calculation_type.is_percentage
                    or charge.is_installment_fee or charge.is_overdue_charge):
                continue
            if charge.tranche_id is not None:
                for tranche in self._tranches:
                    if tranche.id == charge.tranche_id:
                        charge.update_amount(charge.percentage, tranche.principal)
            else:
                charge.update_amount(charge.percentage, self._percentage_base(charge.definition.calculation_type))

    # ------------------------------------------------------------------ #
    # Write-off, close and foreclosure
    # ------------------------------------------------------------------ #

    def write_off(
        self,
        transaction_date: date,
        business_date: date,
        external_id: Optional[str] = None,
    ) -> Tuple[LoanTransaction, ChangedTransactionDetail]:
        """
        Write off everything outstanding and close the loan

        Returns:
            Tuple of (write-off transaction, ChangedTransactionDetail
            with the write-off under key 0)
        """
        new_status = self.state_machine.validate(self.status, LoanEvent.WRITE_OFF)
        self._check_closing_date(transaction_date, business_date)

        transaction = self._new_transaction(
            LoanTransactionType.WRITE_OFF, transaction_date, self.total_outstanding, business_date,
            external_id=external_id,
        )
        changed = self._post_closing_transaction(transaction)
        self.status = new_status
        self.written_off_on_date = transaction_date
        self.closed_on_date = transaction_date
        return transaction, changed

    def undo_write_off(self, business_date: date) -> ChangedTransactionDetail:
        new_status = self.state_machine.validate(self.status, LoanEvent.UNDO_WRITE_OFF)
        write_offs = [t for t in self.active_transactions() if t.transaction_type == LoanTransactionType.WRITE_OFF]
        if not write_offs:
            raise LoanValidationError(f"Loan {self.loan_id} has no write-off transaction to undo")

        sort_for_replay(write_offs)[-1].reverse()
        self.status = new_status
        self.written_off_on_date = None
        self.closed_on_date = None
        return self._recompute(business_date)

    def close(
        self,
        transaction_date: date,
        business_date: date,
    ) -> Tuple[Optional[LoanTransaction], ChangedTransactionDetail]:
        """
        Close the loan when its outstanding balance is within the
        product's in-arrears tolerance

        Any remaining balance is written off by a CLOSE transaction.

        Raises:
            InvalidStateTransitionError: If the loan cannot be closed
        """
        new_status = self.state_machine.validate(self.status, LoanEvent.CLOSE)
        self._check_closing_date(transaction_date, business_date)
        outstanding = self.total_outstanding
        tolerance = Money(self.product.in_arrears_tolerance, self.currency)
        if outstanding > tolerance:
            raise InvalidStateTransitionError(
                LoanEvent.CLOSE, self.status,
                f"Loan {self.loan_id} has {outstanding.to_string()} outstanding, "
                f"above the tolerance of {tolerance.to_string()}",
            )

        transaction = None
        changed = ChangedTransactionDetail()
        if outstanding.is_positive():
            transaction = self._new_transaction(
                LoanTransactionType.CLOSE, transaction_date, outstanding, business_date
            )
            changed = self._post_closing_transaction(transaction)
        self.status = new_status
        self.closed_on_date = transaction_date
        return transaction, changed

    def close_as_rescheduled(self, transaction_date: date, business_date: date) -> ChangedTransactionDetail:
        """Close a loan whose balance moved to a rescheduled loan"""
        new_status = self.state_machine.validate(self.status, LoanEvent.CLOSE_AS_RESCHEDULED)
        self._check_closing_date(transaction_date, business_date)

        changed = ChangedTransactionDetail()
        outstanding = self.total_outstanding
        if outstanding.is_positive():
            transaction = self._new_transaction(
                LoanTransactionType.CLOSE, transaction_date, outstanding, business_date
            )
            changed = self._post_closing_transaction(transaction)
        self.status = new_status
        self.closed_on_date = transaction_date
        return changed

    def _post_closing_transaction(self, transaction: LoanTransaction) -> ChangedTransactionDetail:
        self._add_transaction(transaction)
        if self._is_latest(transaction):
            self.processor.handle_transaction(transaction, self._installments, self._active_charges())
            changed = ChangedTransactionDetail()
        else:
            changed = self._run_reprocess()
        self._flush_new_transactions()
        changed.record(None, transaction)
        return changed

    def foreclose(
        self,
        transaction_date: date,
        business_date: date,
        external_id: Optional[str] = None,
        payment_detail: Optional[PaymentDetail] = None,
    ) -> Tuple[LoanTransaction, ChangedTransactionDetail]:
        """
        Settle the loan early

        Interest of installments starting on or after the foreclosure
        date is dropped and a FORECLOSURE transaction pays everything
        else.
        """
        if self.status != LoanStatus.ACTIVE:
            raise LoanNotActiveError(f"Loan {self.loan_id} is not active", status=self.status.value)
        self._check_closing_date(transaction_date, business_date)
        for tranche in self._tranches:
            if not tranche.is_disbursed and tranche.expected_date <= transaction_date:
                raise LoanValidationError(
                    f"Tranche {tranche.id} expected on {tranche.expected_date.isoformat()} is not disbursed",
                    parameter="transaction_date",
                )

        for installment in self._installments:
            if installment.from_date >= transaction_date:
                installment.drop_unsettled_interest()
                installment.refresh_completed()
        amount = self.total_outstanding
        transaction = self._new_transaction(
            LoanTransactionType.FORECLOSURE, transaction_date, amount, business_date,
            payment_detail=payment_detail, external_id=external_id,
        )
        changed = self._process_new_transaction(transaction)
        self.sub_status = LoanSubStatus.FORECLOSED
        return transaction, changed

    # ------------------------------------------------------------------ #
    # Overpayment refunds and accruals
    # ------------------------------------------------------------------ #

    def credit_balance_refund(
        self,
        transaction_date: date,
        amount: Money,
        business_date: date,
        external_id: Optional[str] = None,
        payment_detail: Optional[PaymentDetail] = None,
    ) -> LoanTransaction:
        return self._refund(
            LoanTransactionType.CREDIT_BALANCE_REFUND, transaction_date, amount, business_date,
            external_id, payment_detail,
        )

    def make_refund(
        self,
        transaction_date: date,
        amount: Money,
        business_date: date,
        external_id: Optional[str] = None,
        payment_detail: Optional[PaymentDetail] = None,
    ) -> LoanTransaction:
        return self._refund(
            LoanTransactionType.REFUND, transaction_date, amount, business_date,
            external_id, payment_detail,
        )

    def _refund(self, transaction_type, transaction_date, amount, business_date, external_id, payment_detail):
        self.state_machine.validate(self.status, LoanEvent.REFUND)
        self._check_amount(amount, "transaction_amount")
        overpaid = self.total_overpaid
        if amount > overpaid:
            raise LoanValidationError(
                f"Refund {amount.to_string()} exceeds the overpaid balance {overpaid.to_string()}",
                parameter="transaction_amount",
            )
        self._check_transaction_date(transaction_date, business_date)

        transaction = self._new_transaction(
            transaction_type, transaction_date, amount, business_date,
            payment_detail=payment_detail, external_id=external_id,
        )
        self._add_transaction(transaction)
        self._update_status_from_balances(transaction_date)
        self._flush_new_transactions()
        return transaction

    def add_accrual(
        self,
        transaction_date: date,
        business_date: date,
        interest: Money,
        fee: Optional[Money] = None,
        penalty: Optional[Money] = None,
    ) -> LoanTransaction:
        """Record income accrued up to a date"""
        if not self.status.is_disbursed:
            raise LoanNotActiveError(f"Loan {self.loan_id} is not disbursed", status=self.status.value)
        zero = Money.zero(self.currency)
        fee = fee or zero
        penalty = penalty or zero
        for value, name in ((interest, "interest"), (fee, "fee"), (penalty, "penalty")):
            self._check_currency(value)
            if value.is_negative():
                raise LoanValidationError(f"Accrued {name} cannot be negative", parameter=name)
        self._check_transaction_date(transaction_date, business_date)

        transaction = self._new_transaction(
            LoanTransactionType.ACCRUAL, transaction_date, interest + fee + penalty, business_date,
            interest_portion=interest, fee_charges_portion=fee, penalty_charges_portion=penalty,
        )
        self._add_transaction(transaction)
        self._flush_new_transactions()
        return transaction

    def recalculate_interest(self, business_date: date) -> ChangedTransactionDetail:
        """Regenerate the schedule from the last transaction with actual balances"""
        if not self.product.interest_recalculation_enabled:
            raise LoanValidationError(f"Interest recalculation is not enabled for loan {self.loan_id}")
        self._check_active()
        recalculate_from = self._last_transaction_date() or self.actual_disbursement_date
        return self._recompute(business_date, recalculate_from=recalculate_from)

    # ------------------------------------------------------------------ #
    # Transfers
    # ------------------------------------------------------------------ #

    def initiate_transfer(self, transaction_date: date, business_date: date) -> LoanTransaction:
        new_status = self.state_machine.validate(self.status, LoanEvent.INITIATE_TRANSFER)
        self._check_not_future(transaction_date, business_date, "transaction_date")
        last_date = self._last_transaction_date()
        if last_date is not None and last_date > transaction_date:
            raise LoanValidationError(
                f"A transaction is dated after the transfer date {transaction_date.isoformat()}",
                parameter="transaction_date",
            )
        return self._transfer_transaction(LoanTransactionType.INITIATE_TRANSFER, transaction_date, business_date, new_status)

    def accept_transfer(self, transaction_date: date, business_date: date) -> LoanTransaction:
        new_status = self.state_machine.validate(self.status, LoanEvent.ACCEPT_TRANSFER)
        self._check_not_future(transaction_date, business_date, "transaction_date")
        if self.total_outstanding.is_zero() and self.total_overpaid.is_positive():
            new_status = LoanStatus.OVERPAID
        return self._transfer_transaction(LoanTransactionType.APPROVE_TRANSFER, transaction_date, business_date, new_status)

    def withdraw_transfer(self, transaction_date: date, business_date: date) -> LoanTransaction:
        new_status = self.state_machine.validate(self.status, LoanEvent.WITHDRAW_TRANSFER)
        self._check_not_future(transaction_date, business_date, "transaction_date")
        if self.total_outstanding.is_zero() and self.total_overpaid.is_positive():
            new_status = LoanStatus.OVERPAID
        return self._transfer_transaction(LoanTransactionType.WITHDRAW_TRANSFER, transaction_date, business_date, new_status)

    def reject_transfer(self, transaction_date: date, business_date: date) -> LoanTransaction:
        new_status = self.state_machine.validate(self.status, LoanEvent.REJECT_TRANSFER)
        self._check_not_future(transaction_date, business_date, "transaction_date")
        return self._transfer_transaction(LoanTransactionType.REJECT_TRANSFER, transaction_date, business_date, new_status)

    def _transfer_transaction(self, transaction_type, transaction_date, business_date, new_status):
        transaction = self._new_transaction(
            transaction_type, transaction_date, self.principal_outstanding, business_date
        )
        self._add_transaction(transaction)
        self._flush_new_transactions()
        self.status = new_status
        return transaction

    # ------------------------------------------------------------------ #
    # Reprocessing
    # ------------------------------------------------------------------ #

    def reprocess_transactions(self) -> Optional[ChangedTransactionDetail]:
        """
        Replay the full history against the current schedule

        Returns:
            ChangedTransactionDetail, or None when no allocation changed
        """
        changed = self._run_reprocess()
        self._update_status_from_balances(self._last_transaction_date())
        self._flush_new_transactions()
        return changed if changed.has_changes() else None

    def _new_transaction(
        self,
        transaction_type: LoanTransactionType,
        transaction_date: date,
        amount: Money,
        submitted_on_date: date,
        **kwargs,
    ) -> LoanTransaction:
        transaction = LoanTransaction(
            transaction_type=transaction_type,
            transaction_date=transaction_date,
            amount=amount,
            submitted_on_date=submitted_on_date,
            **kwargs,
        )
        transaction.sequence = self._next_sequence
        self._next_sequence += 1
        return transaction

    def _add_transaction(self, transaction: LoanTransaction) -> None:
        self._transactions.append(transaction)

    def _active_charges(self) -> List[LoanCharge]:
        return [c for c in self._charges if c.active]

    def _is_latest(self, transaction: LoanTransaction) -> bool:
        for other in self.active_transactions():
            if other is transaction or not other.transaction_type.allocates_to_schedule:
                continue
            if other.sort_key > transaction.sort_key:
                return False
        return True

    def _process_new_transaction(
        self,
        transaction: LoanTransaction,
        recalculate_from: Optional[date] = None,
    ) -> ChangedTransactionDetail:
        """
        Record a transaction and allocate it

        A transaction that sorts after every other one is allocated
        incrementally; anything dated into the history, or any change
        on a loan with interest recalculation, replays the full history.
        """
        self._add_transaction(transaction)
        if self.product.interest_recalculation_enabled and recalculate_from is not None:
            return self._recompute(transaction.transaction_date, recalculate_from)
        if not self._is_latest(transaction):
            return self._recompute(transaction.transaction_date)

        self.processor.handle_transaction(transaction, self._installments, self._active_charges())
        self._update_status_from_balances(transaction.transaction_date)
        self._flush_new_transactions()
        return ChangedTransactionDetail()

    def _recompute(self, status_date: Optional[date], recalculate_from: Optional[date] = None) -> ChangedTransactionDetail:
        if (recalculate_from is not None
                and self.product.interest_recalculation_enabled
                and self.status.is_disbursed):
            self._regenerate_schedule(self._build_recalculation_context(recalculate_from))
        changed = self._run_reprocess()
        self._update_status_from_balances(status_date)
        self._flush_new_transactions()
        return changed

    def _run_reprocess(self) -> ChangedTransactionDetail:
        changed = self.processor.reprocess(self._transactions, self._installments, self._active_charges())
        for old_id, replacement in changed.items():
            original = self.get_transaction(old_id)
            original.reverse()
            self._transactions.append(replacement)
        return changed

    def _flush_new_transactions(self) -> None:
        """Stamp running balances on, and assign ids to, unrecorded transactions"""
        balance = Money.zero(self.currency)
        for transaction in sort_for_replay(self.active_transactions()):
            if transaction.is_disbursement:
                balance = balance + transaction.amount
            elif transaction.transaction_type.allocates_to_schedule:
                balance = balance - transaction.principal_portion
            if transaction.id is None:
                transaction.outstanding_loan_balance = balance.non_negative()
        for transaction in self._transactions:
            if transaction.id is None:
                transaction.id = self._next_transaction_id
                self._next_transaction_id += 1

    def _update_status_from_balances(self, on_date: Optional[date]) -> None:
        if self.status not in (LoanStatus.ACTIVE, LoanStatus.CLOSED_OBLIGATIONS_MET, LoanStatus.OVERPAID):
            return
        if self.total_outstanding.is_zero():
            if self.total_overpaid.is_positive():
                if self.status != LoanStatus.OVERPAID:
                    self.status = self.state_machine.validate(self.status, LoanEvent.OVERPAY)
                    self.overpaid_on_date = on_date
                    self.closed_on_date = None
            elif self.status != LoanStatus.CLOSED_OBLIGATIONS_MET:
                self.status = self.state_machine.validate(self.status, LoanEvent.OBLIGATIONS_MET)
                self.closed_on_date = on_date
                self.overpaid_on_date = None
        elif self.status != LoanStatus.ACTIVE:
            self.status = self.state_machine.validate(self.status, LoanEvent.REOPEN)
            self.closed_on_date = None
            self.overpaid_on_date = None

    # ------------------------------------------------------------------ #
    # Schedule
    # ------------------------------------------------------------------ #

    def _disbursement_events(self) -> List[DisbursementEvent]:
        if self._tranches:
            return [
                DisbursementEvent(t.actual_date or t.expected_date, t.principal, t.is_disbursed)
                for t in self._tranches
            ]
        disbursement_date = self.actual_disbursement_date or self.expected_disbursement_date
        return [DisbursementEvent(disbursement_date, self._principal, self.actual_disbursement_date is not None)]

    def _regenerate_schedule(self, recalculation: Optional[RecalculationContext] = None) -> None:
        self._installments = self.schedule_generator.generate(
            self.terms,
            self._disbursement_events(),
            self.holiday_calendar,
            self.working_days,
            recalculation,
        )
        self._apply_charges_to_schedule()

    def regenerate_schedule(self, business_date: date) -> ChangedTransactionDetail:
        """Rebuild the schedule from the loan terms and replay the history"""
        self._regenerate_schedule()
        return self._recompute(business_date)

    def _apply_charges_to_schedule(self) -> None:
        """Lay fee and penalty dues onto the installments"""
        if not self._installments:
            return
        zero = Money.zero(self.currency)
        ordered = sorted(self._installments, key=lambda i: i.installment_number)
        first, last = ordered[0], ordered[-1]
        for installment in ordered:
            installment.fee_charges_due = zero
            installment.penalty_charges_due = zero
        for charge in self._active_charges():
            if charge.is_disbursement_charge:
                continue
            if charge.is_installment_fee:
                charge.build_installment_charges(ordered)
            for installment in ordered:
                if charge.is_installment_fee:
                    amount = charge.amount_due_for(installment.installment_number)
                elif charge.is_due_on_installment(installment, installment is first, installment is last):
                    amount = charge.amount
                else:
                    continue
                if charge.is_penalty:
                    installment.penalty_charges_due = installment.penalty_charges_due + amount
                else:
                    installment.fee_charges_due = installment.fee_charges_due + amount
        for installment in ordered:
            installment.refresh_completed()

    def _build_recalculation_context(self, recalculate_from: date) -> RecalculationContext:
        """Actual principal repaid and unpaid fees, from a provisional replay"""
        provisional = self.processor.reprocess(self._transactions, self._installments, self._active_charges())
        replacements = dict(provisional.items())
        payments = []
        for transaction in self.active_transactions():
            if not transaction.is_repayment_like:
                continue
            source = replacements.get(transaction.id, transaction) if transaction.id is not None else transaction
            if source.principal_portion.is_positive():
                payments.append((transaction.transaction_date, source.principal_portion))

        due_dates = {i.installment_number: i.due_date for i in self._installments}
        unpaid_fees = []
        for charge in self._active_charges():
            if charge.is_installment_fee:
                for line in charge.installment_charges:
                    if line.amount_outstanding.is_positive() and line.installment_number in due_dates:
                        unpaid_fees.append((due_dates[line.installment_number], line.amount_outstanding))
            elif charge.is_specified_due_date and charge.amount_outstanding.is_positive():
                unpaid_fees.append((charge.due_date, charge.amount_outstanding))

        return RecalculationContext(
            recalculate_from=recalculate_from,
            principal_payments=payments,
            unpaid_fees=unpaid_fees,
            compound_fees=self.product.compound_fees_on_recalculation,
        )

    # ------------------------------------------------------------------ #
    # Validation helpers
    # ------------------------------------------------------------------ #

    def _check_currency(self, amount: Money) -> None:
        if amount.currency != self.currency:
            raise CurrencyMismatchError(
                f"Amount currency {amount.currency.code} does not match loan currency {self.currency.code}"
            )

    def _check_amount(self, amount: Money, parameter: str) -> None:
        self._check_currency(amount)
        if not amount.is_positive():
            raise LoanValidationError("Amount must be positive", parameter=parameter)

    @staticmethod
    def _check_not_future(on_date: date, business_date: date, parameter: str) -> None:
        if on_date > business_date:
            raise LoanValidationError(
                f"{parameter} {on_date.isoformat()} cannot be in the future", parameter=parameter
            )

    def _check_transaction_date(self, transaction_date: date, business_date: date) -> None:
        self._check_not_future(transaction_date, business_date, "transaction_date")
        if self.actual_disbursement_date and transaction_date < self.actual_disbursement_date:
            raise LoanValidationError(
                f"Transaction date {transaction_date.isoformat()} is before the disbursement date",
                parameter="transaction_date",
            )

    def _check_closing_date(self, transaction_date: date, business_date: date) -> None:
        self._check_transaction_date(transaction_date, business_date)
        last_date = self._last_transaction_date()
        if last_date is not None and transaction_date < last_date:
            raise LoanValidationError(
                f"Date {transaction_date.isoformat()} is before the last transaction on {last_date.isoformat()}",
                parameter="transaction_date",
            )

    def _check_repayable(self) -> None:
        if self.status == LoanStatus.CLOSED_WRITTEN_OFF:
            raise AlreadyClosedWrittenOffError(f"Loan {self.loan_id} is written off")
        if not self.state_machine.can_transition(self.status, LoanEvent.REPAY):
            raise LoanNotActiveError(
                f"Loan {self.loan_id} in state '{self.status.value}' does not accept repayments",
                status=self.status.value,
            )

    def _check_active(self) -> None:
        if self.status != LoanStatus.ACTIVE:
            raise LoanNotActiveError(f"Loan {self.loan_id} is not active", status=self.status.value)

    def _check_submitted(self, action: str) -> None:
        if self.status != LoanStatus.SUBMITTED_PENDING_APPROVAL:
            raise LoanValidationError(
                f"Charges can only be {action} while the loan is pending approval", parameter="charge_id"
            )

    # ------------------------------------------------------------------ #
    # Accounting and reporting
    # ------------------------------------------------------------------ #

    def find_existing_transaction_ids(self) -> Set[int]:
        return {t.id for t in self._transactions if t.id is not None and t.is_not_reversed}

    def find_existing_reversed_transaction_ids(self) -> Set[int]:
        return {t.id for t in self._transactions if t.id is not None and t.is_reversed}

    def derive_accounting_bridge_data(
        self,
        existing_transaction_ids: Set[int],
        existing_reversed_transaction_ids: Set[int],
        is_account_transfer: bool = False,
    ) -> AccountingBridgeData:
        """
        New and newly reversed transactions since a snapshot of ids

        Args:
            existing_transaction_ids: Non-reversed ids before the operation
            existing_reversed_transaction_ids: Reversed ids before the operation
            is_account_transfer: Whether the operation moved money by transfer

        Returns:
            AccountingBridgeData for the accounting sink
        """
        known = existing_transaction_ids | existing_reversed_transaction_ids
        new_transactions = [
            t for t in self._transactions
            if t.is_not_reversed and t.id not in known
        ]
        reversed_ids = sorted(
            t.id for t in self._transactions
            if t.is_reversed and t.id in existing_transaction_ids
        )
        return AccountingBridgeData(
            loan_id=self.loan_id,
            currency=self.currency,
            accounting_type=self.product.accounting_type,
            new_transactions=new_transactions,
            reversed_transaction_ids=reversed_ids,
            existing_transaction_ids=sorted(existing_transaction_ids),
            is_account_transfer=is_account_transfer,
        )

    def to_dict(self) -> Dict:
        return {
            'loan_id': self.loan_id,
            'client_id': self.client_id,
            'group_id': self.group_id,
            'external_id': self.external_id,
            'loan_type': self.loan_type.value,
            'status': self.status.value,
            'sub_status': self.sub_status.value if self.sub_status else None,
            'currency': self.currency.code,
            'principal': str(self.principal.amount),
            'approved_principal': str(self.approved_principal.amount),
            'actual_disbursement_date': (
                self.actual_disbursement_date.isoformat() if self.actual_disbursement_date else None
            ),
            'maturity_date': self.maturity_date.isoformat() if self.maturity_date else None,
            'closed_on_date': self.closed_on_date.isoformat() if self.closed_on_date else None,
            'loan_counter': self.loan_counter,
            'loan_product_counter': self.loan_product_counter,
            'principal_outstanding': str(self.principal_outstanding.amount),
            'total_outstanding': str(self.total_outstanding.amount),
            'total_overpaid': str(self.total_overpaid.amount),
            'installments': [i.to_dict() for i in self._installments],
            'charges': [c.to_dict() for c in self.charges],
            'transactions': [t.to_dict() for t in self._transactions],
        }
