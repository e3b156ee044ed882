"""
Loan Charges Module

Fee and penalty definitions attached to a loan, either due on a
specified date, at disbursement, or spread across installments.
Installment fees resolve to one InstallmentCharge line per installment
whose amounts sum to the charge total.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .currency import Money, Currency
from .exceptions import AlreadyPaidOrWaivedError, LoanValidationError
from .installments import RepaymentInstallment


class ChargeTimeType(Enum):
    """When a charge falls due"""
    DISBURSEMENT = "disbursement"
    TRANCHE_DISBURSEMENT = "tranche_disbursement"
    SPECIFIED_DUE_DATE = "specified_due_date"
    INSTALLMENT_FEE = "installment_fee"
    OVERDUE_INSTALLMENT = "overdue_installment"  # Penalty on an installment left unpaid past its due date

    @property
    def is_disbursement(self) -> bool:
        return self in (ChargeTimeType.DISBURSEMENT, ChargeTimeType.TRANCHE_DISBURSEMENT)

    @property
    def is_dated(self) -> bool:
        """Charges that carry their own due date from creation"""
        return self in (ChargeTimeType.SPECIFIED_DUE_DATE, ChargeTimeType.OVERDUE_INSTALLMENT)


class ChargeCalculationType(Enum):
    """How a charge amount is computed"""
    FLAT = "flat"
    PERCENT_OF_AMOUNT = "percent_of_amount"
    PERCENT_OF_AMOUNT_AND_INTEREST = "percent_of_amount_and_interest"
    PERCENT_OF_INTEREST = "percent_of_interest"
    PERCENT_OF_DISBURSEMENT_AMOUNT = "percent_of_disbursement_amount"

    @property
    def is_percentage(self) -> bool:
        return self != ChargeCalculationType.FLAT


class ChargePaymentMode(Enum):
    """How a charge is collected"""
    REGULAR = "regular"                    # Cash, allocated through repayments
    ACCOUNT_TRANSFER = "account_transfer"  # Collected from the linked savings account


class ChargeStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    WAIVED = "waived"


@dataclass
class ChargeDefinition:
    """Product-level charge template"""
    id: str
    name: str
    currency: Currency
    amount: Decimal  # Money amount for flat charges, percentage otherwise
    time_type: ChargeTimeType
    calculation_type: ChargeCalculationType = ChargeCalculationType.FLAT
    payment_mode: ChargePaymentMode = ChargePaymentMode.REGULAR
    is_penalty: bool = False

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            self.amount = Decimal(str(self.amount))
        if self.amount < Decimal('0'):
            raise ValueError("Charge amount cannot be negative")


@dataclass
class InstallmentCharge:
    """Per-installment line of an installment fee"""
    installment_number: int
    amount: Money
    amount_paid: Money = None
    amount_waived: Money = None
    amount_written_off: Money = None
    waived: bool = False

    def __post_init__(self):
        zero = Money.zero(self.amount.currency)
        self.amount_paid = self.amount_paid or zero
        self.amount_waived = self.amount_waived or zero
        self.amount_written_off = self.amount_written_off or zero

    @property
    def amount_outstanding(self) -> Money:
        return self.amount - self.amount_paid - self.amount_waived - self.amount_written_off

    @property
    def is_paid(self) -> bool:
        return not self.waived and self.amount_outstanding.is_zero() and self.amount_paid.is_positive()

    @property
    def is_pending(self) -> bool:
        return not self.waived and self.amount_outstanding.is_positive()

    def pay(self, amount: Money) -> Money:
        applied = amount.min(self.amount_outstanding).non_negative()
        self.amount_paid = self.amount_paid + applied
        return applied

    def waive(self) -> Money:
        waived = self.amount_outstanding
        self.amount_waived = self.amount_waived + waived
        self.waived = True
        return waived

    def reset(self) -> None:
        zero = Money.zero(self.amount.currency)
        self.amount_paid = zero
        self.amount_waived = zero
        self.amount_written_off = zero
        self.waived = False


@dataclass
class LoanCharge:
    """
    A fee or penalty attached to a loan

    Paid, waived and written-off amounts are derived state: the
    transaction processor resets and rebuilds them on every replay.
    """
    id: int
    definition: ChargeDefinition
    amount: Money
    due_date: Optional[date] = None
    percentage: Optional[Decimal] = None
    amount_percentage_applied_to: Optional[Money] = None
    amount_per_installment: Optional[Decimal] = None  # Flat installment fees only
    tranche_id: Optional[int] = None
    overdue_installment_number: Optional[int] = None
    installment_charges: List[InstallmentCharge] = field(default_factory=list)
    amount_paid: Money = None
    amount_waived: Money = None
    amount_written_off: Money = None
    waived: bool = False
    active: bool = True

    def __post_init__(self):
        if self.amount.currency != self.definition.currency:
            raise ValueError("Charge amount currency must match its definition")
        zero = Money.zero(self.amount.currency)
        self.amount_paid = self.amount_paid or zero
        self.amount_waived = self.amount_waived or zero
        self.amount_written_off = self.amount_written_off or zero

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #

    @classmethod
    def create(
        cls,
        charge_id: int,
        definition: ChargeDefinition,
        principal: Money,
        due_date: Optional[date] = None,
        amount: Optional[Decimal] = None,
        tranche_id: Optional[int] = None,
        overdue_installment_number: Optional[int] = None,
    ) -> 'LoanCharge':
        """
        Build a loan charge from its definition

        Args:
            charge_id: Identifier of the charge on the loan
            definition: Charge definition
            principal: Principal the percentage applies to
            due_date: Due date for specified-due-date charges
            amount: Override of the definition amount or percentage
            tranche_id: Tranche for tranche-disbursement charges
            overdue_installment_number: Installment an overdue penalty applies to

        Returns:
            New LoanCharge
        """
        value = definition.amount if amount is None else Decimal(str(amount))
        if value < Decimal('0'):
            raise LoanValidationError("Charge amount cannot be negative", parameter="amount")

        percentage = None
        applied_to = None
        per_installment = None
        if definition.calculation_type.is_percentage:
            percentage = value
            applied_to = principal
            charge_amount = principal * (value / Decimal('100'))
        else:
            charge_amount = Money(value, definition.currency)
            if definition.time_type == ChargeTimeType.INSTALLMENT_FEE:
                per_installment = value

        if definition.time_type.is_dated and due_date is None:
            raise LoanValidationError(
                f"{definition.time_type.value} charges require a due date", parameter="due_date"
            )
        if definition.time_type == ChargeTimeType.OVERDUE_INSTALLMENT and overdue_installment_number is None:
            raise LoanValidationError(
                "Overdue charges apply to one installment", parameter="installment_number"
            )
        if not definition.time_type.is_dated:
            due_date = due_date if definition.time_type.is_disbursement else None

        return cls(
            id=charge_id,
            definition=definition,
            amount=charge_amount,
            due_date=due_date,
            percentage=percentage,
            amount_percentage_applied_to=applied_to,
            amount_per_installment=per_installment,
            tranche_id=tranche_id,
            overdue_installment_number=overdue_installment_number,
        )

    # ------------------------------------------------------------------ #
    # Classification
    # ------------------------------------------------------------------ #

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def is_penalty(self) -> bool:
        return self.definition.is_penalty

    @property
    def time_type(self) -> ChargeTimeType:
        return self.definition.time_type

    @property
    def payment_mode(self) -> ChargePaymentMode:
        return self.definition.payment_mode

    @property
    def is_installment_fee(self) -> bool:
        return self.time_type == ChargeTimeType.INSTALLMENT_FEE

    @property
    def is_disbursement_charge(self) -> bool:
        return self.time_type.is_disbursement

    @property
    def is_account_transfer(self) -> bool:
        return self.payment_mode == ChargePaymentMode.ACCOUNT_TRANSFER

    @property
    def is_specified_due_date(self) -> bool:
        return self.time_type == ChargeTimeType.SPECIFIED_DUE_DATE

    @property
    def is_overdue_charge(self) -> bool:
        return self.time_type == ChargeTimeType.OVERDUE_INSTALLMENT

    # ------------------------------------------------------------------ #
    # Balances
    # ------------------------------------------------------------------ #

    @property
    def amount_outstanding(self) -> Money:
        return self.amount - self.amount_paid - self.amount_waived - self.amount_written_off

    @property
    def status(self) -> ChargeStatus:
        if self.waived:
            return ChargeStatus.WAIVED
        if self.amount_outstanding.is_zero() and self.amount_paid.is_positive():
            return ChargeStatus.PAID
        return ChargeStatus.PENDING

    @property
    def is_paid(self) -> bool:
        return self.status == ChargeStatus.PAID

    @property
    def is_waived(self) -> bool:
        return self.status == ChargeStatus.WAIVED

    @property
    def is_pending(self) -> bool:
        return self.status == ChargeStatus.PENDING

    def installment_charge(self, installment_number: int) -> Optional[InstallmentCharge]:
        for line in self.installment_charges:
            if line.installment_number == installment_number:
                return line
        return None

    def first_unpaid_installment_charge(self) -> Optional[InstallmentCharge]:
        for line in sorted(self.installment_charges, key=lambda l: l.installment_number):
            if line.is_pending:
                return line
        return None

    def amount_due_for(self, installment_number: int) -> Money:
        line = self.installment_charge(installment_number)
        return line.amount if line else Money.zero(self.currency)

    def is_due_on_installment(self, installment: RepaymentInstallment, first: bool, last: bool) -> bool:
        """True if this charge falls on the installment (installment fees excluded)"""
        if self.is_overdue_charge:
            return installment.installment_number == self.overdue_installment_number
        if not self.is_specified_due_date or self.due_date is None:
            return False
        if installment.covers(self.due_date, first=first):
            return True
        return last and self.due_date > installment.due_date

    # ------------------------------------------------------------------ #
    # Installment fee breakdown
    # ------------------------------------------------------------------ #

    def build_installment_charges(self, installments: Iterable[RepaymentInstallment]) -> None:
        """
        Spread an installment fee over the schedule; the charge amount
        becomes the sum of the per-installment lines
        """
        if not self.is_installment_fee:
            return
        calculation = self.definition.calculation_type
        if self.percentage is not None:
            value = self.percentage
        elif self.amount_per_installment is not None:
            value = self.amount_per_installment
        else:
            value = self.definition.amount
        lines = []
        for installment in installments:
            if calculation == ChargeCalculationType.FLAT:
                line_amount = Money(value, self.currency)
            elif calculation == ChargeCalculationType.PERCENT_OF_INTEREST:
                line_amount = installment.interest_due * (value / Decimal('100'))
            elif calculation == ChargeCalculationType.PERCENT_OF_AMOUNT_AND_INTEREST:
                base = installment.principal_due + installment.interest_due
                line_amount = base * (value / Decimal('100'))
            else:
                line_amount = installment.principal_due * (value / Decimal('100'))
            lines.append(InstallmentCharge(installment.installment_number, line_amount))
        self.installment_charges = lines
        self.amount = Money.total(self.currency, (line.amount for line in lines))

    def update_amount(self, amount: Decimal, principal: Money) -> None:
        """Recompute the charge amount, e.g. after a principal change"""
        if self.definition.calculation_type.is_percentage:
            self.percentage = Decimal(str(amount))
            self.amount_percentage_applied_to = principal
            self.amount = principal * (self.percentage / Decimal('100'))
        else:
            if self.is_installment_fee:
                self.amount_per_installment = Decimal(str(amount))
            self.amount = Money(Decimal(str(amount)), self.currency)

    # ------------------------------------------------------------------ #
    # Derived-state mutation (transaction processor only)
    # ------------------------------------------------------------------ #

    def reset_derived_state(self) -> None:
        zero = Money.zero(self.currency)
        self.amount_paid = zero
        self.amount_waived = zero
        self.amount_written_off = zero
        self.waived = False
        for line in self.installment_charges:
            line.reset()

    def pay(self, amount: Money, installment_number: Optional[int] = None) -> Money:
        """Apply a payment to the charge, or to one of its installment lines"""
        if installment_number is not None and self.installment_charges:
            line = self.installment_charge(installment_number)
            if line is None:
                return Money.zero(self.currency)
            applied = line.pay(amount)
        else:
            applied = amount.min(self.amount_outstanding).non_negative()
        self.amount_paid = self.amount_paid + applied
        return applied

    def waive(self, installment_number: Optional[int] = None) -> Money:
        """
        Waive the outstanding amount of the charge or of one installment line

        Raises:
            AlreadyPaidOrWaivedError: If nothing is left to waive
        """
        if self.installment_charges:
            line = self.installment_charge(installment_number) if installment_number else None
            if line is None or not line.is_pending:
                raise AlreadyPaidOrWaivedError(
                    f"Installment {installment_number} of charge {self.id} is already paid or waived",
                    charge_id=self.id,
                    installment_number=installment_number,
                )
            waived = line.waive()
            self.amount_waived = self.amount_waived + waived
            if all(l.waived for l in self.installment_charges):
                self.waived = True
            return waived

        if not self.is_pending:
            raise AlreadyPaidOrWaivedError(
                f"Charge {self.id} is already paid or waived", charge_id=self.id
            )
        waived = self.amount_outstanding
        self.amount_waived = self.amount_waived + waived
        self.waived = True
        return waived

    def write_off(self, amount: Money, installment_number: Optional[int] = None) -> Money:
        if installment_number is not None and self.installment_charges:
            line = self.installment_charge(installment_number)
            if line is None:
                return Money.zero(self.currency)
            applied = amount.min(line.amount_outstanding).non_negative()
            line.amount_written_off = line.amount_written_off + applied
        else:
            applied = amount.min(self.amount_outstanding).non_negative()
        self.amount_written_off = self.amount_written_off + applied
        return applied

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'charge_definition_id': self.definition.id,
            'name': self.definition.name,
            'amount': str(self.amount.amount),
            'currency': self.currency.code,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'overdue_installment_number': self.overdue_installment_number,
            'time_type': self.time_type.value,
            'payment_mode': self.payment_mode.value,
            'is_penalty': self.is_penalty,
            'status': self.status.value,
            'amount_paid': str(self.amount_paid.amount),
            'amount_waived': str(self.amount_waived.amount),
            'amount_outstanding': str(self.amount_outstanding.amount),
            'active': self.active,
        }


def charges_due_on_installment(
    charges: Iterable[LoanCharge],
    installment: RepaymentInstallment,
    first: bool,
    last: bool,
    penalty: bool,
) -> List[LoanCharge]:
    """Active charges (fees or penalties) that fall on an installment, oldest first"""
    result = []
    for charge in charges:
        if not charge.active or charge.is_penalty != penalty or charge.is_disbursement_charge:
            continue
        if charge.is_installment_fee:
            if charge.installment_charge(installment.installment_number) is not None:
                result.append(charge)
        elif charge.is_due_on_installment(installment, first, last):
            result.append(charge)
    result.sort(key=lambda c: (c.due_date or installment.due_date, c.id))
    return result
