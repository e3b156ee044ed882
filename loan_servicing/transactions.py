"""
Loan Transaction Module

The ordered list of loan transactions is the source of truth for every
installment balance. Transactions are immutable once created, apart
from the reversed and manually-adjusted flags; they are never deleted.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from .currency import Money, Currency


class LoanTransactionType(Enum):
    """Types of loan transactions"""
    DISBURSEMENT = "disbursement"
    REPAYMENT = "repayment"
    REPAYMENT_AT_DISBURSEMENT = "repayment_at_disbursement"  # Disbursement charges collected up front
    WAIVE_INTEREST = "waive_interest"
    WAIVE_CHARGES = "waive_charges"
    WRITE_OFF = "write_off"
    CLOSE = "close"                      # Small balance written off when closing
    CHARGE_PAYMENT = "charge_payment"
    ACCRUAL = "accrual"
    REFUND = "refund"
    CREDIT_BALANCE_REFUND = "credit_balance_refund"
    FORECLOSURE = "foreclosure"
    INITIATE_TRANSFER = "initiate_transfer"
    APPROVE_TRANSFER = "approve_transfer"
    WITHDRAW_TRANSFER = "withdraw_transfer"
    REJECT_TRANSFER = "reject_transfer"

    @property
    def is_repayment_like(self) -> bool:
        return self in (LoanTransactionType.REPAYMENT, LoanTransactionType.FORECLOSURE)

    @property
    def is_waiver(self) -> bool:
        return self in (LoanTransactionType.WAIVE_INTEREST, LoanTransactionType.WAIVE_CHARGES)

    @property
    def is_write_off(self) -> bool:
        return self in (LoanTransactionType.WRITE_OFF, LoanTransactionType.CLOSE)

    @property
    def is_transfer(self) -> bool:
        return self in (
            LoanTransactionType.INITIATE_TRANSFER,
            LoanTransactionType.APPROVE_TRANSFER,
            LoanTransactionType.WITHDRAW_TRANSFER,
            LoanTransactionType.REJECT_TRANSFER,
        )

    @property
    def is_refund(self) -> bool:
        return self in (LoanTransactionType.REFUND, LoanTransactionType.CREDIT_BALANCE_REFUND)

    @property
    def allocates_to_schedule(self) -> bool:
        """False for types that never touch installment components"""
        return not (
            self in (LoanTransactionType.DISBURSEMENT, LoanTransactionType.ACCRUAL)
            or self.is_transfer
            or self.is_refund
        )


@dataclass(frozen=True)
class PaymentDetail:
    """How money moved for a transaction"""
    payment_type: str = "cash"
    account_number: Optional[str] = None
    check_number: Optional[str] = None
    receipt_number: Optional[str] = None
    bank_number: Optional[str] = None


_PORTIONS = (
    'principal_portion',
    'interest_portion',
    'fee_charges_portion',
    'penalty_charges_portion',
    'overpayment_portion',
    'unrecognized_income_portion',
)


@dataclass
class LoanTransaction:
    """A single financial event on a loan"""
    transaction_type: LoanTransactionType
    transaction_date: date
    amount: Money
    submitted_on_date: date
    principal_portion: Money = None
    interest_portion: Money = None
    fee_charges_portion: Money = None
    penalty_charges_portion: Money = None
    overpayment_portion: Money = None
    unrecognized_income_portion: Money = None
    id: Optional[int] = None          # Assigned when the loan records the transaction
    sequence: int = 0                 # Creation order, the replay tie-break
    external_id: Optional[str] = None
    payment_detail: Optional[PaymentDetail] = None
    loan_charge_id: Optional[int] = None
    installment_number: Optional[int] = None
    outstanding_loan_balance: Optional[Money] = None
    is_reversed: bool = False
    manually_adjusted_or_reversed: bool = False

    def __post_init__(self):
        if self.amount.is_negative():
            raise ValueError("Transaction amount cannot be negative")
        zero = Money.zero(self.amount.currency)
        for name in _PORTIONS:
            value = getattr(self, name)
            if value is None:
                setattr(self, name, zero)
            elif value.currency != self.amount.currency:
                raise ValueError(f"Transaction {name} currency must match amount currency")

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def sort_key(self) -> Tuple[date, int]:
        return (self.transaction_date, self.sequence)

    @property
    def is_not_reversed(self) -> bool:
        return not self.is_reversed

    @property
    def is_repayment_like(self) -> bool:
        return self.transaction_type.is_repayment_like

    @property
    def is_disbursement(self) -> bool:
        return self.transaction_type == LoanTransactionType.DISBURSEMENT

    @property
    def is_accrual(self) -> bool:
        return self.transaction_type == LoanTransactionType.ACCRUAL

    @property
    def is_interest_waiver(self) -> bool:
        return self.transaction_type == LoanTransactionType.WAIVE_INTEREST

    @property
    def is_charge_waiver(self) -> bool:
        return self.transaction_type == LoanTransactionType.WAIVE_CHARGES

    @property
    def is_write_off(self) -> bool:
        return self.transaction_type.is_write_off

    def components(self) -> Dict[str, Money]:
        return {name: getattr(self, name) for name in _PORTIONS}

    def update_components_and_total(
        self,
        principal: Money,
        interest: Money,
        fee_charges: Money,
        penalty_charges: Money,
    ) -> None:
        """Set the component breakdown; the amount becomes their sum"""
        self.principal_portion = principal
        self.interest_portion = interest
        self.fee_charges_portion = fee_charges
        self.penalty_charges_portion = penalty_charges
        self.amount = principal + interest + fee_charges + penalty_charges

    def update_components(
        self,
        principal: Money,
        interest: Money,
        fee_charges: Money,
        penalty_charges: Money,
    ) -> None:
        """Add to the component breakdown, leaving the amount alone"""
        self.principal_portion = self.principal_portion + principal
        self.interest_portion = self.interest_portion + interest
        self.fee_charges_portion = self.fee_charges_portion + fee_charges
        self.penalty_charges_portion = self.penalty_charges_portion + penalty_charges

    def allocated_total(self) -> Money:
        return (
            self.principal_portion
            + self.interest_portion
            + self.fee_charges_portion
            + self.penalty_charges_portion
        )

    def reset_components(self) -> None:
        zero = Money.zero(self.currency)
        for name in _PORTIONS:
            if name != 'unrecognized_income_portion':
                setattr(self, name, zero)

    def adjust_interest_component(self) -> None:
        """Interest not yet accrued is booked as unrecognized income"""
        self.unrecognized_income_portion = self.unrecognized_income_portion.min(self.interest_portion)
        self.interest_portion = self.interest_portion - self.unrecognized_income_portion

    def components_match(self, other: 'LoanTransaction') -> bool:
        if self.amount != other.amount:
            return False
        return all(getattr(self, name) == getattr(other, name) for name in _PORTIONS)

    def copy_for_replay(self) -> 'LoanTransaction':
        """
        Fresh, unrecorded copy used to recompute this transaction's
        allocation. It keeps the creation sequence so that the
        replacement replays in the same position.
        """
        return LoanTransaction(
            transaction_type=self.transaction_type,
            transaction_date=self.transaction_date,
            amount=self.amount,
            submitted_on_date=self.submitted_on_date,
            unrecognized_income_portion=self.unrecognized_income_portion,
            sequence=self.sequence,
            external_id=self.external_id,
            payment_detail=self.payment_detail,
            loan_charge_id=self.loan_charge_id,
            installment_number=self.installment_number,
        )

    def reverse(self) -> None:
        self.is_reversed = True
        self.manually_adjusted_or_reversed = True

    def to_dict(self) -> Dict:
        data = {
            'id': self.id,
            'sequence': self.sequence,
            'type': self.transaction_type.value,
            'transaction_date': self.transaction_date.isoformat(),
            'submitted_on_date': self.submitted_on_date.isoformat(),
            'amount': str(self.amount.amount),
            'currency': self.currency.code,
            'external_id': self.external_id,
            'is_reversed': self.is_reversed,
            'loan_charge_id': self.loan_charge_id,
            'installment_number': self.installment_number,
        }
        for name in _PORTIONS:
            data[name] = str(getattr(self, name).amount)
        if self.outstanding_loan_balance is not None:
            data['outstanding_loan_balance'] = str(self.outstanding_loan_balance.amount)
        return data


def sort_for_replay(transactions: List[LoanTransaction]) -> List[LoanTransaction]:
    """Chronological order, ties broken by creation sequence"""
    return sorted(transactions, key=lambda t: t.sort_key)


@dataclass
class ChangedTransactionDetail:
    """
    Transactions reversed and synthesized during one operation

    Keys are the ids of reversed transactions; key 0 marks a
    transaction synthesized without a predecessor (e.g. a write-off).
    """
    new_transaction_mappings: Dict[int, LoanTransaction] = field(default_factory=dict)

    SYNTHETIC_KEY = 0

    def record(self, old_transaction_id: Optional[int], new_transaction: LoanTransaction) -> None:
        key = self.SYNTHETIC_KEY if old_transaction_id is None else old_transaction_id
        self.new_transaction_mappings[key] = new_transaction

    def merge(self, other: Optional['ChangedTransactionDetail']) -> 'ChangedTransactionDetail':
        if other is not None:
            self.new_transaction_mappings.update(other.new_transaction_mappings)
        return self

    def has_changes(self) -> bool:
        return bool(self.new_transaction_mappings)

    def reversed_transaction_ids(self) -> List[int]:
        return [key for key in self.new_transaction_mappings if key != self.SYNTHETIC_KEY]

    def items(self) -> Iterator[Tuple[int, LoanTransaction]]:
        return iter(self.new_transaction_mappings.items())

    def __len__(self) -> int:
        return len(self.new_transaction_mappings)
