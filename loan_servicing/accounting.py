"""
Accounting Bridge Module

Hands new and reversed loan transactions to the general-ledger sink.
The in-memory sink turns every transaction into a balanced double-entry
journal entry and posts reversing entries for reversed transactions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from threading import RLock
from typing import Dict, List, Optional, Tuple
import logging

from .currency import Money, Currency
from .exceptions import AccountingPostingError
from .transactions import LoanTransaction, LoanTransactionType


class AccountingType(Enum):
    """Accounting rule configured on the loan product"""
    NONE = "none"
    CASH = "cash"
    ACCRUAL_PERIODIC = "accrual_periodic"

    @property
    def is_accrual(self) -> bool:
        return self == AccountingType.ACCRUAL_PERIODIC


class GLAccount(Enum):
    """Loan portfolio chart of accounts"""
    LOAN_PORTFOLIO = "loan_portfolio"              # Asset
    FUND_SOURCE = "fund_source"                    # Asset
    INTEREST_RECEIVABLE = "interest_receivable"    # Asset
    FEES_RECEIVABLE = "fees_receivable"            # Asset
    PENALTIES_RECEIVABLE = "penalties_receivable"  # Asset
    INTEREST_INCOME = "interest_income"            # Revenue
    FEE_INCOME = "fee_income"                      # Revenue
    PENALTY_INCOME = "penalty_income"              # Revenue
    LOSSES_WRITTEN_OFF = "losses_written_off"      # Expense
    WAIVER_EXPENSE = "waiver_expense"              # Expense
    OVERPAYMENT_LIABILITY = "overpayment_liability"  # Liability


@dataclass
class AccountingBridgeData:
    """Everything the sink needs to post one loan operation"""
    loan_id: str
    currency: Currency
    accounting_type: AccountingType
    new_transactions: List[LoanTransaction] = field(default_factory=list)
    reversed_transaction_ids: List[int] = field(default_factory=list)
    existing_transaction_ids: List[int] = field(default_factory=list)
    is_account_transfer: bool = False

    def has_postings(self) -> bool:
        return bool(self.new_transactions or self.reversed_transaction_ids)


class AccountingSink(ABC):
    """Downstream journal-entry consumer; failures raise, never pass silently"""

    @abstractmethod
    def post_journal_entries(self, bridge_data: AccountingBridgeData) -> None:
        """Post entries for the operation described by bridge_data"""


@dataclass
class JournalEntryLine:
    """
    Individual line item in a journal entry
    Each line affects one account with either a debit or credit
    """
    account: GLAccount
    debit_amount: Money
    credit_amount: Money

    def __post_init__(self):
        debit_zero = self.debit_amount.is_zero()
        credit_zero = self.credit_amount.is_zero()

        if debit_zero == credit_zero:
            raise ValueError("Journal entry line must have exactly one of debit or credit amount")
        if self.debit_amount.currency != self.credit_amount.currency:
            raise ValueError("Debit and credit amounts must use same currency")

    @property
    def is_debit(self) -> bool:
        return not self.debit_amount.is_zero()

    def reversed(self) -> 'JournalEntryLine':
        return JournalEntryLine(self.account, self.credit_amount, self.debit_amount)


@dataclass
class JournalEntry:
    """Balanced double-entry posting for one loan transaction"""
    loan_id: str
    transaction_id: Optional[int]
    transaction_type: LoanTransactionType
    entry_date: date
    lines: List[JournalEntryLine]
    is_account_transfer: bool = False
    reverses: Optional[int] = None  # Transaction id whose entry this reverses

    def __post_init__(self):
        self.validate_balance()

    def validate_balance(self) -> None:
        """
        Validate that total debits equal total credits
        This is the fundamental rule of double-entry bookkeeping
        """
        if not self.lines:
            raise ValueError("Journal entry must have at least one line")
        currency = self.lines[0].debit_amount.currency
        debits = Money.total(currency, (line.debit_amount for line in self.lines))
        credits = Money.total(currency, (line.credit_amount for line in self.lines))
        if debits != credits:
            raise ValueError(
                f"Journal entry not balanced for {currency.code}: "
                f"debits={debits.to_string()}, credits={credits.to_string()}"
            )

    def total(self, account: GLAccount) -> Money:
        """Net debit amount posted to one account"""
        currency = self.lines[0].debit_amount.currency
        result = Money.zero(currency)
        for line in self.lines:
            if line.account == account:
                result = result + line.debit_amount - line.credit_amount
        return result


def _line(account: GLAccount, amount: Money, debit: bool) -> Optional[JournalEntryLine]:
    if amount.is_zero():
        return None
    zero = Money.zero(amount.currency)
    return JournalEntryLine(account, amount if debit else zero, zero if debit else amount)


def build_lines(
    transaction: LoanTransaction,
    accounting_type: AccountingType,
) -> List[JournalEntryLine]:
    """Debit/credit lines for one transaction under the product's accounting rule"""
    accrual = accounting_type.is_accrual
    t = transaction.transaction_type
    interest_account = GLAccount.INTEREST_RECEIVABLE if accrual else GLAccount.INTEREST_INCOME
    fee_account = GLAccount.FEES_RECEIVABLE if accrual else GLAccount.FEE_INCOME
    penalty_account = GLAccount.PENALTIES_RECEIVABLE if accrual else GLAccount.PENALTY_INCOME
    pairs: List[Tuple[GLAccount, Money, bool]] = []

    if t == LoanTransactionType.DISBURSEMENT:
        pairs = [
            (GLAccount.LOAN_PORTFOLIO, transaction.amount, True),
            (GLAccount.FUND_SOURCE, transaction.amount, False),
        ]
    elif t.is_repayment_like or t in (
        LoanTransactionType.CHARGE_PAYMENT, LoanTransactionType.REPAYMENT_AT_DISBURSEMENT
    ):
        pairs = [
            (GLAccount.FUND_SOURCE, transaction.amount, True),
            (GLAccount.LOAN_PORTFOLIO, transaction.principal_portion, False),
            (interest_account, transaction.interest_portion, False),
            (fee_account, transaction.fee_charges_portion, False),
            (penalty_account, transaction.penalty_charges_portion, False),
            (GLAccount.OVERPAYMENT_LIABILITY, transaction.overpayment_portion, False),
        ]
    elif t.is_waiver and accrual:
        waived = (
            transaction.interest_portion
            + transaction.fee_charges_portion
            + transaction.penalty_charges_portion
        )
        pairs = [
            (GLAccount.WAIVER_EXPENSE, waived, True),
            (GLAccount.INTEREST_RECEIVABLE, transaction.interest_portion, False),
            (GLAccount.FEES_RECEIVABLE, transaction.fee_charges_portion, False),
            (GLAccount.PENALTIES_RECEIVABLE, transaction.penalty_charges_portion, False),
        ]
    elif transaction.is_write_off:
        if accrual:
            pairs = [
                (GLAccount.LOSSES_WRITTEN_OFF, transaction.amount, True),
                (GLAccount.LOAN_PORTFOLIO, transaction.principal_portion, False),
                (GLAccount.INTEREST_RECEIVABLE, transaction.interest_portion, False),
                (GLAccount.FEES_RECEIVABLE, transaction.fee_charges_portion, False),
                (GLAccount.PENALTIES_RECEIVABLE, transaction.penalty_charges_portion, False),
            ]
        else:
            pairs = [
                (GLAccount.LOSSES_WRITTEN_OFF, transaction.principal_portion, True),
                (GLAccount.LOAN_PORTFOLIO, transaction.principal_portion, False),
            ]
    elif transaction.is_accrual and accrual:
        pairs = [
            (GLAccount.INTEREST_RECEIVABLE, transaction.interest_portion, True),
            (GLAccount.INTEREST_INCOME, transaction.interest_portion, False),
            (GLAccount.FEES_RECEIVABLE, transaction.fee_charges_portion, True),
            (GLAccount.FEE_INCOME, transaction.fee_charges_portion, False),
            (GLAccount.PENALTIES_RECEIVABLE, transaction.penalty_charges_portion, True),
            (GLAccount.PENALTY_INCOME, transaction.penalty_charges_portion, False),
        ]
    elif t.is_refund:
        pairs = [
            (GLAccount.OVERPAYMENT_LIABILITY, transaction.amount, True),
            (GLAccount.FUND_SOURCE, transaction.amount, False),
        ]

    return [line for line in (_line(*pair) for pair in pairs) if line is not None]


class InMemoryAccountingSink(AccountingSink):
    """Journal built in memory; used by tests and single-process deployments"""

    def __init__(self):
        self._entries: List[JournalEntry] = []
        self._posted: Dict[Tuple[str, int], JournalEntry] = {}
        self._lock = RLock()
        self.logger = logging.getLogger("loan_servicing.accounting")

    def post_journal_entries(self, bridge_data: AccountingBridgeData) -> None:
        """
        Post entries for new transactions and reverse entries of
        reversed transactions

        Raises:
            AccountingPostingError: If an entry does not balance
        """
        if bridge_data.accounting_type == AccountingType.NONE:
            return
        with self._lock:
            try:
                pending = []
                for transaction in bridge_data.new_transactions:
                    lines = build_lines(transaction, bridge_data.accounting_type)
                    if not lines:
                        continue
                    pending.append(JournalEntry(
                        loan_id=bridge_data.loan_id,
                        transaction_id=transaction.id,
                        transaction_type=transaction.transaction_type,
                        entry_date=transaction.transaction_date,
                        lines=lines,
                        is_account_transfer=bridge_data.is_account_transfer,
                    ))
                for transaction_id in bridge_data.reversed_transaction_ids:
                    original = self._posted.get((bridge_data.loan_id, transaction_id))
                    if original is None:
                        continue
                    pending.append(JournalEntry(
                        loan_id=bridge_data.loan_id,
                        transaction_id=transaction_id,
                        transaction_type=original.transaction_type,
                        entry_date=original.entry_date,
                        lines=[line.reversed() for line in original.lines],
                        is_account_transfer=bridge_data.is_account_transfer,
                        reverses=transaction_id,
                    ))
            except ValueError as e:
                raise AccountingPostingError(
                    f"Journal posting failed for loan {bridge_data.loan_id}: {e}",
                    loan_id=bridge_data.loan_id,
                ) from e

            for entry in pending:
                self._entries.append(entry)
                if entry.reverses is None:
                    self._posted[(entry.loan_id, entry.transaction_id)] = entry
                else:
                    self._posted.pop((entry.loan_id, entry.reverses), None)
            self.logger.debug(
                f"Posted {len(pending)} journal entries for loan {bridge_data.loan_id}"
            )

    def entries_for_loan(self, loan_id: str) -> List[JournalEntry]:
        with self._lock:
            return [entry for entry in self._entries if entry.loan_id == loan_id]

    def balance(self, loan_id: str, account: GLAccount, currency: Currency) -> Money:
        """Net debit balance of an account across a loan's entries"""
        result = Money.zero(currency)
        for entry in self.entries_for_loan(loan_id):
            result = result + entry.total(account)
        return result
