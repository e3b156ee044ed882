"""
Account Transfer Module

Moves money between a loan and its linked savings account (disbursement
to savings, charge payment from savings) and tracks which loan
transactions originated from a transfer.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from threading import RLock
from typing import Dict, List, Optional
import uuid

from .currency import Money
from .exceptions import LinkedAccountRequiredError, LoanValidationError
from .transactions import LoanTransaction


class TransferType(Enum):
    LOAN_DISBURSEMENT_TO_SAVINGS = "loan_disbursement_to_savings"
    CHARGE_PAYMENT_FROM_SAVINGS = "charge_payment_from_savings"
    LOAN_TOPUP_CLOSURE = "loan_topup_closure"


@dataclass
class AccountTransferRequest:
    """Transfer descriptor handed to the transfer service"""
    transfer_type: TransferType
    loan_id: str
    amount: Money
    transfer_date: date
    savings_account_id: Optional[str] = None
    to_loan_id: Optional[str] = None
    loan_transaction_id: Optional[int] = None
    description: str = ""


@dataclass
class AccountTransferDetails:
    id: str
    request: AccountTransferRequest
    loan_transaction_ids: List[int] = field(default_factory=list)
    reversed: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AccountTransferService(ABC):
    """Money movement between loans and savings accounts"""

    @abstractmethod
    def transfer_funds(self, request: AccountTransferRequest) -> AccountTransferDetails:
        """Execute a transfer"""

    @abstractmethod
    def is_account_transfer(self, loan_id: str, transaction_id: int) -> bool:
        """True if the loan transaction is part of a transfer"""

    @abstractmethod
    def link_transaction(self, transfer_id: str, transaction_id: int) -> None:
        """Attach a loan transaction to a transfer"""

    @abstractmethod
    def update_loan_transaction(self, loan_id: str, old_transaction_id: int, new_transaction: LoanTransaction) -> None:
        """Repoint a transfer from a reversed transaction to its replacement"""

    @abstractmethod
    def reverse_transfer(self, transfer_id: str) -> None:
        """Reverse one transfer"""

    @abstractmethod
    def reverse_all_transactions(self, loan_id: str) -> List[str]:
        """Reverse every transfer of a loan"""


class InMemoryAccountTransferService(AccountTransferService):
    """Transfers recorded in memory against registered savings balances"""

    def __init__(self):
        self._balances: Dict[str, Money] = {}
        self._transfers: Dict[str, AccountTransferDetails] = {}
        self._lock = RLock()

    def open_savings_account(self, account_id: str, balance: Money) -> None:
        with self._lock:
            self._balances[account_id] = balance

    def balance(self, account_id: str) -> Money:
        with self._lock:
            return self._balances[account_id]

    def transfer_funds(self, request: AccountTransferRequest) -> AccountTransferDetails:
        """
        Execute a transfer

        Raises:
            LinkedAccountRequiredError: If the savings account is unknown
            LoanValidationError: If the savings balance cannot cover a charge payment
        """
        with self._lock:
            if request.transfer_type != TransferType.LOAN_TOPUP_CLOSURE:
                if request.savings_account_id not in self._balances:
                    raise LinkedAccountRequiredError(
                        f"Savings account {request.savings_account_id} is not linked to loan {request.loan_id}"
                    )
                current = self._balances[request.savings_account_id]
                if request.transfer_type == TransferType.CHARGE_PAYMENT_FROM_SAVINGS:
                    if current < request.amount:
                        raise LoanValidationError(
                            f"Savings account {request.savings_account_id} has insufficient funds",
                            parameter="amount",
                        )
                    self._balances[request.savings_account_id] = current - request.amount
                else:
                    self._balances[request.savings_account_id] = current + request.amount

            details = AccountTransferDetails(id=str(uuid.uuid4()), request=request)
            if request.loan_transaction_id is not None:
                details.loan_transaction_ids.append(request.loan_transaction_id)
            self._transfers[details.id] = details
            return details

    def link_transaction(self, transfer_id: str, transaction_id: int) -> None:
        with self._lock:
            self._transfers[transfer_id].loan_transaction_ids.append(transaction_id)

    def is_account_transfer(self, loan_id: str, transaction_id: int) -> bool:
        with self._lock:
            return any(
                t.request.loan_id == loan_id and not t.reversed and transaction_id in t.loan_transaction_ids
                for t in self._transfers.values()
            )

    def update_loan_transaction(self, loan_id: str, old_transaction_id: int, new_transaction: LoanTransaction) -> None:
        with self._lock:
            for transfer in self._transfers.values():
                if transfer.request.loan_id != loan_id:
                    continue
                if old_transaction_id in transfer.loan_transaction_ids:
                    transfer.loan_transaction_ids = [
                        new_transaction.id if tid == old_transaction_id else tid
                        for tid in transfer.loan_transaction_ids
                    ]

    def reverse_transfer(self, transfer_id: str) -> None:
        with self._lock:
            self._reverse(self._transfers[transfer_id])

    def reverse_all_transactions(self, loan_id: str) -> List[str]:
        """Reverse a loan's transfers, restoring savings balances"""
        reversed_ids = []
        with self._lock:
            for transfer in self._transfers.values():
                if transfer.request.loan_id != loan_id or transfer.reversed:
                    continue
                self._reverse(transfer)
                reversed_ids.append(transfer.id)
        return reversed_ids

    def _reverse(self, transfer: AccountTransferDetails) -> None:
        if transfer.reversed:
            return
        request = transfer.request
        if request.savings_account_id in self._balances:
            current = self._balances[request.savings_account_id]
            if request.transfer_type == TransferType.CHARGE_PAYMENT_FROM_SAVINGS:
                self._balances[request.savings_account_id] = current + request.amount
            elif request.transfer_type == TransferType.LOAN_DISBURSEMENT_TO_SAVINGS:
                self._balances[request.savings_account_id] = current - request.amount
        transfer.reversed = True

    def transfers_for_loan(self, loan_id: str) -> List[AccountTransferDetails]:
        with self._lock:
            return [t for t in self._transfers.values() if t.request.loan_id == loan_id]
