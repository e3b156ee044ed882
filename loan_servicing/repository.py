"""
Loan Repository Module

Abstract persistence boundary for loan aggregates plus an in-memory
implementation for testing. Saved loans are deep-copied so that callers
never share mutable state with the store, and transaction insertion
order is preserved with the aggregate.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from copy import deepcopy
from typing import Dict, Iterator, List, Optional
import threading
import weakref

from .exceptions import DataIntegrityConflictError
from .loan import Loan


class LoanRepository(ABC):
    """Abstract interface for loan persistence"""

    @abstractmethod
    def save(self, loan: Loan) -> None:
        """Persist a loan, enforcing unique external ids"""

    @abstractmethod
    def load(self, loan_id: str) -> Optional[Loan]:
        """Load a loan by id"""

    @abstractmethod
    def find_by_client(self, client_id: str) -> List[Loan]:
        pass

    @abstractmethod
    def find_by_group(self, group_id: str) -> List[Loan]:
        pass

    @abstractmethod
    def lock(self, loan_id: str):
        """Context manager serializing every operation on one loan"""


class InMemoryLoanRepository(LoanRepository):
    """In-memory loan store for testing"""

    def __init__(self):
        self._loans: Dict[str, Loan] = {}
        self._lock = threading.RLock()
        # Per-loan locks live only while a command holds or waits on them
        self._loan_locks = weakref.WeakValueDictionary()

    def save(self, loan: Loan) -> None:
        """
        Save a copy of the loan

        Raises:
            DataIntegrityConflictError: If the loan or one of its
                transactions reuses an external id owned elsewhere
        """
        with self._lock:
            self._check_external_ids(loan)
            self._loans[loan.loan_id] = deepcopy(loan)

    def load(self, loan_id: str) -> Optional[Loan]:
        with self._lock:
            loan = self._loans.get(loan_id)
            return deepcopy(loan) if loan is not None else None

    def exists(self, loan_id: str) -> bool:
        with self._lock:
            return loan_id in self._loans

    def find_by_client(self, client_id: str) -> List[Loan]:
        with self._lock:
            return [deepcopy(l) for l in self._loans.values() if l.client_id == client_id]

    def find_by_group(self, group_id: str) -> List[Loan]:
        with self._lock:
            return [deepcopy(l) for l in self._loans.values() if l.group_id == group_id]

    def find_by_external_id(self, external_id: str) -> Optional[Loan]:
        with self._lock:
            for loan in self._loans.values():
                if loan.external_id == external_id:
                    return deepcopy(loan)
            return None

    @contextmanager
    def lock(self, loan_id: str) -> Iterator[None]:
        with self._lock:
            loan_lock = self._loan_locks.get(loan_id)
            if loan_lock is None:
                loan_lock = threading.RLock()
                self._loan_locks[loan_id] = loan_lock
        with loan_lock:
            yield

    def _check_external_ids(self, loan: Loan) -> None:
        transaction_ids = {
            t.external_id for t in loan.transactions if t.external_id and t.is_not_reversed
        }
        if len(transaction_ids) != len([
            t for t in loan.transactions if t.external_id and t.is_not_reversed
        ]):
            raise DataIntegrityConflictError(
                f"Loan {loan.loan_id} has duplicate transaction external ids", loan_id=loan.loan_id
            )
        for other in self._loans.values():
            if other.loan_id == loan.loan_id:
                continue
            if loan.external_id and other.external_id == loan.external_id:
                raise DataIntegrityConflictError(
                    f"External id {loan.external_id} already belongs to loan {other.loan_id}",
                    external_id=loan.external_id,
                )
            for transaction in other.transactions:
                if transaction.external_id and transaction.external_id in transaction_ids:
                    raise DataIntegrityConflictError(
                        f"Transaction external id {transaction.external_id} already belongs to loan {other.loan_id}",
                        external_id=transaction.external_id,
                    )
