"""
Loan Cycle Counter Module

Borrower and product cycle counters number a client's (or group's)
loans in disbursement order. Assigning a counter and shifting the
counters of later loans happen as one critical section keyed by the
borrower; callers that persist the shifted counters hold the same
borrower lock until the loans are saved.
"""

from contextlib import contextmanager
from datetime import date
from typing import Iterable, Iterator, List, Tuple
import threading
import weakref

from .loan import Loan, LoanType


def borrower_key(loan: Loan) -> str:
    """Group loans are counted per group, everything else per client"""
    if loan.loan_type == LoanType.GROUP and loan.group_id:
        return f"group:{loan.group_id}"
    return f"client:{loan.client_id}"


def _order_key(loan: Loan) -> Tuple[date, str]:
    return (loan.actual_disbursement_date or date.max, loan.loan_id)


class LoanCycleCounter:
    """Maintains loan_counter and loan_product_counter across a borrower's loans"""

    def __init__(self):
        # Entries vanish once no thread holds or waits on the borrower's lock
        self._locks = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    @contextmanager
    def borrower_lock(self, loan: Loan) -> Iterator[None]:
        """Serialize cycle changes of every loan of the same client or group"""
        key = borrower_key(loan)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
        with lock:
            yield

    def _same_borrower(self, loan: Loan, loans: Iterable[Loan]) -> List[Loan]:
        key = borrower_key(loan)
        return [
            other for other in loans
            if other.loan_id != loan.loan_id
            and borrower_key(other) == key
            and other.loan_counter is not None
        ]

    def update_loan_counters(self, loan: Loan, loans_of_borrower: Iterable[Loan]) -> List[Loan]:
        """
        Give a newly disbursed loan its cycle counters

        Loans disbursed later than this one (ties broken by loan id)
        move up by one, and this loan takes the lowest counter among
        them, or the next counter when none exist.

        Args:
            loan: Loan just disbursed
            loans_of_borrower: Other loans of the same client or group

        Returns:
            Loans whose counters changed, this loan excluded
        """
        with self.borrower_lock(loan):
            others = self._same_borrower(loan, loans_of_borrower)
            position = _order_key(loan)
            later = [o for o in others if _order_key(o) > position]
            same_product_later = [o for o in later if o.product.product_id == loan.product.product_id]
            same_product = [o for o in others if o.product.product_id == loan.product.product_id]

            if later:
                loan.loan_counter = min(o.loan_counter for o in later)
            else:
                loan.loan_counter = max((o.loan_counter for o in others), default=0) + 1
            if same_product_later:
                loan.loan_product_counter = min(o.loan_product_counter for o in same_product_later)
            else:
                loan.loan_product_counter = max(
                    (o.loan_product_counter for o in same_product), default=0
                ) + 1

            for other in later:
                other.loan_counter += 1
            for other in same_product_later:
                other.loan_product_counter += 1
            return later

    def remove_loan_cycle(self, loan: Loan, loans_of_borrower: Iterable[Loan]) -> List[Loan]:
        """
        Drop a loan from its borrower's cycle, moving later loans down

        Returns:
            Loans whose counters changed
        """
        if loan.loan_counter is None:
            return []
        with self.borrower_lock(loan):
            others = self._same_borrower(loan, loans_of_borrower)
            changed = []
            for other in others:
                moved = False
                if other.loan_counter > loan.loan_counter:
                    other.loan_counter -= 1
                    moved = True
                if (loan.loan_product_counter is not None
                        and other.product.product_id == loan.product.product_id
                        and other.loan_product_counter > loan.loan_product_counter):
                    other.loan_product_counter -= 1
                    moved = True
                if moved:
                    changed.append(other)
            loan.loan_counter = None
            loan.loan_product_counter = None
            return changed
