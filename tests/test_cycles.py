"""
Tests for borrower and product cycle counters
"""

from datetime import date

from loan_servicing.cycles import LoanCycleCounter, borrower_key
from loan_servicing.loan import LoanProductSettings, LoanType

from conftest import DISBURSED_ON, disbursed_loan, new_loan


def disbursed_on(loan_id, on_date, **kwargs):
    loan = new_loan(loan_id=loan_id, **kwargs)
    loan.approve(DISBURSED_ON, on_date)
    loan.disburse(on_date, on_date)
    return loan


class TestBorrowerKey:

    def test_individual_and_group(self):
        assert borrower_key(new_loan()) == "client:client-1"
        group_loan = new_loan(client_id=None, group_id="g-1", loan_type=LoanType.GROUP)
        assert borrower_key(group_loan) == "group:g-1"


class TestLoanCycleCounter:

    def setup_method(self):
        self.counter = LoanCycleCounter()

    def test_first_loan(self):
        loan = disbursed_loan()

        changed = self.counter.update_loan_counters(loan, [])

        assert changed == []
        assert loan.loan_counter == 1
        assert loan.loan_product_counter == 1

    def test_loans_numbered_in_disbursement_order(self):
        first = disbursed_on("loan-a", date(2024, 1, 1))
        self.counter.update_loan_counters(first, [])
        later = disbursed_on("loan-c", date(2024, 3, 1))
        self.counter.update_loan_counters(later, [first])

        middle = disbursed_on("loan-b", date(2024, 2, 1))
        changed = self.counter.update_loan_counters(middle, [first, later])

        assert middle.loan_counter == 2
        assert later.loan_counter == 3
        assert first.loan_counter == 1
        assert changed == [later]

    def test_product_counter_per_product(self):
        first = disbursed_on("loan-a", date(2024, 1, 1))
        self.counter.update_loan_counters(first, [])

        other_product = disbursed_on(
            "loan-b", date(2024, 2, 1), product=LoanProductSettings(product_id="other")
        )
        self.counter.update_loan_counters(other_product, [first])

        assert other_product.loan_counter == 2
        assert other_product.loan_product_counter == 1

    def test_other_borrowers_ignored(self):
        mine = disbursed_on("loan-a", date(2024, 2, 1))
        self.counter.update_loan_counters(mine, [])
        theirs = disbursed_on("loan-b", date(2024, 1, 1), client_id="client-2")

        self.counter.update_loan_counters(theirs, [mine])

        assert theirs.loan_counter == 1
        assert mine.loan_counter == 1

    def test_remove_moves_later_loans_down(self):
        first = disbursed_on("loan-a", date(2024, 1, 1))
        self.counter.update_loan_counters(first, [])
        second = disbursed_on("loan-b", date(2024, 2, 1))
        self.counter.update_loan_counters(second, [first])

        changed = self.counter.remove_loan_cycle(first, [second])

        assert changed == [second]
        assert second.loan_counter == 1
        assert second.loan_product_counter == 1
        assert first.loan_counter is None

    def test_remove_uncounted_loan(self):
        assert self.counter.remove_loan_cycle(new_loan(), []) == []

    def test_borrower_lock_is_reentrant_and_released(self):
        loan = new_loan()

        with self.counter.borrower_lock(loan):
            with self.counter.borrower_lock(loan):
                assert "client:client-1" in self.counter._locks

        assert "client:client-1" not in self.counter._locks
