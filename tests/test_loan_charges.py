"""
Tests for charges attached to a loan
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.charges import ChargeCalculationType, ChargeDefinition, ChargeTimeType
from loan_servicing.currency import Currency
from loan_servicing.exceptions import (
    AlreadyPaidOrWaivedError, CurrencyMismatchError, LoanNotActiveError, LoanValidationError,
)
from loan_servicing.loan import LoanProductSettings
from loan_servicing.schedule import InterestMethod
from loan_servicing.transactions import LoanTransactionType

from conftest import BUSINESS_DATE, DISBURSED_ON, FIRST_DUE, disbursed_loan, new_loan, reference_terms, usd


def fee(time_type=ChargeTimeType.SPECIFIED_DUE_DATE, amount='25', **kwargs) -> ChargeDefinition:
    return ChargeDefinition(
        id=kwargs.pop('id', 'fee'),
        name=kwargs.pop('name', 'Service fee'),
        currency=kwargs.pop('currency', Currency.USD),
        amount=Decimal(amount),
        time_type=time_type,
        **kwargs
    )


class TestSpecifiedDueDateCharge:
    """Test a flat fee due on a date"""

    def setup_method(self):
        self.loan = disbursed_loan()
        charges, self.changed = self.loan.add_loan_charge(fee(), BUSINESS_DATE, due_date=date(2024, 1, 20))
        self.charge = charges[0]

    def test_charge_lands_on_covering_installment(self):
        first, second = self.loan.installments

        assert first.fee_charges_due == usd('25')
        assert second.fee_charges_due.is_zero()
        assert self.loan.total_outstanding == usd('1125')
        assert self.changed is not None

    def test_repayment_pays_fee_first(self):
        transaction, _ = self.loan.make_repayment(
            LoanTransactionType.REPAYMENT, FIRST_DUE, usd('100'), BUSINESS_DATE
        )

        assert transaction.fee_charges_portion == usd('25')
        assert transaction.interest_portion == usd('50')
        assert transaction.principal_portion == usd('25')
        assert self.loan.get_charge(self.charge.id).is_paid

    def test_waive_and_undo(self):
        waiver, _ = self.loan.waive_loan_charge(self.charge.id, BUSINESS_DATE)

        assert waiver.transaction_type == LoanTransactionType.WAIVE_CHARGES
        assert waiver.fee_charges_portion == usd('25')
        assert self.loan.total_outstanding == usd('1100')
        assert self.charge.is_waived

        with pytest.raises(AlreadyPaidOrWaivedError):
            self.loan.waive_loan_charge(self.charge.id, BUSINESS_DATE)

        self.loan.undo_waive_loan_charge(waiver.id, BUSINESS_DATE)

        assert self.loan.total_outstanding == usd('1125')
        assert self.charge.is_pending

    def test_undo_waive_needs_charge_waiver(self):
        with pytest.raises(LoanValidationError, match="not an active charge waiver"):
            self.loan.undo_waive_loan_charge(1, BUSINESS_DATE)

    def test_unknown_charge(self):
        with pytest.raises(LoanValidationError, match="Unknown charge"):
            self.loan.waive_loan_charge(99, BUSINESS_DATE)

    def test_back_dated_charge_reallocates_repayment(self):
        """Test a charge dated before an existing repayment reprocesses it"""
        loan = disbursed_loan()
        repayment, _ = loan.make_repayment(LoanTransactionType.REPAYMENT, FIRST_DUE, usd('550'), BUSINESS_DATE)

        _, changed = loan.add_loan_charge(fee(), BUSINESS_DATE, due_date=date(2024, 1, 20))

        assert repayment.is_reversed
        replacement = changed.new_transaction_mappings[repayment.id]
        assert replacement.fee_charges_portion == usd('25')
        assert replacement.principal_portion == usd('475')


class TestChargeValidation:

    def test_currency_mismatch(self):
        loan = new_loan()

        with pytest.raises(CurrencyMismatchError):
            loan.add_loan_charge(fee(currency=Currency.EUR), BUSINESS_DATE, due_date=FIRST_DUE)

    def test_due_date_before_disbursement(self):
        loan = new_loan()

        with pytest.raises(LoanValidationError, match="before the disbursement date"):
            loan.add_loan_charge(fee(), BUSINESS_DATE, due_date=date(2023, 12, 1))

    def test_overdue_charges_not_added_manually(self):
        loan = new_loan()

        with pytest.raises(LoanValidationError, match="not added"):
            loan.add_loan_charge(fee(ChargeTimeType.OVERDUE_INSTALLMENT), BUSINESS_DATE)

    def test_disbursement_charge_after_disbursal(self):
        loan = disbursed_loan()

        with pytest.raises(LoanValidationError, match="after the loan is disbursed"):
            loan.add_loan_charge(fee(ChargeTimeType.DISBURSEMENT), BUSINESS_DATE)

    def test_installment_fee_on_active_recalculating_loan(self):
        product = LoanProductSettings(interest_recalculation_enabled=True)
        loan = disbursed_loan(
            product=product,
            terms=reference_terms(interest_method=InterestMethod.DECLINING_BALANCE),
        )

        with pytest.raises(LoanValidationError, match="Installment fees"):
            loan.add_loan_charge(fee(ChargeTimeType.INSTALLMENT_FEE, '5'), BUSINESS_DATE)

    def test_closed_loan(self):
        loan = disbursed_loan()
        loan.write_off(FIRST_DUE, BUSINESS_DATE)

        with pytest.raises(LoanNotActiveError):
            loan.add_loan_charge(fee(), BUSINESS_DATE, due_date=FIRST_DUE)


class TestPendingLoanCharges:
    """Test editing charges before approval"""

    def setup_method(self):
        self.loan = new_loan()
        charges, _ = self.loan.add_loan_charge(fee(), BUSINESS_DATE, due_date=date(2024, 1, 20))
        self.charge = charges[0]

    def test_update_charge(self):
        self.loan.update_loan_charge(self.charge.id, Decimal('40'), due_date=date(2024, 2, 20))

        first, second = self.loan.installments
        assert first.fee_charges_due.is_zero()
        assert second.fee_charges_due == usd('40')

    def test_remove_charge(self):
        self.loan.remove_loan_charge(self.charge.id)

        assert self.loan.charges == ()
        assert self.loan.total_outstanding == usd('1100')

    def test_edit_after_approval_rejected(self):
        self.loan.approve(DISBURSED_ON, BUSINESS_DATE)

        with pytest.raises(LoanValidationError, match="pending approval"):
            self.loan.remove_loan_charge(self.charge.id)

    def test_percentage_charge_follows_approved_principal(self):
        charges, _ = self.loan.add_loan_charge(
            fee(ChargeTimeType.DISBURSEMENT, '2', id='pct', calculation_type=ChargeCalculationType.PERCENT_OF_AMOUNT),
            BUSINESS_DATE,
        )
        assert charges[0].amount == usd('20')

        self.loan.approve(DISBURSED_ON, BUSINESS_DATE, approved_principal=usd('800'))

        assert charges[0].amount == usd('16')


class TestInstallmentFee:

    def setup_method(self):
        self.loan = disbursed_loan()
        charges, _ = self.loan.add_loan_charge(fee(ChargeTimeType.INSTALLMENT_FEE, '5'), BUSINESS_DATE)
        self.charge = charges[0]

    def test_fee_on_every_installment(self):
        assert [i.fee_charges_due for i in self.loan.installments] == [usd('5'), usd('5')]
        assert self.loan.total_outstanding == usd('1110')

    def test_repayment_pays_installment_line(self):
        transaction, _ = self.loan.make_repayment(
            LoanTransactionType.REPAYMENT, FIRST_DUE, usd('555'), BUSINESS_DATE
        )

        assert transaction.fee_charges_portion == usd('5')
        assert not self.charge.installment_charge(1).is_pending
        assert self.charge.installment_charge(2).is_pending

    def test_waive_one_installment(self):
        waiver, _ = self.loan.waive_loan_charge(self.charge.id, BUSINESS_DATE, installment_number=2)

        assert waiver.installment_number == 2
        assert self.loan.installments[1].fee_charges_waived == usd('5')
        assert self.loan.total_outstanding == usd('1105')

        with pytest.raises(AlreadyPaidOrWaivedError):
            self.loan.waive_loan_charge(self.charge.id, BUSINESS_DATE, installment_number=2)


def late_penalty(amount='25', **kwargs) -> ChargeDefinition:
    return fee(ChargeTimeType.OVERDUE_INSTALLMENT, amount, id=kwargs.pop('id', 'late'),
               name='Late payment', is_penalty=True, **kwargs)


class TestOverdueCharges:
    """Test penalties applied to installments left unpaid past their due date"""

    def setup_method(self):
        self.loan = disbursed_loan()

    def test_penalty_on_overdue_installment_only(self):
        charges, changed = self.loan.apply_overdue_charges([late_penalty()], date(2024, 2, 10))

        assert [c.overdue_installment_number for c in charges] == [1]
        assert charges[0].due_date == FIRST_DUE
        first, second = self.loan.installments
        assert first.penalty_charges_due == usd('25')
        assert second.penalty_charges_due.is_zero()
        assert self.loan.total_outstanding == usd('1125')
        assert changed is not None

    def test_penalty_applied_once_per_installment(self):
        self.loan.apply_overdue_charges([late_penalty()], date(2024, 2, 10))

        charges, changed = self.loan.apply_overdue_charges([late_penalty()], date(2024, 2, 20))
        assert charges == []
        assert changed is None

        charges, _ = self.loan.apply_overdue_charges([late_penalty()], date(2024, 3, 5))
        assert [c.overdue_installment_number for c in charges] == [2]
        assert self.loan.total_outstanding == usd('1150')

    def test_grace_days(self):
        charges, _ = self.loan.apply_overdue_charges([late_penalty()], date(2024, 2, 6), grace_days=5)
        assert charges == []

        charges, _ = self.loan.apply_overdue_charges([late_penalty()], date(2024, 2, 7), grace_days=5)
        assert charges[0].due_date == date(2024, 2, 6)

    def test_paid_installment_not_penalized(self):
        self.loan.make_repayment(LoanTransactionType.REPAYMENT, FIRST_DUE, usd('550'), BUSINESS_DATE)

        charges, _ = self.loan.apply_overdue_charges([late_penalty()], date(2024, 2, 10))

        assert charges == []

    def test_percentage_of_amount_and_interest(self):
        penalty = late_penalty('10', calculation_type=ChargeCalculationType.PERCENT_OF_AMOUNT_AND_INTEREST)

        charges, _ = self.loan.apply_overdue_charges([penalty], date(2024, 2, 10))

        assert charges[0].amount == usd('55')

    def test_repayment_pays_penalty(self):
        self.loan.apply_overdue_charges([late_penalty()], date(2024, 2, 10))

        transaction, _ = self.loan.make_repayment(
            LoanTransactionType.REPAYMENT, date(2024, 2, 10), usd('575'), BUSINESS_DATE
        )

        assert transaction.penalty_charges_portion == usd('25')
        assert self.loan.installments[0].completed

    def test_requires_overdue_definition(self):
        with pytest.raises(LoanValidationError, match="not an overdue installment charge"):
            self.loan.apply_overdue_charges([fee()], date(2024, 2, 10))

    def test_negative_grace_days(self):
        with pytest.raises(LoanValidationError, match="Grace days"):
            self.loan.apply_overdue_charges([late_penalty()], date(2024, 2, 10), grace_days=-1)

    def test_undisbursed_loan(self):
        with pytest.raises(LoanNotActiveError):
            new_loan().apply_overdue_charges([late_penalty()], date(2024, 2, 10))
