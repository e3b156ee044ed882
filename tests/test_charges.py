"""
Tests for charge definitions and loan charges
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.charges import (
    ChargeCalculationType, ChargeDefinition, ChargeStatus, ChargeTimeType, LoanCharge,
    charges_due_on_installment,
)
from loan_servicing.currency import Currency
from loan_servicing.exceptions import AlreadyPaidOrWaivedError, LoanValidationError
from loan_servicing.schedule import DefaultScheduleGenerator

from conftest import reference_terms, usd


def definition(time_type=ChargeTimeType.SPECIFIED_DUE_DATE, amount='25', **kwargs) -> ChargeDefinition:
    return ChargeDefinition(
        id=kwargs.pop('id', 'fee'),
        name=kwargs.pop('name', 'Processing fee'),
        currency=Currency.USD,
        amount=Decimal(amount),
        time_type=time_type,
        **kwargs
    )


class TestChargeDefinition:

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            definition(amount='-1')


class TestLoanCharge:
    """Test charge construction and derived state"""

    def test_flat_charge(self):
        charge = LoanCharge.create(1, definition(), usd('1000'), due_date=date(2024, 1, 20))

        assert charge.amount == usd('25')
        assert charge.status == ChargeStatus.PENDING
        assert charge.amount_outstanding == usd('25')

    def test_percentage_charge(self):
        charge = LoanCharge.create(
            1,
            definition(ChargeTimeType.DISBURSEMENT, '2', calculation_type=ChargeCalculationType.PERCENT_OF_AMOUNT),
            usd('1000'),
        )

        assert charge.amount == usd('20')
        assert charge.percentage == Decimal('2')
        assert charge.amount_percentage_applied_to == usd('1000')

        charge.update_amount(Decimal('3'), usd('500'))
        assert charge.amount == usd('15')

    def test_specified_due_date_requires_date(self):
        with pytest.raises(LoanValidationError, match="require a due date"):
            LoanCharge.create(1, definition(), usd('1000'))

    def test_amount_override(self):
        charge = LoanCharge.create(1, definition(), usd('1000'), date(2024, 1, 20), amount=Decimal('40'))
        assert charge.amount == usd('40')

    def test_pay_and_waive(self):
        charge = LoanCharge.create(1, definition(), usd('1000'), date(2024, 1, 20))

        assert charge.pay(usd('30')) == usd('25')
        assert charge.is_paid

        with pytest.raises(AlreadyPaidOrWaivedError):
            charge.waive()

        charge.reset_derived_state()
        assert charge.is_pending
        assert charge.waive() == usd('25')
        assert charge.is_waived

    def test_installment_fee_lines(self):
        """Test installment fees spread one line per installment"""
        installments = DefaultScheduleGenerator().generate(reference_terms(), [])
        charge = LoanCharge.create(1, definition(ChargeTimeType.INSTALLMENT_FEE, '5'), usd('1000'))

        charge.build_installment_charges(installments)

        assert [line.amount for line in charge.installment_charges] == [usd('5'), usd('5')]
        assert charge.amount == usd('10')
        assert charge.amount_due_for(2) == usd('5')
        assert charge.amount_due_for(3).is_zero()

    def test_installment_fee_override_survives_rebuild(self):
        installments = DefaultScheduleGenerator().generate(reference_terms(), [])
        charge = LoanCharge.create(1, definition(ChargeTimeType.INSTALLMENT_FEE, '5'), usd('1000'))

        charge.update_amount(Decimal('7'), usd('1000'))
        charge.build_installment_charges(installments)

        assert charge.amount == usd('14')

    def test_percent_of_interest_installment_fee(self):
        installments = DefaultScheduleGenerator().generate(reference_terms(), [])
        charge = LoanCharge.create(
            1,
            definition(ChargeTimeType.INSTALLMENT_FEE, '10', calculation_type=ChargeCalculationType.PERCENT_OF_INTEREST),
            usd('1000'),
        )

        charge.build_installment_charges(installments)

        assert charge.amount == usd('10')

    def test_waive_single_installment_line(self):
        installments = DefaultScheduleGenerator().generate(reference_terms(), [])
        charge = LoanCharge.create(1, definition(ChargeTimeType.INSTALLMENT_FEE, '5'), usd('1000'))
        charge.build_installment_charges(installments)

        assert charge.waive(1) == usd('5')
        assert not charge.is_waived
        assert charge.first_unpaid_installment_charge().installment_number == 2

        with pytest.raises(AlreadyPaidOrWaivedError):
            charge.waive(1)

    def test_charges_due_on_installment(self):
        installments = DefaultScheduleGenerator().generate(reference_terms(), [])
        fee = LoanCharge.create(1, definition(), usd('1000'), date(2024, 1, 20))
        late_fee = LoanCharge.create(2, definition(), usd('1000'), date(2024, 5, 1))
        penalty = LoanCharge.create(3, definition(is_penalty=True), usd('1000'), date(2024, 1, 20))
        charges = [fee, late_fee, penalty]

        first, last = installments

        assert charges_due_on_installment(charges, first, True, False, penalty=False) == [fee]
        # Charges due after maturity fall on the last installment
        assert charges_due_on_installment(charges, last, False, True, penalty=False) == [late_fee]
        assert charges_due_on_installment(charges, first, True, False, penalty=True) == [penalty]

    def test_to_dict(self):
        data = LoanCharge.create(1, definition(), usd('1000'), date(2024, 1, 20)).to_dict()

        assert data['amount'] == '25.00'
        assert data['status'] == 'pending'
        assert data['due_date'] == '2024-01-20'
