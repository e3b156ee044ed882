"""
Tests for command payload validation
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.commands import (
    AddChargeCommand, MoneyModel, RepaymentCommand, SubmitLoanCommand, parse_command,
)
from loan_servicing.currency import Currency
from loan_servicing.exceptions import LoanValidationError
from loan_servicing.schedule import InterestMethod

from conftest import money_payload, submit_payload, usd


class TestParseCommand:

    def test_valid_repayment(self):
        command = parse_command(RepaymentCommand, {
            'transaction_date': '2024-02-01',
            'transaction_amount': money_payload('550'),
        })

        assert command.transaction_date == date(2024, 2, 1)
        assert command.transaction_amount.to_money() == usd('550')

    def test_model_instance_passes_through(self):
        command = AddChargeCommand(charge_definition_id="fee")

        assert parse_command(AddChargeCommand, command) is command

    def test_bad_amount_names_field(self):
        with pytest.raises(LoanValidationError) as exc_info:
            parse_command(RepaymentCommand, {
                'transaction_date': '2024-02-01',
                'transaction_amount': money_payload('ten'),
            })

        assert exc_info.value.parameter == "transaction_amount.amount"

    def test_bad_currency_names_field(self):
        with pytest.raises(LoanValidationError) as exc_info:
            parse_command(RepaymentCommand, {
                'transaction_date': '2024-02-01',
                'transaction_amount': money_payload('10', 'XXX'),
            })

        assert exc_info.value.parameter == "transaction_amount.currency"

    def test_missing_field(self):
        with pytest.raises(LoanValidationError, match="Invalid RepaymentCommand") as exc_info:
            parse_command(RepaymentCommand, {'transaction_amount': money_payload('10')})

        assert exc_info.value.parameter == "transaction_date"


class TestMoneyModel:

    def test_round_trip_keeps_currency(self):
        model = MoneyModel.from_money(usd('12.5'))

        assert model.amount == '12.50'
        assert model.to_money().currency == Currency.USD

    def test_infinite_amount(self):
        with pytest.raises(LoanValidationError):
            parse_command(RepaymentCommand, {
                'transaction_date': '2024-02-01',
                'transaction_amount': money_payload('Infinity'),
            })


class TestSubmitLoanCommand:

    def test_to_terms(self):
        command = parse_command(SubmitLoanCommand, submit_payload())

        terms = command.to_terms()

        assert terms.principal_amount == usd('1000')
        assert terms.annual_interest_rate == Decimal('0.60')
        assert terms.interest_method == InterestMethod.FLAT
        assert command.product_id == "default"

    def test_tranches_and_collateral(self):
        command = parse_command(SubmitLoanCommand, submit_payload(
            tranches=[{'id': 1, 'expected_date': '2024-01-01', 'principal': money_payload('600')}],
            collateral=[{'client_collateral_id': 'gold', 'quantity': '2', 'base_price': money_payload('500')}],
        ))

        assert command.to_tranches()[0].principal == usd('600')
        item = command.to_collateral()[0]
        assert item.pct_to_base == Decimal('100')
        assert item.value == usd('1000')

    def test_zero_repayments(self):
        with pytest.raises(LoanValidationError) as exc_info:
            parse_command(SubmitLoanCommand, submit_payload(number_of_repayments=0))

        assert exc_info.value.parameter == "number_of_repayments"
