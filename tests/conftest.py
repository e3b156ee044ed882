"""
Shared builders for the loan servicing test suite

The reference loan is 1000 USD at 60% a year over two monthly
repayments with equal principal and flat interest, which gives two
installments of 500 principal plus 50 interest.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.accounting import AccountingType
from loan_servicing.config import LoanServicingConfig
from loan_servicing.currency import Money, Currency
from loan_servicing.loan import Loan, LoanProductSettings
from loan_servicing.schedule import AmortizationMethod, InterestMethod, LoanTerms
from loan_servicing.service import LoanWriteService


DISBURSED_ON = date(2024, 1, 1)
FIRST_DUE = date(2024, 2, 1)
SECOND_DUE = date(2024, 3, 1)
BUSINESS_DATE = date(2024, 6, 1)


def usd(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.USD)


def reference_terms(**overrides) -> LoanTerms:
    values = dict(
        principal_amount=usd('1000'),
        annual_interest_rate=Decimal('0.60'),
        number_of_repayments=2,
        expected_disbursement_date=DISBURSED_ON,
        amortization_method=AmortizationMethod.EQUAL_PRINCIPAL,
        interest_method=InterestMethod.FLAT,
    )
    values.update(overrides)
    return LoanTerms(**values)


def new_loan(loan_id="loan-1", client_id="client-1", terms=None, product=None, **kwargs) -> Loan:
    return Loan(
        loan_id=loan_id,
        client_id=client_id,
        terms=terms or reference_terms(),
        submitted_on_date=DISBURSED_ON,
        product=product,
        **kwargs
    )


def disbursed_loan(**kwargs) -> Loan:
    loan = new_loan(**kwargs)
    loan.approve(DISBURSED_ON, DISBURSED_ON)
    loan.disburse(DISBURSED_ON, DISBURSED_ON)
    return loan


def submit_payload(loan_id="loan-1", client_id="client-1", **overrides) -> dict:
    payload = {
        'loan_id': loan_id,
        'client_id': client_id,
        'submitted_on_date': DISBURSED_ON.isoformat(),
        'principal': {'amount': '1000', 'currency': 'USD'},
        'annual_interest_rate': '0.60',
        'number_of_repayments': 2,
        'expected_disbursement_date': DISBURSED_ON.isoformat(),
        'amortization_method': 'equal_principal',
        'interest_method': 'flat',
    }
    payload.update(overrides)
    return payload


def money_payload(amount, currency="USD") -> dict:
    return {'amount': str(amount), 'currency': currency}


@pytest.fixture
def accrual_product():
    return LoanProductSettings(product_id="accrual", accounting_type=AccountingType.ACCRUAL_PERIODIC)


@pytest.fixture
def service():
    return LoanWriteService(config=LoanServicingConfig())


@pytest.fixture
def active_loan_id(service):
    """Reference loan submitted, approved and disbursed through the service"""
    service.submit_loan(submit_payload(), BUSINESS_DATE)
    service.approve("loan-1", {'approved_on_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)
    service.disburse("loan-1", {'actual_disbursement_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)
    return "loan-1"
