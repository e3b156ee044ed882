"""
Tests for transfers between loans and linked savings accounts
"""

import pytest

from loan_servicing.exceptions import LinkedAccountRequiredError, LoanValidationError
from loan_servicing.transactions import LoanTransaction, LoanTransactionType
from loan_servicing.transfers import AccountTransferRequest, InMemoryAccountTransferService, TransferType

from conftest import DISBURSED_ON, usd


def request(transfer_type, amount, transaction_id=1, account="sav-1") -> AccountTransferRequest:
    return AccountTransferRequest(
        transfer_type=transfer_type,
        loan_id="loan-1",
        amount=usd(amount),
        transfer_date=DISBURSED_ON,
        savings_account_id=account,
        loan_transaction_id=transaction_id,
    )


class TestInMemoryAccountTransferService:
    """Test savings balances and transaction links"""

    def setup_method(self):
        self.service = InMemoryAccountTransferService()
        self.service.open_savings_account("sav-1", usd('50'))

    def test_disbursement_credits_savings(self):
        details = self.service.transfer_funds(request(TransferType.LOAN_DISBURSEMENT_TO_SAVINGS, '1000'))

        assert self.service.balance("sav-1") == usd('1050')
        assert details.loan_transaction_ids == [1]
        assert self.service.is_account_transfer("loan-1", 1)
        assert not self.service.is_account_transfer("loan-2", 1)

    def test_charge_payment_debits_savings(self):
        self.service.transfer_funds(request(TransferType.CHARGE_PAYMENT_FROM_SAVINGS, '20', transaction_id=2))

        assert self.service.balance("sav-1") == usd('30')

    def test_insufficient_funds(self):
        with pytest.raises(LoanValidationError, match="insufficient funds"):
            self.service.transfer_funds(request(TransferType.CHARGE_PAYMENT_FROM_SAVINGS, '60'))

        assert self.service.balance("sav-1") == usd('50')
        assert self.service.transfers_for_loan("loan-1") == []

    def test_unknown_savings_account(self):
        with pytest.raises(LinkedAccountRequiredError):
            self.service.transfer_funds(request(TransferType.LOAN_DISBURSEMENT_TO_SAVINGS, '10', account="sav-9"))

    def test_topup_closure_needs_no_savings(self):
        closure = AccountTransferRequest(
            transfer_type=TransferType.LOAN_TOPUP_CLOSURE,
            loan_id="loan-2",
            amount=usd('1100'),
            transfer_date=DISBURSED_ON,
            to_loan_id="loan-1",
        )

        details = self.service.transfer_funds(closure)

        assert details.loan_transaction_ids == []
        assert self.service.balance("sav-1") == usd('50')

    def test_reverse_all_restores_balances(self):
        self.service.transfer_funds(request(TransferType.LOAN_DISBURSEMENT_TO_SAVINGS, '1000'))
        self.service.transfer_funds(request(TransferType.CHARGE_PAYMENT_FROM_SAVINGS, '20', transaction_id=2))

        reversed_ids = self.service.reverse_all_transactions("loan-1")

        assert len(reversed_ids) == 2
        assert self.service.balance("sav-1") == usd('50')
        assert not self.service.is_account_transfer("loan-1", 1)
        assert self.service.reverse_all_transactions("loan-1") == []

    def test_replacement_takes_over_link(self):
        details = self.service.transfer_funds(request(TransferType.CHARGE_PAYMENT_FROM_SAVINGS, '20', transaction_id=2))
        replacement = LoanTransaction(
            transaction_type=LoanTransactionType.CHARGE_PAYMENT,
            transaction_date=DISBURSED_ON,
            amount=usd('20'),
            submitted_on_date=DISBURSED_ON,
            id=5,
        )

        self.service.update_loan_transaction("loan-1", 2, replacement)

        assert details.loan_transaction_ids == [5]
        assert self.service.is_account_transfer("loan-1", 5)
        assert not self.service.is_account_transfer("loan-1", 2)

    def test_link_transaction(self):
        details = self.service.transfer_funds(request(TransferType.LOAN_DISBURSEMENT_TO_SAVINGS, '10'))

        self.service.link_transaction(details.id, 7)

        assert self.service.is_account_transfer("loan-1", 7)
