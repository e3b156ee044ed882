"""
Tests for LoanWriteService command orchestration
"""

import logging
import threading
import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.accounting import AccountingSink, GLAccount
from loan_servicing.charges import ChargeDefinition, ChargePaymentMode, ChargeTimeType
from loan_servicing.config import LoanServicingConfig
from loan_servicing.currency import Currency
from loan_servicing.events import BusinessEvent, HookPhase
from loan_servicing.exceptions import (
    AccountingPostingError, DataIntegrityConflictError, InsufficientCollateralError, LoanValidationError,
    TopupLoanOutstandingExceedsAmountError,
)
from loan_servicing.lifecycle import LoanStatus
from loan_servicing.loan import LoanProductSettings
from loan_servicing.repository import InMemoryLoanRepository
from loan_servicing.service import LoanWriteService

from conftest import (
    BUSINESS_DATE, DISBURSED_ON, FIRST_DUE, money_payload, submit_payload, usd,
)


def repayment(amount, on_date=FIRST_DUE) -> dict:
    return {'transaction_date': on_date.isoformat(), 'transaction_amount': money_payload(amount)}


def open_loan(service, loan_id, disbursed_on=DISBURSED_ON, **overrides):
    service.submit_loan(submit_payload(loan_id=loan_id, **overrides), BUSINESS_DATE)
    service.approve(loan_id, {'approved_on_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)
    return service.disburse(loan_id, {'actual_disbursement_date': disbursed_on.isoformat()}, BUSINESS_DATE)


class PausingRepository(InMemoryLoanRepository):
    """Holds the first save of one loan until released"""

    def __init__(self):
        super().__init__()
        self.pause_on = None
        self.entered = threading.Event()
        self.release = threading.Event()

    def save(self, loan):
        if loan.loan_id == self.pause_on and not self.entered.is_set():
            self.entered.set()
            self.release.wait(timeout=5)
        super().save(loan)


class FailingRepository(InMemoryLoanRepository):
    """Rejects every save of one loan once armed"""

    def __init__(self):
        super().__init__()
        self.fail_on = None

    def save(self, loan):
        if loan.loan_id == self.fail_on:
            raise RuntimeError("storage unavailable")
        super().save(loan)


class FailingSink(AccountingSink):

    def post_journal_entries(self, bridge_data):
        raise ConnectionError("ledger offline")


class TestSubmission:

    def test_submit_and_load(self, service):
        result = service.submit_loan(submit_payload(), BUSINESS_DATE)

        assert result.resource_id == "loan-1"
        assert result.changes['status'] == "submitted_pending_approval"
        loan = service.get_loan("loan-1")
        assert loan.total_outstanding == usd('1100')

    def test_generated_loan_id(self, service):
        payload = submit_payload()
        del payload['loan_id']

        result = service.submit_loan(payload, BUSINESS_DATE)

        assert service.get_loan(result.resource_id).client_id == "client-1"

    def test_duplicate_loan(self, service):
        service.submit_loan(submit_payload(), BUSINESS_DATE)

        with pytest.raises(DataIntegrityConflictError):
            service.submit_loan(submit_payload(), BUSINESS_DATE)

    def test_future_submission(self, service):
        with pytest.raises(LoanValidationError, match="future"):
            service.submit_loan(submit_payload(submitted_on_date='2024-07-01'), BUSINESS_DATE)

    def test_unknown_product(self, service):
        with pytest.raises(LoanValidationError) as exc_info:
            service.submit_loan(submit_payload(product_id="missing"), BUSINESS_DATE)
        assert exc_info.value.parameter == "product_id"

    def test_register_product_checks_processor(self, service):
        with pytest.raises(LoanValidationError) as exc_info:
            service.register_product(LoanProductSettings(transaction_processor_code="bogus"))
        assert exc_info.value.parameter == "transaction_processor_code"

    def test_unknown_loan(self, service):
        with pytest.raises(LoanValidationError) as exc_info:
            service.make_repayment("missing", repayment('10'), BUSINESS_DATE)
        assert exc_info.value.parameter == "loan_id"


class TestRepaymentCommands:
    """Test repayments, waivers and adjustments through the service"""

    def test_repayment(self, service, active_loan_id):
        result = service.make_repayment(active_loan_id, repayment('550'), BUSINESS_DATE)

        assert result.entity_id == 2
        assert result.changes['amount'] == '550.00'
        loan = service.get_loan(active_loan_id)
        assert loan.installments[0].completed
        assert loan.total_outstanding == usd('550')

    def test_rejected_command_leaves_stored_loan_unchanged(self, service, active_loan_id):
        with pytest.raises(LoanValidationError):
            service.make_repayment(active_loan_id, repayment('10', date(2024, 7, 1)), BUSINESS_DATE)

        assert len(service.get_loan(active_loan_id).transactions) == 1

    def test_back_dated_waiver_reports_replacement(self, service, active_loan_id):
        service.make_repayment(active_loan_id, repayment('550'), BUSINESS_DATE)

        result = service.waive_interest(
            active_loan_id,
            {'transaction_date': '2024-01-15', 'transaction_amount': money_payload('275')},
            BUSINESS_DATE,
        )

        assert result.entity_id == 3
        assert result.to_dict()['reversed_transaction_ids'] == [2]
        assert result.changed_transaction_detail.new_transaction_mappings[2].id == 4
        assert service.get_loan(active_loan_id).total_outstanding == usd('450')

    def test_adjust_transaction(self, service, active_loan_id):
        service.make_repayment(active_loan_id, repayment('550'), BUSINESS_DATE)

        result = service.adjust_transaction(active_loan_id, 2, repayment('300'), BUSINESS_DATE)

        assert result.entity_id == 3
        assert result.changes['reversed_transaction_id'] == 2
        assert service.get_loan(active_loan_id).total_outstanding == usd('800')

    def test_reprocess_guard(self):
        service = LoanWriteService(config=LoanServicingConfig(max_reprocess_transactions=1))
        open_loan(service, "loan-1")

        with pytest.raises(LoanValidationError, match="replay limit"):
            service.make_repayment("loan-1", repayment('10'), BUSINESS_DATE)


class TestAccountingPosting:

    def test_portfolio_balance_follows_principal(self, service, active_loan_id):
        service.make_repayment(active_loan_id, repayment('550'), BUSINESS_DATE)

        balance = service.accounting_sink.balance(active_loan_id, GLAccount.LOAN_PORTFOLIO, Currency.USD)

        assert balance == usd('500')

    def test_reversed_transactions_are_reversed_in_journal(self, service, active_loan_id):
        service.make_repayment(active_loan_id, repayment('550'), BUSINESS_DATE)
        service.waive_interest(
            active_loan_id,
            {'transaction_date': '2024-01-15', 'transaction_amount': money_payload('275')},
            BUSINESS_DATE,
        )

        entries = service.accounting_sink.entries_for_loan(active_loan_id)

        assert [e.reverses for e in entries if e.reverses is not None] == [2]
        balance = service.accounting_sink.balance(active_loan_id, GLAccount.LOAN_PORTFOLIO, Currency.USD)
        assert balance == usd('450')

    def test_posting_can_be_disabled(self):
        service = LoanWriteService(config=LoanServicingConfig(enable_accounting_posting=False))
        open_loan(service, "loan-1")

        assert service.accounting_sink.entries_for_loan("loan-1") == []

    def test_sink_failure_is_wrapped(self):
        service = LoanWriteService(accounting_sink=FailingSink(), config=LoanServicingConfig())

        with pytest.raises(AccountingPostingError, match="ledger offline") as exc_info:
            open_loan(service, "loan-1")

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert exc_info.value.context['loan_id'] == "loan-1"
        loan = service.get_loan("loan-1")
        assert loan.status == LoanStatus.ACTIVE
        assert len(loan.transactions) == 1


class TestScheduleHistory:

    def test_foreclosure_archives_schedule(self, service, active_loan_id):
        service.foreclose(active_loan_id, {'transaction_date': '2024-01-15'}, BUSINESS_DATE)

        versions = service.schedule_history.versions(active_loan_id)
        assert len(versions) == 1
        assert versions[0].version == 1
        assert versions[0].reschedule_request['reason'] == "foreclosure"
        assert versions[0].installments[1]['interest_due'] == '50.00'
        assert service.schedule_history.verify_integrity(active_loan_id)['valid']

    def test_recalculation_archives_schedule(self, service):
        service.register_product(LoanProductSettings(product_id="recalc", interest_recalculation_enabled=True))
        open_loan(
            service, "loan-1",
            product_id="recalc", annual_interest_rate='0.12', interest_method='declining_balance',
        )
        assert service.schedule_history.versions("loan-1") == []

        service.make_repayment("loan-1", repayment('700', date(2024, 1, 15)), BUSINESS_DATE)

        versions = service.schedule_history.versions("loan-1")
        assert len(versions) == 1
        assert versions[0].reschedule_request is None
        assert service.get_loan("loan-1").installments[1].interest_due == usd('3.15')

    def test_plain_repayment_does_not_archive(self, service, active_loan_id):
        service.make_repayment(active_loan_id, repayment('550'), BUSINESS_DATE)

        assert service.schedule_history.versions(active_loan_id) == []


class TestBusinessEvents:
    """Test pre and post hooks around commands"""

    def test_post_hook_receives_payload(self, service, active_loan_id):
        received = []
        service.notifier.subscribe(BusinessEvent.LOAN_REPAYMENT, received.append)

        service.make_repayment(active_loan_id, repayment('100'), BUSINESS_DATE)

        assert len(received) == 1
        assert received[0].phase == HookPhase.POST
        assert received[0].loan_id == active_loan_id
        assert received[0].data['entity_id'] == 2
        assert received[0].data['status'] == "active"

    def test_failing_pre_hook_aborts_command(self, service, active_loan_id):
        def veto(payload):
            raise RuntimeError("blocked")

        service.notifier.subscribe(BusinessEvent.LOAN_REPAYMENT, veto, HookPhase.PRE)

        with pytest.raises(RuntimeError, match="blocked"):
            service.make_repayment(active_loan_id, repayment('100'), BUSINESS_DATE)

        assert len(service.get_loan(active_loan_id).transactions) == 1

    def test_failing_post_hook_keeps_result(self, service, active_loan_id, caplog):
        def broken(payload):
            raise RuntimeError("sink down")

        service.notifier.subscribe(BusinessEvent.LOAN_REPAYMENT, broken)

        with caplog.at_level(logging.ERROR, logger="loan_servicing.events"):
            result = service.make_repayment(active_loan_id, repayment('100'), BUSINESS_DATE)

        assert result.entity_id == 2
        assert len(service.get_loan(active_loan_id).transactions) == 2
        assert "sink down" in caplog.text

    def test_actions_are_logged(self, service, active_loan_id, caplog):
        with caplog.at_level(logging.INFO, logger="loan_servicing.service"):
            service.make_repayment(active_loan_id, repayment('100'), BUSINESS_DATE)
            with pytest.raises(LoanValidationError):
                service.make_repayment(active_loan_id, repayment('0'), BUSINESS_DATE)

        actions = [(r.levelname, getattr(r, 'action', None)) for r in caplog.records]
        assert ("INFO", "loan.repayment") in actions
        assert ("WARNING", "loan.repayment") in actions


class TestCollateralPool:

    def setup_method(self):
        self.service = LoanWriteService(config=LoanServicingConfig())
        self.service.collateral_pool.register("gold", Decimal('10'))

    def collateral(self, quantity):
        return [{
            'client_collateral_id': 'gold',
            'quantity': quantity,
            'base_price': money_payload('500'),
        }]

    def test_pledge_and_release_on_rejection(self):
        self.service.submit_loan(submit_payload(collateral=self.collateral('4')), BUSINESS_DATE)
        assert self.service.collateral_pool.available("gold") == Decimal('6')

        self.service.reject("loan-1", {'rejected_on_date': '2024-01-02'}, BUSINESS_DATE)

        assert self.service.collateral_pool.available("gold") == Decimal('10')

    def test_pledge_more_than_available(self):
        with pytest.raises(LoanValidationError) as exc_info:
            self.service.submit_loan(submit_payload(collateral=self.collateral('20')), BUSINESS_DATE)

        assert exc_info.value.parameter == "collateral"
        assert self.service.collateral_pool.available("gold") == Decimal('10')

    def test_insufficient_collateral_value(self):
        self.service.submit_loan(
            submit_payload(collateral=self.collateral('1'), principal=money_payload('1000')), BUSINESS_DATE
        )
        self.service.approve("loan-1", {'approved_on_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)

        with pytest.raises(InsufficientCollateralError):
            self.service.disburse("loan-1", {'actual_disbursement_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)

        assert self.service.get_loan("loan-1").status == LoanStatus.APPROVED


class TestLoanCycles:

    def test_earlier_disbursal_takes_lower_counter(self, service):
        service.submit_loan(submit_payload(loan_id="loan-b"), BUSINESS_DATE)
        service.approve("loan-b", {'approved_on_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)
        first = open_loan(service, "loan-a", disbursed_on=FIRST_DUE)
        assert first.changes['loan_counter'] == 1

        second = service.disburse("loan-b", {'actual_disbursement_date': '2024-01-15'}, BUSINESS_DATE)

        assert second.changes['loan_counter'] == 1
        assert service.get_loan("loan-a").loan_counter == 2
        assert service.get_loan("loan-a").loan_product_counter == 2

    def test_write_off_leaves_cycle(self, service):
        open_loan(service, "loan-a", disbursed_on=FIRST_DUE)
        open_loan(service, "loan-b", disbursed_on=date(2024, 1, 15))

        service.write_off("loan-b", {'transaction_date': FIRST_DUE.isoformat()}, BUSINESS_DATE)

        assert service.get_loan("loan-a").loan_counter == 1
        assert service.get_loan("loan-b").loan_counter is None


class TestTopup:
    """Test a topup loan closing the loan it replaces"""

    def test_topup_repays_closing_loan(self, service, active_loan_id):
        service.submit_loan(
            submit_payload(loan_id="loan-2", principal=money_payload('2000'), topup_loan_id=active_loan_id),
            BUSINESS_DATE,
        )
        service.approve("loan-2", {'approved_on_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)

        result = service.disburse("loan-2", {'actual_disbursement_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)

        assert result.changes['net_disbursal_amount'] == '900.00'
        closed = service.get_loan(active_loan_id)
        assert closed.status == LoanStatus.CLOSED_OBLIGATIONS_MET
        transfers = service.transfer_service.transfers_for_loan("loan-2")
        assert [t.request.amount for t in transfers] == [usd('1100')]

    def test_topup_smaller_than_outstanding(self, service, active_loan_id):
        service.submit_loan(submit_payload(loan_id="loan-2", topup_loan_id=active_loan_id), BUSINESS_DATE)
        service.approve("loan-2", {'approved_on_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)

        with pytest.raises(TopupLoanOutstandingExceedsAmountError):
            service.disburse("loan-2", {'actual_disbursement_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)

        assert service.get_loan("loan-2").status == LoanStatus.APPROVED
        assert service.get_loan(active_loan_id).status == LoanStatus.ACTIVE

    def test_failed_closure_undoes_topup_disbursal(self, service, active_loan_id, caplog):
        def veto(payload):
            raise RuntimeError("closing loan locked")

        service.submit_loan(
            submit_payload(loan_id="loan-2", principal=money_payload('2000'), topup_loan_id=active_loan_id),
            BUSINESS_DATE,
        )
        service.approve("loan-2", {'approved_on_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)
        service.notifier.subscribe(BusinessEvent.LOAN_REPAYMENT, veto, HookPhase.PRE)

        with caplog.at_level(logging.ERROR, logger="loan_servicing.service"):
            with pytest.raises(RuntimeError, match="closing loan locked"):
                service.disburse("loan-2", {'actual_disbursement_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)

        assert service.get_loan("loan-2").status == LoanStatus.APPROVED
        assert service.get_loan(active_loan_id).status == LoanStatus.ACTIVE
        assert all(t.reversed for t in service.transfer_service.transfers_for_loan("loan-2"))
        failures = [r for r in caplog.records if getattr(r, 'extra', None)]
        assert any(
            getattr(r, 'loan_id', None) == "loan-2" and r.extra.get('closing_loan_id') == active_loan_id
            for r in failures
        )


class TestSavingsTransfers:
    """Test disbursal into and charge collection from a linked savings account"""

    def setup_method(self):
        self.service = LoanWriteService(config=LoanServicingConfig())
        self.service.transfer_service.open_savings_account("sav-1", usd('0'))
        self.service.register_charge_definition(ChargeDefinition(
            id="disb-fee",
            name="Disbursement fee",
            currency=Currency.USD,
            amount=Decimal('20'),
            time_type=ChargeTimeType.DISBURSEMENT,
            payment_mode=ChargePaymentMode.ACCOUNT_TRANSFER,
        ))
        self.service.submit_loan(submit_payload(linked_account_id="sav-1"), BUSINESS_DATE)
        self.service.approve("loan-1", {'approved_on_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)

    def disburse(self):
        return self.service.disburse(
            "loan-1", {'actual_disbursement_date': DISBURSED_ON.isoformat(), 'to_savings': True}, BUSINESS_DATE
        )

    def test_disburse_to_savings_and_undo(self):
        self.disburse()
        assert self.service.transfer_service.balance("sav-1") == usd('1000')

        self.service.undo_disbursal("loan-1", BUSINESS_DATE)

        assert self.service.transfer_service.balance("sav-1") == usd('0')
        assert self.service.get_loan("loan-1").status == LoanStatus.APPROVED

    def test_disbursement_charge_collected_from_savings(self):
        self.service.add_charge("loan-1", {'charge_definition_id': 'disb-fee'}, BUSINESS_DATE)

        self.disburse()

        assert self.service.transfer_service.balance("sav-1") == usd('980')
        loan = self.service.get_loan("loan-1")
        assert loan.charges[0].is_paid

    def test_transfer_transactions_cannot_be_adjusted(self):
        self.service.add_charge("loan-1", {'charge_definition_id': 'disb-fee'}, BUSINESS_DATE)
        self.disburse()

        with pytest.raises(LoanValidationError, match="account transfer"):
            self.service.adjust_transaction("loan-1", 2, repayment('10', DISBURSED_ON), BUSINESS_DATE)

    def test_unknown_charge_definition(self):
        with pytest.raises(LoanValidationError) as exc_info:
            self.service.add_charge("loan-1", {'charge_definition_id': 'missing'}, BUSINESS_DATE)
        assert exc_info.value.parameter == "charge_definition_id"

    def test_failed_save_reverses_transfers(self):
        repository = FailingRepository()
        service = LoanWriteService(repository=repository, config=LoanServicingConfig())
        service.transfer_service.open_savings_account("sav-1", usd('0'))
        service.submit_loan(submit_payload(linked_account_id="sav-1"), BUSINESS_DATE)
        service.approve("loan-1", {'approved_on_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)
        repository.fail_on = "loan-1"

        with pytest.raises(RuntimeError, match="storage unavailable"):
            service.disburse(
                "loan-1", {'actual_disbursement_date': DISBURSED_ON.isoformat(), 'to_savings': True}, BUSINESS_DATE
            )

        assert service.transfer_service.balance("sav-1") == usd('0')
        transfers = service.transfer_service.transfers_for_loan("loan-1")
        assert len(transfers) == 1
        assert transfers[0].reversed
        assert service.get_loan("loan-1").status == LoanStatus.APPROVED


class TestClosureCommands:

    def test_overpay_and_refund(self, service, active_loan_id):
        service.make_repayment(active_loan_id, repayment('1200'), BUSINESS_DATE)
        assert service.get_loan(active_loan_id).status == LoanStatus.OVERPAID

        service.credit_balance_refund(active_loan_id, repayment('100', date(2024, 3, 5)), BUSINESS_DATE)

        assert service.get_loan(active_loan_id).status == LoanStatus.CLOSED_OBLIGATIONS_MET

    def test_close_as_rescheduled_archives_schedule(self, service, active_loan_id):
        service.close_as_rescheduled(
            active_loan_id, {'transaction_date': FIRST_DUE.isoformat()}, BUSINESS_DATE,
            reschedule_request={'reason': 'rescheduled', 'new_loan_id': 'loan-9'},
        )

        assert service.get_loan(active_loan_id).status == LoanStatus.CLOSED_RESCHEDULED
        latest = service.schedule_history.latest(active_loan_id)
        assert latest.reschedule_request['new_loan_id'] == 'loan-9'

    def test_transfer_round_trip(self, service, active_loan_id):
        command = {'transaction_date': FIRST_DUE.isoformat()}

        service.initiate_transfer(active_loan_id, command, BUSINESS_DATE)
        assert service.get_loan(active_loan_id).status == LoanStatus.TRANSFER_IN_PROGRESS

        service.accept_transfer(active_loan_id, command, BUSINESS_DATE)
        assert service.get_loan(active_loan_id).status == LoanStatus.ACTIVE


class TestConcurrentCycleChanges:
    """Test cycle counters when commands on loans of one borrower overlap"""

    def setup_method(self):
        self.repository = PausingRepository()
        self.service = LoanWriteService(repository=self.repository, config=LoanServicingConfig())
        self.errors = []

    def start(self, loan_id, disbursed_on):
        def run():
            try:
                self.service.disburse(loan_id, {'actual_disbursement_date': disbursed_on.isoformat()}, BUSINESS_DATE)
            except Exception as e:
                self.errors.append(e)

        thread = threading.Thread(target=run)
        thread.start()
        return thread

    def approve(self, loan_id):
        self.service.submit_loan(submit_payload(loan_id=loan_id), BUSINESS_DATE)
        self.service.approve(loan_id, {'approved_on_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)

    def test_sibling_repayment_survives_counter_shift(self):
        open_loan(self.service, "loan-b", disbursed_on=date(2024, 1, 15))
        self.approve("loan-a")
        self.repository.pause_on = "loan-a"

        disbursal = self.start("loan-a", DISBURSED_ON)
        assert self.repository.entered.wait(timeout=5)
        self.service.make_repayment("loan-b", repayment('300'), BUSINESS_DATE)
        self.repository.release.set()
        disbursal.join(timeout=5)

        assert self.errors == []
        sibling = self.service.get_loan("loan-b")
        assert sibling.loan_counter == 2
        assert [t.transaction_type.value for t in sibling.transactions] == ["disbursement", "repayment"]
        assert self.service.get_loan("loan-a").loan_counter == 1

    def test_sibling_disbursals_are_serialized(self):
        self.approve("loan-a")
        self.approve("loan-b")
        self.repository.pause_on = "loan-a"

        first = self.start("loan-a", date(2024, 1, 15))
        assert self.repository.entered.wait(timeout=5)
        second = self.start("loan-b", DISBURSED_ON)
        second.join(timeout=0.2)
        waiting = second.is_alive()
        self.repository.release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert waiting
        assert self.errors == []
        assert self.service.get_loan("loan-a").loan_counter == 2
        assert self.service.get_loan("loan-b").loan_counter == 1


class TestOverdueChargeCommands:
    """Test the product's overdue penalties applied through the service"""

    def setup_method(self):
        self.service = LoanWriteService(config=LoanServicingConfig(overdue_penalty_grace_days=5))
        self.service.register_charge_definition(ChargeDefinition(
            id="late",
            name="Late payment",
            currency=Currency.USD,
            amount=Decimal('25'),
            time_type=ChargeTimeType.OVERDUE_INSTALLMENT,
            is_penalty=True,
        ))
        self.service.register_product(
            LoanProductSettings(product_id="penalized", overdue_charge_definition_ids=["late"])
        )
        open_loan(self.service, "loan-1", product_id="penalized")

    def test_penalty_for_every_overdue_installment(self):
        result = self.service.apply_overdue_charges("loan-1", BUSINESS_DATE)

        assert result.changes['charge_ids'] == [1, 2]
        assert result.changes['amount'] == '50.00'
        assert self.service.get_loan("loan-1").total_outstanding == usd('1150')

    def test_rerun_adds_nothing(self):
        self.service.apply_overdue_charges("loan-1", BUSINESS_DATE)

        result = self.service.apply_overdue_charges("loan-1", BUSINESS_DATE)

        assert result.changes['charge_ids'] == []
        assert result.entity_id is None
        assert len(self.service.get_loan("loan-1").charges) == 2

    def test_configured_grace_days(self):
        early = self.service.apply_overdue_charges("loan-1", date(2024, 2, 6))
        assert early.changes['charge_ids'] == []

        late = self.service.apply_overdue_charges("loan-1", date(2024, 2, 7))
        assert late.changes['charge_ids'] == [1]

    def test_product_without_overdue_charges(self, service, active_loan_id):
        result = service.apply_overdue_charges(active_loan_id, BUSINESS_DATE)

        assert result.changes['charge_ids'] == []


class TestBulkRepayment:
    """Test repaying several loans in one request"""

    def setup_method(self):
        self.service = LoanWriteService(config=LoanServicingConfig())
        open_loan(self.service, "loan-a")
        open_loan(self.service, "loan-b", client_id="client-2")

    @staticmethod
    def item(loan_id, amount, on_date=FIRST_DUE):
        return dict(repayment(amount, on_date), loan_id=loan_id)

    def test_repays_each_loan(self):
        results = self.service.make_bulk_repayment(
            {'repayments': [self.item("loan-a", '550'), self.item("loan-b", '100')]}, BUSINESS_DATE
        )

        assert [r.resource_id for r in results] == ["loan-a", "loan-b"]
        assert [r.entity_id for r in results] == [2, 2]
        assert self.service.get_loan("loan-a").total_outstanding == usd('550')
        assert self.service.get_loan("loan-b").total_outstanding == usd('1000')

    def test_rejected_repayment_reverses_earlier_ones(self):
        with pytest.raises(LoanValidationError, match="future"):
            self.service.make_bulk_repayment(
                {'repayments': [self.item("loan-a", '550'), self.item("loan-b", '100', date(2024, 7, 1))]},
                BUSINESS_DATE,
            )

        loan = self.service.get_loan("loan-a")
        assert loan.total_outstanding == usd('1100')
        assert [t.is_reversed for t in loan.transactions] == [False, True]
        assert len(self.service.get_loan("loan-b").transactions) == 1

    def test_unknown_loan_rejected_before_any_repayment(self):
        with pytest.raises(LoanValidationError) as exc_info:
            self.service.make_bulk_repayment(
                {'repayments': [self.item("loan-a", '550'), self.item("missing", '100')]}, BUSINESS_DATE
            )

        assert exc_info.value.parameter == "loan_id"
        assert len(self.service.get_loan("loan-a").transactions) == 1

    def test_empty_request(self):
        with pytest.raises(LoanValidationError, match="BulkRepaymentCommand"):
            self.service.make_bulk_repayment({'repayments': []}, BUSINESS_DATE)


class TestTrancheCommands:
    """Test editing the planned tranches of a multi-disbursement loan"""

    def setup_method(self):
        self.service = LoanWriteService(config=LoanServicingConfig())
        self.service.register_product(LoanProductSettings(product_id="multi", multi_disbursement=True))
        tranches = [
            {'id': 1, 'expected_date': DISBURSED_ON.isoformat(), 'principal': money_payload('600')},
            {'id': 2, 'expected_date': '2024-02-15', 'principal': money_payload('400')},
        ]
        self.service.submit_loan(submit_payload(product_id="multi", tranches=tranches), BUSINESS_DATE)
        self.service.approve("loan-1", {'approved_on_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)

    def test_update_add_and_remove(self):
        result = self.service.update_tranche("loan-1", 2, {'principal': money_payload('300')}, BUSINESS_DATE)
        assert result.entity_id == 2
        assert result.changes['principal'] == '300.00'

        result = self.service.add_tranche(
            "loan-1", {'expected_date': '2024-02-20', 'principal': money_payload('100')}, BUSINESS_DATE
        )
        assert result.entity_id == 3

        self.service.remove_tranche("loan-1", 2, BUSINESS_DATE)

        loan = self.service.get_loan("loan-1")
        assert [t.id for t in loan.tranches] == [1, 3]
        assert loan.principal == usd('700')

    def test_rejected_edit_leaves_loan_unchanged(self):
        with pytest.raises(LoanValidationError, match="exceeds approved amount"):
            self.service.add_tranche(
                "loan-1", {'expected_date': '2024-02-20', 'principal': money_payload('100')}, BUSINESS_DATE
            )

        assert len(self.service.get_loan("loan-1").tranches) == 2

    def test_disbursed_tranche_cannot_be_removed(self):
        self.service.disburse("loan-1", {'actual_disbursement_date': DISBURSED_ON.isoformat()}, BUSINESS_DATE)

        with pytest.raises(LoanValidationError, match="already disbursed"):
            self.service.remove_tranche("loan-1", 1, BUSINESS_DATE)
