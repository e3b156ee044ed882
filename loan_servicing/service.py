"""
Loan Write Service Module

Command-level orchestration around the Loan aggregate. Every command is
validated, run under the loan's lock, persisted, and then handed to the
downstream collaborators (account transfers, accounting, schedule
history, business events) in a fixed order.
"""

from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import uuid

from .accounting import AccountingSink, InMemoryAccountingSink
from .charges import ChargeDefinition
from .collateral import ClientCollateralPool
from .commands import (
    AccrualCommand, AddChargeCommand, AddTrancheCommand, AdjustTransactionCommand, ApproveLoanCommand,
    BulkRepaymentCommand, BulkRepaymentItem, CloseLoanCommand, DisburseLoanCommand, ForecloseCommand,
    MoneyModel, PayChargeCommand, RefundCommand, RejectLoanCommand, RepaymentCommand, SubmitLoanCommand,
    TransferCommand, UpdateChargeCommand, UpdateTrancheCommand, WaiveChargeCommand, WaiveInterestCommand,
    WithdrawLoanCommand, WriteOffCommand, payment_detail_or_none, parse_command,
)
from .config import LoanServicingConfig, get_config
from .cycles import LoanCycleCounter
from .events import BusinessEvent, BusinessEventNotifier
from .exceptions import (
    AccountingPostingError, DataIntegrityConflictError, LinkedAccountRequiredError, LoanError,
    LoanValidationError, TopupLoanOutstandingExceedsAmountError,
)
from .installments import RepaymentInstallment
from .lifecycle import LoanStatus
from .loan import Loan, LoanProductSettings, LoanType
from .logging_config import get_logger, log_action
from .processors import get_processor
from .repository import InMemoryLoanRepository, LoanRepository
from .schedule import DefaultScheduleGenerator, ScheduleGenerator
from .schedule_history import InMemoryScheduleHistoryArchive, ScheduleHistoryArchive
from .transactions import ChangedTransactionDetail, LoanTransaction, LoanTransactionType
from .transfers import (
    AccountTransferDetails, AccountTransferRequest, AccountTransferService,
    InMemoryAccountTransferService, TransferType,
)


@dataclass
class CommandProcessingResult:
    """Outcome of a successful write command"""
    resource_id: str
    entity_id: Optional[Any] = None  # Transaction or charge id the command created
    changes: Dict[str, Any] = field(default_factory=dict)
    changed_transaction_detail: Optional[ChangedTransactionDetail] = None

    def to_dict(self) -> Dict[str, Any]:
        changed = self.changed_transaction_detail
        return {
            'resource_id': self.resource_id,
            'entity_id': self.entity_id,
            'changes': self.changes,
            'reversed_transaction_ids': changed.reversed_transaction_ids() if changed else [],
        }


@dataclass
class _CommandContext:
    """Side effects an operation schedules for after the aggregate changed"""
    loan: Loan
    business_date: date
    is_account_transfer: bool = False
    transfer_requests: List[AccountTransferRequest] = field(default_factory=list)
    counter_updates: Dict[str, Tuple[Optional[int], Optional[int]]] = field(default_factory=dict)
    after_save: List[Callable[[], Any]] = field(default_factory=list)
    archive_schedule: bool = False
    reschedule_request: Optional[Dict[str, Any]] = None
    reverse_account_transfers: bool = False


def _holds_collateral(status: LoanStatus) -> bool:
    return not (status.is_closed or status in (LoanStatus.REJECTED, LoanStatus.WITHDRAWN))


def _schedule_signature(installments) -> List[Tuple]:
    return [
        (i.installment_number, i.from_date, i.due_date, i.principal_due, i.interest_due)
        for i in sorted(installments, key=lambda i: i.installment_number)
    ]


class LoanWriteService:
    """
    Write-side API of the loan servicing engine

    Every operation takes the business date explicitly; there is no
    ambient clock or tenant.
    """

    def __init__(
        self,
        repository: Optional[LoanRepository] = None,
        schedule_generator: Optional[ScheduleGenerator] = None,
        accounting_sink: Optional[AccountingSink] = None,
        schedule_history: Optional[ScheduleHistoryArchive] = None,
        transfer_service: Optional[AccountTransferService] = None,
        notifier: Optional[BusinessEventNotifier] = None,
        collateral_pool: Optional[ClientCollateralPool] = None,
        cycle_counter: Optional[LoanCycleCounter] = None,
        config: Optional[LoanServicingConfig] = None,
    ):
        self.config = config or get_config()
        self.repository = repository or InMemoryLoanRepository()
        self.schedule_generator = schedule_generator or DefaultScheduleGenerator()
        self.accounting_sink = accounting_sink or InMemoryAccountingSink()
        self.schedule_history = schedule_history or InMemoryScheduleHistoryArchive()
        self.transfer_service = transfer_service or InMemoryAccountTransferService()
        self.notifier = notifier or BusinessEventNotifier(enabled=self.config.enable_business_events)
        self.collateral_pool = collateral_pool or ClientCollateralPool()
        self.cycle_counter = cycle_counter or LoanCycleCounter()
        self.logger = get_logger("loan_servicing.service")

        self._products: Dict[str, LoanProductSettings] = {}
        self._charge_definitions: Dict[str, ChargeDefinition] = {}

    # ------------------------------------------------------------------ #
    # Catalog
    # ------------------------------------------------------------------ #

    def register_product(self, product: LoanProductSettings) -> None:
        try:
            get_processor(product.transaction_processor_code)
        except ValueError as e:
            raise LoanValidationError(str(e), parameter="transaction_processor_code") from e
        self._products[product.product_id] = product

    def register_charge_definition(self, definition: ChargeDefinition) -> None:
        self._charge_definitions[definition.id] = definition

    def _product(self, product_id: str) -> LoanProductSettings:
        if product_id in self._products:
            return deepcopy(self._products[product_id])
        if product_id == "default":
            return LoanProductSettings(transaction_processor_code=self.config.default_transaction_processor)
        raise LoanValidationError(f"Unknown loan product {product_id}", parameter="product_id")

    def _charge_definition(self, definition_id: str) -> ChargeDefinition:
        try:
            return self._charge_definitions[definition_id]
        except KeyError:
            raise LoanValidationError(
                f"Unknown charge definition {definition_id}", parameter="charge_definition_id"
            ) from None

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.repository.load(loan_id)
        if loan is None:
            raise LoanValidationError(f"Loan {loan_id} not found", parameter="loan_id")
        return loan

    def _loans_of_borrower(self, loan: Loan) -> List[Loan]:
        if loan.loan_type == LoanType.GROUP and loan.group_id:
            return self.repository.find_by_group(loan.group_id)
        return self.repository.find_by_client(loan.client_id)

    # ------------------------------------------------------------------ #
    # Pipeline
    # ------------------------------------------------------------------ #

    def _execute(
        self,
        loan_id: str,
        event: BusinessEvent,
        business_date: date,
        operation: Callable[[_CommandContext], CommandProcessingResult],
        data: Optional[Dict[str, Any]] = None,
        borrower_scoped: bool = False,
    ) -> CommandProcessingResult:
        """
        Run one command against a loan

        Args:
            loan_id: Loan to mutate
            event: Business event fired around the command
            business_date: Current business date
            operation: Mutates the loan in the given context
            data: Extra payload for the event hooks
            borrower_scoped: Hold the borrower lock for the whole command,
                required when the operation changes cycle counters

        Returns:
            CommandProcessingResult of the operation

        Raises:
            LoanDomainError: If the command is rejected; nothing is saved
            LoanInvariantError: If replay or accounting breaks an invariant
        """
        action = event.value
        resource = f"loan:{loan_id}"
        payload = dict(data or {})
        payload['business_date'] = business_date.isoformat()

        with self._command_lock(loan_id, borrower_scoped):
            try:
                loan = self.get_loan(loan_id)
                self.notifier.notify_pre(event, loan_id, payload)
                self._check_reprocess_limit(loan)

                existing_ids = loan.find_existing_transaction_ids()
                existing_reversed_ids = loan.find_existing_reversed_transaction_ids()
                held_collateral = _holds_collateral(loan.status)
                previous_schedule = deepcopy(list(loan.installments))

                ctx = _CommandContext(loan=loan, business_date=business_date)
                result = operation(ctx)
                result.resource_id = loan_id
                result.changes.setdefault('status', loan.status.value)

                self._persist(ctx)
            except LoanError as e:
                log_action(
                    self.logger, "error" if not e.recoverable else "warning",
                    f"{action} rejected for loan {loan_id}: {e.message}",
                    action=action, resource=resource, loan_id=loan_id,
                    business_date=business_date, extra=e.context,
                )
                raise

            self._archive_schedule(ctx, previous_schedule)
            if held_collateral and not _holds_collateral(loan.status) and loan.collateral:
                self.collateral_pool.release(loan.collateral)
            if ctx.reverse_account_transfers:
                self.transfer_service.reverse_all_transactions(loan_id)
            if result.changed_transaction_detail is not None:
                self._propagate_to_transfers(loan, result.changed_transaction_detail)
            self._post_accounting(loan, existing_ids, existing_reversed_ids, ctx.is_account_transfer)

        for follow_up in ctx.after_save:
            follow_up()

        post_payload = dict(payload)
        post_payload.update(status=loan.status.value, entity_id=result.entity_id)
        self.notifier.notify_post(event, loan_id, post_payload)
        log_action(
            self.logger, "info", f"{action} applied to loan {loan_id}",
            action=action, resource=resource, loan_id=loan_id,
            business_date=business_date, extra=result.changes,
        )
        return result

    @contextmanager
    def _command_lock(self, loan_id: str, borrower_scoped: bool) -> Iterator[None]:
        """
        Lock order is borrower, then the loan, then any sibling loan whose
        counters are saved; commands without the borrower lock only ever
        hold their own loan's lock.
        """
        if not borrower_scoped:
            with self.repository.lock(loan_id):
                yield
            return
        with self.cycle_counter.borrower_lock(self.get_loan(loan_id)):
            with self.repository.lock(loan_id):
                yield

    def _check_reprocess_limit(self, loan: Loan) -> None:
        limit = self.config.max_reprocess_transactions
        if len(loan.transactions) >= limit:
            raise LoanValidationError(
                f"Loan {loan.loan_id} has {len(loan.transactions)} transactions, "
                f"the replay limit is {limit}"
            )

    def _persist(self, ctx: _CommandContext) -> None:
        """Execute pending transfers and save; transfers are undone if the save fails"""
        executed: List[AccountTransferDetails] = []
        try:
            for request in ctx.transfer_requests:
                executed.append(self.transfer_service.transfer_funds(request))
            self.repository.save(ctx.loan)
        except Exception:
            for details in executed:
                self.transfer_service.reverse_transfer(details.id)
            raise
        for sibling_id, (loan_counter, loan_product_counter) in ctx.counter_updates.items():
            self._save_counters(sibling_id, loan_counter, loan_product_counter)

    def _save_counters(self, loan_id: str, loan_counter: Optional[int], loan_product_counter: Optional[int]) -> None:
        """Write shifted cycle counters onto the stored loan, keeping the rest of its state"""
        with self.repository.lock(loan_id):
            sibling = self.get_loan(loan_id)
            sibling.loan_counter = loan_counter
            sibling.loan_product_counter = loan_product_counter
            self.repository.save(sibling)

    def _archive_schedule(self, ctx: _CommandContext, previous: List[RepaymentInstallment]) -> None:
        if not self.config.enable_schedule_history or not previous:
            return
        if ctx.archive_schedule or _schedule_signature(previous) != _schedule_signature(ctx.loan.installments):
            self.schedule_history.archive(previous, ctx.loan, ctx.reschedule_request)

    def _propagate_to_transfers(self, loan: Loan, changed: ChangedTransactionDetail) -> None:
        """Repoint transfers from reversed transactions to their replacements"""
        for old_id, replacement in changed.items():
            if old_id == ChangedTransactionDetail.SYNTHETIC_KEY:
                continue
            if self.transfer_service.is_account_transfer(loan.loan_id, old_id):
                self.transfer_service.update_loan_transaction(loan.loan_id, old_id, replacement)

    def _post_accounting(
        self,
        loan: Loan,
        existing_ids,
        existing_reversed_ids,
        is_account_transfer: bool,
    ) -> None:
        if not self.config.enable_accounting_posting:
            return
        bridge_data = loan.derive_accounting_bridge_data(existing_ids, existing_reversed_ids, is_account_transfer)
        if not bridge_data.has_postings():
            return
        try:
            self.accounting_sink.post_journal_entries(bridge_data)
        except Exception as e:
            new_ids = [t.id for t in bridge_data.new_transactions]
            log_action(
                self.logger, "error", f"Accounting posting failed for loan {loan.loan_id}: {e}",
                action="accounting.post", resource=f"loan:{loan.loan_id}", loan_id=loan.loan_id,
                extra={'new_transactions': new_ids},
            )
            if isinstance(e, AccountingPostingError):
                raise
            raise AccountingPostingError(
                f"Accounting sink failed for loan {loan.loan_id}: {e}",
                loan_id=loan.loan_id,
                new_transactions=new_ids,
            ) from e

    @staticmethod
    def _transaction_result(
        loan: Loan,
        transaction: Optional[LoanTransaction],
        changed: Optional[ChangedTransactionDetail],
        **changes: Any,
    ) -> CommandProcessingResult:
        if transaction is not None:
            changes.setdefault('transaction_date', transaction.transaction_date.isoformat())
            changes.setdefault('amount', str(transaction.amount.amount))
        return CommandProcessingResult(
            resource_id=loan.loan_id,
            entity_id=transaction.id if transaction is not None else None,
            changes=changes,
            changed_transaction_detail=changed,
        )

    # Cycle changes run inside a borrower-scoped command: counters are
    # only written under the borrower lock, so the siblings read here are current
    def _update_cycle(self, ctx: _CommandContext) -> None:
        shifted = self.cycle_counter.update_loan_counters(ctx.loan, self._loans_of_borrower(ctx.loan))
        self._record_counter_updates(ctx, shifted)

    def _remove_cycle(self, ctx: _CommandContext) -> None:
        shifted = self.cycle_counter.remove_loan_cycle(ctx.loan, self._loans_of_borrower(ctx.loan))
        self._record_counter_updates(ctx, shifted)

    @staticmethod
    def _record_counter_updates(ctx: _CommandContext, shifted: List[Loan]) -> None:
        for sibling in shifted:
            ctx.counter_updates[sibling.loan_id] = (sibling.loan_counter, sibling.loan_product_counter)

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #

    def submit_loan(self, command, business_date: date) -> CommandProcessingResult:
        """Create a loan application, pledging its collateral"""
        command = parse_command(SubmitLoanCommand, command)
        if command.submitted_on_date > business_date:
            raise LoanValidationError("Submitted date cannot be in the future", parameter="submitted_on_date")
        loan_id = command.loan_id or str(uuid.uuid4())
        event = BusinessEvent.LOAN_SUBMITTED

        with self.repository.lock(loan_id):
            if self.repository.load(loan_id) is not None:
                raise DataIntegrityConflictError(f"Loan {loan_id} already exists", loan_id=loan_id)
            self.notifier.notify_pre(event, loan_id, {'business_date': business_date.isoformat()})
            loan = Loan(
                loan_id=loan_id,
                client_id=command.client_id,
                terms=command.to_terms(),
                submitted_on_date=command.submitted_on_date,
                product=self._product(command.product_id),
                group_id=command.group_id,
                loan_type=command.loan_type,
                external_id=command.external_id,
                tranches=command.to_tranches(),
                collateral=command.to_collateral(),
                linked_account_id=command.linked_account_id,
                topup_loan_id=command.topup_loan_id,
                schedule_generator=self.schedule_generator,
            )
            if loan.collateral:
                try:
                    self.collateral_pool.pledge(loan.collateral)
                except ValueError as e:
                    raise LoanValidationError(str(e), parameter="collateral") from e
            try:
                self.repository.save(loan)
            except LoanError:
                if loan.collateral:
                    self.collateral_pool.release(loan.collateral)
                raise

        self.notifier.notify_post(event, loan_id, {'status': loan.status.value})
        log_action(self.logger, "info", f"Loan {loan_id} submitted", action=event.value, resource=f"loan:{loan_id}", loan_id=loan_id)
        return CommandProcessingResult(
            resource_id=loan_id,
            changes={'status': loan.status.value, 'principal': str(loan.principal.amount)},
        )

    def approve(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(ApproveLoanCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            ctx.loan.approve(
                command.approved_on_date,
                ctx.business_date,
                command.approved_principal.to_money() if command.approved_principal else None,
                command.expected_disbursement_date,
            )
            return CommandProcessingResult(
                resource_id=loan_id,
                changes={
                    'approved_on_date': command.approved_on_date.isoformat(),
                    'approved_principal': str(ctx.loan.approved_principal.amount),
                },
            )

        return self._execute(loan_id, BusinessEvent.LOAN_APPROVED, business_date, operation)

    def undo_approval(self, loan_id: str, business_date: date) -> CommandProcessingResult:
        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            ctx.loan.undo_approval()
            return CommandProcessingResult(resource_id=loan_id)

        return self._execute(loan_id, BusinessEvent.LOAN_APPROVAL_UNDONE, business_date, operation)

    def reject(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(RejectLoanCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            ctx.loan.reject(command.rejected_on_date, ctx.business_date)
            return CommandProcessingResult(
                resource_id=loan_id, changes={'rejected_on_date': command.rejected_on_date.isoformat()}
            )

        return self._execute(loan_id, BusinessEvent.LOAN_REJECTED, business_date, operation)

    def withdraw(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(WithdrawLoanCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            ctx.loan.withdraw_by_applicant(command.withdrawn_on_date, ctx.business_date)
            return CommandProcessingResult(
                resource_id=loan_id, changes={'withdrawn_on_date': command.withdrawn_on_date.isoformat()}
            )

        return self._execute(loan_id, BusinessEvent.LOAN_WITHDRAWN, business_date, operation)

    # ------------------------------------------------------------------ #
    # Disbursement
    # ------------------------------------------------------------------ #

    def disburse(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        """
        Disburse a loan or its next tranche

        A topup loan repays the loan it replaces out of the disbursal.
        With to_savings the net amount is paid into the linked savings
        account, and account-transfer charges due at disbursement are
        collected from it.
        """
        command = parse_command(DisburseLoanCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            loan = ctx.loan
            disbursal_date = command.actual_disbursement_date
            first_disbursement = loan.actual_disbursement_date is None
            if command.to_savings and not loan.linked_account_id:
                raise LinkedAccountRequiredError(
                    f"Loan {loan_id} has no linked savings account to disburse into"
                )

            closing_loan = None
            closing_outstanding = None
            if loan.topup_loan_id and first_disbursement:
                closing_loan = self.get_loan(loan.topup_loan_id)
                principal = command.principal.to_money() if command.principal else loan.approved_principal
                closing_outstanding = closing_loan.total_outstanding
                if closing_outstanding > principal:
                    raise TopupLoanOutstandingExceedsAmountError(
                        f"Outstanding {closing_outstanding.to_string()} of loan {closing_loan.loan_id} "
                        f"exceeds the topup disbursal {principal.to_string()}",
                        closing_loan_id=closing_loan.loan_id,
                    )

            changed, disbursement = loan.disburse(
                disbursal_date,
                ctx.business_date,
                principal=command.principal.to_money() if command.principal else None,
                net_disbursal_amount=(
                    command.net_disbursal_amount.to_money() if command.net_disbursal_amount else None
                ),
                payment_detail=payment_detail_or_none(command.payment_detail),
                tranche_id=command.tranche_id,
                external_id=command.external_id,
                post_dated_checks=[c.to_check() for c in command.post_dated_checks or []],
                validate_collateral=self.config.validate_disbursement_collateral,
            )

            if closing_loan is not None and closing_outstanding.is_positive():
                loan.net_disbursal_amount = (loan.net_disbursal_amount - closing_outstanding).non_negative()
                ctx.transfer_requests.append(AccountTransferRequest(
                    transfer_type=TransferType.LOAN_TOPUP_CLOSURE,
                    loan_id=loan_id,
                    amount=closing_outstanding,
                    transfer_date=disbursal_date,
                    to_loan_id=closing_loan.loan_id,
                    loan_transaction_id=disbursement.id,
                    description=f"Topup closure of loan {closing_loan.loan_id}",
                ))
                closure = RepaymentCommand(
                    transaction_date=disbursal_date,
                    transaction_amount=MoneyModel.from_money(closing_outstanding),
                )
                ctx.after_save.append(
                    lambda: self._close_replaced_loan(loan_id, closing_loan.loan_id, closure, ctx.business_date)
                )

            if command.to_savings and loan.net_disbursal_amount.is_positive():
                ctx.is_account_transfer = True
                ctx.transfer_requests.append(AccountTransferRequest(
                    transfer_type=TransferType.LOAN_DISBURSEMENT_TO_SAVINGS,
                    loan_id=loan_id,
                    amount=loan.net_disbursal_amount,
                    transfer_date=disbursal_date,
                    savings_account_id=loan.linked_account_id,
                    loan_transaction_id=disbursement.id,
                    description=f"Disbursement of loan {loan_id}",
                ))

            for charge in loan.disbursement_charges_for(disbursement):
                if not (charge.is_account_transfer and charge.is_pending):
                    continue
                amount = charge.amount_outstanding
                payment, charge_changed = loan.pay_loan_charge(
                    charge.id, disbursal_date, amount, ctx.business_date
                )
                changed.merge(charge_changed)
                ctx.transfer_requests.append(AccountTransferRequest(
                    transfer_type=TransferType.CHARGE_PAYMENT_FROM_SAVINGS,
                    loan_id=loan_id,
                    amount=amount,
                    transfer_date=disbursal_date,
                    savings_account_id=loan.linked_account_id,
                    loan_transaction_id=payment.id,
                    description=f"Disbursement charge {charge.definition.name}",
                ))

            if first_disbursement:
                self._update_cycle(ctx)
            return self._transaction_result(
                loan, disbursement, changed,
                net_disbursal_amount=str(loan.net_disbursal_amount.amount),
                loan_counter=loan.loan_counter,
            )

        return self._execute(
            loan_id, BusinessEvent.LOAN_DISBURSED, business_date, operation,
            data={'actual_disbursement_date': command.actual_disbursement_date.isoformat()},
            borrower_scoped=True,
        )

    def _close_replaced_loan(
        self, topup_loan_id: str, closing_loan_id: str, closure: RepaymentCommand, business_date: date
    ) -> None:
        """
        Repay the loan a topup replaces; if that fails the topup
        disbursal is undone, reversing its closure transfer
        """
        try:
            self.make_repayment(closing_loan_id, closure, business_date)
        except Exception as e:
            log_action(
                self.logger, "error",
                f"Topup loan {topup_loan_id} could not close loan {closing_loan_id}, undoing its disbursal: {e}",
                action=BusinessEvent.LOAN_DISBURSED.value, resource=f"loan:{topup_loan_id}",
                loan_id=topup_loan_id, business_date=business_date,
                extra={'closing_loan_id': closing_loan_id},
            )
            self.undo_disbursal(topup_loan_id, business_date)
            raise

    def undo_disbursal(self, loan_id: str, business_date: date) -> CommandProcessingResult:
        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            reversed_ids = ctx.loan.undo_disbursal(ctx.business_date)
            ctx.reverse_account_transfers = True
            self._remove_cycle(ctx)
            return CommandProcessingResult(
                resource_id=loan_id, changes={'reversed_transaction_ids': reversed_ids}
            )

        return self._execute(
            loan_id, BusinessEvent.LOAN_DISBURSAL_UNDONE, business_date, operation, borrower_scoped=True
        )

    def undo_last_disbursal(self, loan_id: str, business_date: date) -> CommandProcessingResult:
        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            changed = ctx.loan.undo_last_disbursal(ctx.business_date)
            return CommandProcessingResult(resource_id=loan_id, changed_transaction_detail=changed)

        return self._execute(loan_id, BusinessEvent.LOAN_DISBURSAL_UNDONE, business_date, operation)

    # ------------------------------------------------------------------ #
    # Tranches
    # ------------------------------------------------------------------ #

    @staticmethod
    def _tranche_result(loan_id: str, tranche, changed) -> CommandProcessingResult:
        return CommandProcessingResult(
            resource_id=loan_id,
            entity_id=tranche.id,
            changes={
                'expected_date': tranche.expected_date.isoformat(),
                'principal': str(tranche.principal.amount),
            },
            changed_transaction_detail=changed,
        )

    def add_tranche(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(AddTrancheCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            tranche, changed = ctx.loan.add_tranche(
                command.expected_date, command.principal.to_money(), ctx.business_date
            )
            return self._tranche_result(loan_id, tranche, changed)

        return self._execute(loan_id, BusinessEvent.LOAN_TRANCHE_ADDED, business_date, operation)

    def update_tranche(self, loan_id: str, tranche_id: int, command, business_date: date) -> CommandProcessingResult:
        """Move or resize a tranche that is not disbursed yet; the schedule is rebuilt"""
        command = parse_command(UpdateTrancheCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            tranche, changed = ctx.loan.update_tranche(
                tranche_id,
                ctx.business_date,
                expected_date=command.expected_date,
                principal=command.principal.to_money() if command.principal else None,
            )
            return self._tranche_result(loan_id, tranche, changed)

        return self._execute(
            loan_id, BusinessEvent.LOAN_TRANCHE_UPDATED, business_date, operation, data={'tranche_id': tranche_id}
        )

    def remove_tranche(self, loan_id: str, tranche_id: int, business_date: date) -> CommandProcessingResult:
        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            changed = ctx.loan.remove_tranche(tranche_id, ctx.business_date)
            return CommandProcessingResult(
                resource_id=loan_id,
                entity_id=tranche_id,
                changes={'principal': str(ctx.loan.principal.amount)},
                changed_transaction_detail=changed,
            )

        return self._execute(
            loan_id, BusinessEvent.LOAN_TRANCHE_REMOVED, business_date, operation, data={'tranche_id': tranche_id}
        )

    # ------------------------------------------------------------------ #
    # Repayment, waiver and adjustment
    # ------------------------------------------------------------------ #

    def make_repayment(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(RepaymentCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            transaction, changed = ctx.loan.make_repayment(
                LoanTransactionType.REPAYMENT,
                command.transaction_date,
                command.transaction_amount.to_money(),
                ctx.business_date,
                payment_detail_or_none(command.payment_detail),
                command.external_id,
            )
            return self._transaction_result(ctx.loan, transaction, changed)

        return self._execute(loan_id, BusinessEvent.LOAN_REPAYMENT, business_date, operation)

    def waive_interest(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(WaiveInterestCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            transaction, changed = ctx.loan.waive_interest(
                command.transaction_amount.to_money(),
                command.transaction_date,
                ctx.business_date,
                command.external_id,
            )
            return self._transaction_result(
                ctx.loan, transaction, changed,
                unrecognized_income=str(transaction.unrecognized_income_portion.amount),
            )

        return self._execute(loan_id, BusinessEvent.LOAN_INTEREST_WAIVED, business_date, operation)

    def adjust_transaction(
        self, loan_id: str, transaction_id: int, command, business_date: date
    ) -> CommandProcessingResult:
        """Replace a repayment or waiver; transfer-originated transactions cannot be adjusted"""
        command = parse_command(AdjustTransactionCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            if self.transfer_service.is_account_transfer(loan_id, transaction_id):
                raise LoanValidationError(
                    f"Transaction {transaction_id} is part of an account transfer and cannot be adjusted",
                    parameter="transaction_id",
                )
            replacement, changed = ctx.loan.adjust_existing_transaction(
                transaction_id,
                command.transaction_date,
                command.transaction_amount.to_money(),
                ctx.business_date,
                payment_detail_or_none(command.payment_detail),
                command.external_id,
            )
            return self._transaction_result(
                ctx.loan, replacement, changed, reversed_transaction_id=transaction_id
            )

        return self._execute(
            loan_id, BusinessEvent.LOAN_TRANSACTION_ADJUSTED, business_date, operation,
            data={'transaction_id': transaction_id},
        )

    def make_bulk_repayment(self, command, business_date: date) -> List[CommandProcessingResult]:
        """
        Repay several loans in one request

        Each repayment is its own command under its own loan's lock. If
        one is rejected the repayments already made are reversed, newest
        first, and the rejection is raised.
        """
        command = parse_command(BulkRepaymentCommand, command)
        for item in command.repayments:
            self.get_loan(item.loan_id)

        results: List[CommandProcessingResult] = []
        try:
            for item in command.repayments:
                results.append(self.make_repayment(item.loan_id, item, business_date))
        except LoanError:
            for item, result in reversed(list(zip(command.repayments, results))):
                self._reverse_bulk_repayment(item, result, business_date)
            raise
        return results

    def _reverse_bulk_repayment(
        self, item: BulkRepaymentItem, result: CommandProcessingResult, business_date: date
    ) -> None:
        reversal = AdjustTransactionCommand(
            transaction_date=item.transaction_date,
            transaction_amount=MoneyModel(amount="0", currency=item.transaction_amount.currency),
        )
        try:
            self.adjust_transaction(item.loan_id, result.entity_id, reversal, business_date)
        except LoanError as e:
            log_action(
                self.logger, "error",
                f"Bulk repayment transaction {result.entity_id} of loan {item.loan_id} could not be reversed: {e.message}",
                action=BusinessEvent.LOAN_TRANSACTION_ADJUSTED.value, resource=f"loan:{item.loan_id}",
                loan_id=item.loan_id, business_date=business_date, extra=e.context,
            )

    # ------------------------------------------------------------------ #
    # Charges
    # ------------------------------------------------------------------ #

    def add_charge(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(AddChargeCommand, command)
        definition = self._charge_definition(command.charge_definition_id)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            charges, changed = ctx.loan.add_loan_charge(
                definition,
                ctx.business_date,
                due_date=command.due_date,
                amount=Decimal(command.amount) if command.amount is not None else None,
            )
            return CommandProcessingResult(
                resource_id=loan_id,
                entity_id=charges[0].id,
                changes={
                    'charge_ids': [c.id for c in charges],
                    'amount': str(sum((c.amount.amount for c in charges), Decimal('0'))),
                },
                changed_transaction_detail=changed,
            )

        return self._execute(
            loan_id, BusinessEvent.LOAN_CHARGE_ADDED, business_date, operation,
            data={'charge_definition_id': definition.id},
        )

    def waive_charge(self, loan_id: str, charge_id: int, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(WaiveChargeCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            transaction, changed = ctx.loan.waive_loan_charge(
                charge_id, ctx.business_date, command.installment_number, command.external_id
            )
            return self._transaction_result(ctx.loan, transaction, changed, charge_id=charge_id)

        return self._execute(
            loan_id, BusinessEvent.LOAN_CHARGE_WAIVED, business_date, operation, data={'charge_id': charge_id}
        )

    def undo_waive_charge(self, loan_id: str, transaction_id: int, business_date: date) -> CommandProcessingResult:
        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            changed = ctx.loan.undo_waive_loan_charge(transaction_id, ctx.business_date)
            return CommandProcessingResult(
                resource_id=loan_id,
                entity_id=transaction_id,
                changes={'reversed_transaction_id': transaction_id},
                changed_transaction_detail=changed,
            )

        return self._execute(
            loan_id, BusinessEvent.LOAN_CHARGE_WAIVE_UNDONE, business_date, operation,
            data={'transaction_id': transaction_id},
        )

    def pay_charge(self, loan_id: str, charge_id: int, command, business_date: date) -> CommandProcessingResult:
        """Collect an account-transfer charge from the linked savings account"""
        command = parse_command(PayChargeCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            amount = command.amount.to_money()
            transaction, changed = ctx.loan.pay_loan_charge(
                charge_id,
                command.transaction_date,
                amount,
                ctx.business_date,
                command.installment_number,
                payment_detail_or_none(command.payment_detail),
            )
            ctx.is_account_transfer = True
            ctx.transfer_requests.append(AccountTransferRequest(
                transfer_type=TransferType.CHARGE_PAYMENT_FROM_SAVINGS,
                loan_id=loan_id,
                amount=amount,
                transfer_date=command.transaction_date,
                savings_account_id=ctx.loan.linked_account_id,
                loan_transaction_id=transaction.id,
                description=f"Payment of charge {charge_id}",
            ))
            return self._transaction_result(ctx.loan, transaction, changed, charge_id=charge_id)

        return self._execute(
            loan_id, BusinessEvent.LOAN_CHARGE_PAID, business_date, operation, data={'charge_id': charge_id}
        )

    def remove_charge(self, loan_id: str, charge_id: int, business_date: date) -> CommandProcessingResult:
        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            charge = ctx.loan.remove_loan_charge(charge_id)
            return CommandProcessingResult(resource_id=loan_id, entity_id=charge.id)

        return self._execute(
            loan_id, BusinessEvent.LOAN_CHARGE_REMOVED, business_date, operation, data={'charge_id': charge_id}
        )

    def update_charge(self, loan_id: str, charge_id: int, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(UpdateChargeCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            charge = ctx.loan.update_loan_charge(charge_id, Decimal(command.amount), command.due_date)
            return CommandProcessingResult(
                resource_id=loan_id,
                entity_id=charge.id,
                changes={'amount': str(charge.amount.amount)},
            )

        return self._execute(
            loan_id, BusinessEvent.LOAN_CHARGE_UPDATED, business_date, operation, data={'charge_id': charge_id}
        )

    def apply_overdue_charges(self, loan_id: str, business_date: date) -> CommandProcessingResult:
        """
        Apply the product's overdue penalties to installments unpaid past
        their due date plus the configured grace days
        """
        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            definitions = [self._charge_definition(d) for d in ctx.loan.product.overdue_charge_definition_ids]
            charges, changed = ctx.loan.apply_overdue_charges(
                definitions, ctx.business_date, self.config.overdue_penalty_grace_days
            )
            return CommandProcessingResult(
                resource_id=loan_id,
                entity_id=charges[0].id if charges else None,
                changes={
                    'charge_ids': [c.id for c in charges],
                    'amount': str(sum((c.amount.amount for c in charges), Decimal('0'))),
                },
                changed_transaction_detail=changed,
            )

        return self._execute(loan_id, BusinessEvent.LOAN_OVERDUE_CHARGES_APPLIED, business_date, operation)

    # ------------------------------------------------------------------ #
    # Write-off, close and foreclosure
    # ------------------------------------------------------------------ #

    def write_off(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(WriteOffCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            transaction, changed = ctx.loan.write_off(
                command.transaction_date, ctx.business_date, command.external_id
            )
            self._remove_cycle(ctx)
            return self._transaction_result(ctx.loan, transaction, changed)

        return self._execute(loan_id, BusinessEvent.LOAN_WRITTEN_OFF, business_date, operation, borrower_scoped=True)

    def undo_write_off(self, loan_id: str, business_date: date) -> CommandProcessingResult:
        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            changed = ctx.loan.undo_write_off(ctx.business_date)
            return CommandProcessingResult(resource_id=loan_id, changed_transaction_detail=changed)

        return self._execute(loan_id, BusinessEvent.LOAN_WRITE_OFF_UNDONE, business_date, operation)

    def close(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(CloseLoanCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            transaction, changed = ctx.loan.close(command.transaction_date, ctx.business_date)
            return self._transaction_result(
                ctx.loan, transaction, changed, closed_on_date=command.transaction_date.isoformat()
            )

        return self._execute(loan_id, BusinessEvent.LOAN_CLOSED, business_date, operation)

    def close_as_rescheduled(
        self,
        loan_id: str,
        command,
        business_date: date,
        reschedule_request: Optional[Dict[str, Any]] = None,
    ) -> CommandProcessingResult:
        command = parse_command(CloseLoanCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            ctx.archive_schedule = True
            ctx.reschedule_request = reschedule_request or {'reason': 'rescheduled'}
            changed = ctx.loan.close_as_rescheduled(command.transaction_date, ctx.business_date)
            self._remove_cycle(ctx)
            return CommandProcessingResult(
                resource_id=loan_id,
                changes={'closed_on_date': command.transaction_date.isoformat()},
                changed_transaction_detail=changed,
            )

        return self._execute(
            loan_id, BusinessEvent.LOAN_CLOSED_AS_RESCHEDULED, business_date, operation, borrower_scoped=True
        )

    def foreclose(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(ForecloseCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            ctx.archive_schedule = True
            ctx.reschedule_request = {
                'reason': 'foreclosure',
                'transaction_date': command.transaction_date.isoformat(),
            }
            transaction, changed = ctx.loan.foreclose(
                command.transaction_date,
                ctx.business_date,
                command.external_id,
                payment_detail_or_none(command.payment_detail),
            )
            return self._transaction_result(ctx.loan, transaction, changed)

        return self._execute(loan_id, BusinessEvent.LOAN_FORECLOSED, business_date, operation)

    # ------------------------------------------------------------------ #
    # Refunds, accruals and recalculation
    # ------------------------------------------------------------------ #

    def credit_balance_refund(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(RefundCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            transaction = ctx.loan.credit_balance_refund(
                command.transaction_date,
                command.transaction_amount.to_money(),
                ctx.business_date,
                command.external_id,
                payment_detail_or_none(command.payment_detail),
            )
            return self._transaction_result(ctx.loan, transaction, None)

        return self._execute(loan_id, BusinessEvent.LOAN_REFUNDED, business_date, operation)

    def make_refund(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(RefundCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            transaction = ctx.loan.make_refund(
                command.transaction_date,
                command.transaction_amount.to_money(),
                ctx.business_date,
                command.external_id,
                payment_detail_or_none(command.payment_detail),
            )
            return self._transaction_result(ctx.loan, transaction, None)

        return self._execute(loan_id, BusinessEvent.LOAN_REFUNDED, business_date, operation)

    def add_accrual(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        command = parse_command(AccrualCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            transaction = ctx.loan.add_accrual(
                command.transaction_date,
                ctx.business_date,
                command.interest.to_money(),
                command.fee.to_money() if command.fee else None,
                command.penalty.to_money() if command.penalty else None,
            )
            return self._transaction_result(ctx.loan, transaction, None)

        return self._execute(loan_id, BusinessEvent.LOAN_ACCRUAL_ADDED, business_date, operation)

    def recalculate_interest(self, loan_id: str, business_date: date) -> CommandProcessingResult:
        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            changed = ctx.loan.recalculate_interest(ctx.business_date)
            return CommandProcessingResult(resource_id=loan_id, changed_transaction_detail=changed)

        return self._execute(loan_id, BusinessEvent.LOAN_INTEREST_RECALCULATED, business_date, operation)

    # ------------------------------------------------------------------ #
    # Transfers between offices
    # ------------------------------------------------------------------ #

    def _transfer(self, loan_id: str, command, business_date: date, event: BusinessEvent, method: str):
        command = parse_command(TransferCommand, command)

        def operation(ctx: _CommandContext) -> CommandProcessingResult:
            transaction = getattr(ctx.loan, method)(command.transaction_date, ctx.business_date)
            return self._transaction_result(ctx.loan, transaction, None)

        return self._execute(loan_id, event, business_date, operation)

    def initiate_transfer(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        return self._transfer(loan_id, command, business_date, BusinessEvent.LOAN_TRANSFER_INITIATED, "initiate_transfer")

    def accept_transfer(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        return self._transfer(loan_id, command, business_date, BusinessEvent.LOAN_TRANSFER_ACCEPTED, "accept_transfer")

    def withdraw_transfer(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        return self._transfer(loan_id, command, business_date, BusinessEvent.LOAN_TRANSFER_WITHDRAWN, "withdraw_transfer")

    def reject_transfer(self, loan_id: str, command, business_date: date) -> CommandProcessingResult:
        return self._transfer(loan_id, command, business_date, BusinessEvent.LOAN_TRANSFER_REJECTED, "reject_transfer")
