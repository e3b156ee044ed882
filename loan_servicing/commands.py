"""
Pydantic schemas for loan write commands

Every write operation of LoanWriteService accepts one of these models (or
a plain dict with the same fields). Payloads are validated before the
loan aggregate is loaded, so malformed input never reaches it.
"""

from decimal import Decimal, InvalidOperation
from datetime import date
from typing import Annotated, Any, Dict, List, Optional, Type, TypeVar, Union
from pydantic import AfterValidator, BaseModel, Field, ValidationError, field_validator

from .collateral import CollateralItem
from .currency import Money, Currency
from .exceptions import LoanValidationError
from .loan import LoanTranche, LoanType, PostDatedCheck
from .schedule import AmortizationMethod, InterestMethod, LoanTerms, PaymentFrequency
from .transactions import PaymentDetail


def _decimal_string(value: str) -> str:
    try:
        number = Decimal(value)
    except InvalidOperation:
        raise ValueError(f"'{value}' is not a decimal number")
    if not number.is_finite():
        raise ValueError(f"'{value}' is not a finite number")
    return value


DecimalString = Annotated[str, AfterValidator(_decimal_string)]


class MoneyModel(BaseModel):
    amount: DecimalString = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (USD, EUR, etc.)")

    @field_validator('currency')
    @classmethod
    def _known_currency(cls, value: str) -> str:
        if value not in Currency.__members__:
            raise ValueError(f"Unsupported currency code: {value}")
        return value

    def to_money(self) -> Money:
        return Money(Decimal(self.amount), Currency[self.currency])

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


class PaymentDetailModel(BaseModel):
    payment_type: str = "cash"
    account_number: Optional[str] = None
    check_number: Optional[str] = None
    receipt_number: Optional[str] = None
    bank_number: Optional[str] = None

    def to_payment_detail(self) -> PaymentDetail:
        return PaymentDetail(
            payment_type=self.payment_type,
            account_number=self.account_number,
            check_number=self.check_number,
            receipt_number=self.receipt_number,
            bank_number=self.bank_number,
        )


def payment_detail_or_none(model: Optional[PaymentDetailModel]) -> Optional[PaymentDetail]:
    return model.to_payment_detail() if model else None


# Application schemas
class CollateralModel(BaseModel):
    client_collateral_id: str
    quantity: DecimalString
    base_price: MoneyModel
    pct_to_base: DecimalString = "100"

    def to_item(self) -> CollateralItem:
        return CollateralItem(
            client_collateral_id=self.client_collateral_id,
            quantity=Decimal(self.quantity),
            base_price=self.base_price.to_money(),
            pct_to_base=Decimal(self.pct_to_base),
        )


class TrancheModel(BaseModel):
    id: int
    expected_date: date
    principal: MoneyModel


class SubmitLoanCommand(BaseModel):
    loan_id: Optional[str] = None
    client_id: Optional[str] = None
    group_id: Optional[str] = None
    loan_type: LoanType = LoanType.INDIVIDUAL
    product_id: str = "default"
    external_id: Optional[str] = None
    submitted_on_date: date
    principal: MoneyModel
    annual_interest_rate: DecimalString = Field(..., description="Decimal rate as string, 0.075 for 7.5%")
    number_of_repayments: int = Field(..., ge=1)
    expected_disbursement_date: date
    payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    repayment_every: int = Field(1, ge=1)
    amortization_method: AmortizationMethod = AmortizationMethod.EQUAL_INSTALLMENT
    interest_method: InterestMethod = InterestMethod.DECLINING_BALANCE
    first_repayment_date: Optional[date] = None
    tranches: Optional[List[TrancheModel]] = None
    collateral: Optional[List[CollateralModel]] = None
    linked_account_id: Optional[str] = None
    topup_loan_id: Optional[str] = None

    def to_terms(self) -> LoanTerms:
        try:
            return LoanTerms(
                principal_amount=self.principal.to_money(),
                annual_interest_rate=Decimal(self.annual_interest_rate),
                number_of_repayments=self.number_of_repayments,
                expected_disbursement_date=self.expected_disbursement_date,
                payment_frequency=self.payment_frequency,
                repayment_every=self.repayment_every,
                amortization_method=self.amortization_method,
                interest_method=self.interest_method,
                first_repayment_date=self.first_repayment_date,
            )
        except (ValueError, InvalidOperation) as e:
            raise LoanValidationError(f"Invalid loan terms: {e}", parameter="terms") from e

    def to_tranches(self) -> List[LoanTranche]:
        return [
            LoanTranche(id=t.id, expected_date=t.expected_date, principal=t.principal.to_money())
            for t in self.tranches or []
        ]

    def to_collateral(self) -> List[CollateralItem]:
        return [item.to_item() for item in self.collateral or []]


class ApproveLoanCommand(BaseModel):
    approved_on_date: date
    approved_principal: Optional[MoneyModel] = None
    expected_disbursement_date: Optional[date] = None


class RejectLoanCommand(BaseModel):
    rejected_on_date: date


class WithdrawLoanCommand(BaseModel):
    withdrawn_on_date: date


# Disbursement schemas
class PostDatedCheckModel(BaseModel):
    installment_number: int = Field(..., ge=1)
    amount: MoneyModel
    check_number: str
    bank_name: Optional[str] = None

    def to_check(self) -> PostDatedCheck:
        return PostDatedCheck(
            installment_number=self.installment_number,
            amount=self.amount.to_money(),
            check_number=self.check_number,
            bank_name=self.bank_name,
        )


class DisburseLoanCommand(BaseModel):
    actual_disbursement_date: date
    principal: Optional[MoneyModel] = None
    net_disbursal_amount: Optional[MoneyModel] = None
    payment_detail: Optional[PaymentDetailModel] = None
    tranche_id: Optional[int] = None
    external_id: Optional[str] = None
    post_dated_checks: Optional[List[PostDatedCheckModel]] = None
    to_savings: bool = Field(False, description="Pay the disbursal into the linked savings account")


# Transaction schemas
class RepaymentCommand(BaseModel):
    transaction_date: date
    transaction_amount: MoneyModel
    payment_detail: Optional[PaymentDetailModel] = None
    external_id: Optional[str] = None


class WaiveInterestCommand(BaseModel):
    transaction_date: date
    transaction_amount: MoneyModel
    external_id: Optional[str] = None


class AdjustTransactionCommand(BaseModel):
    transaction_date: date
    transaction_amount: MoneyModel  # Zero reverses without a replacement
    payment_detail: Optional[PaymentDetailModel] = None
    external_id: Optional[str] = None


class RefundCommand(BaseModel):
    transaction_date: date
    transaction_amount: MoneyModel
    payment_detail: Optional[PaymentDetailModel] = None
    external_id: Optional[str] = None


class AccrualCommand(BaseModel):
    transaction_date: date
    interest: MoneyModel
    fee: Optional[MoneyModel] = None
    penalty: Optional[MoneyModel] = None


# Charge schemas
class AddChargeCommand(BaseModel):
    charge_definition_id: str
    amount: Optional[DecimalString] = None  # Overrides the definition amount or percentage
    due_date: Optional[date] = None


class WaiveChargeCommand(BaseModel):
    installment_number: Optional[int] = None
    external_id: Optional[str] = None


class PayChargeCommand(BaseModel):
    transaction_date: date
    amount: MoneyModel
    installment_number: Optional[int] = None
    payment_detail: Optional[PaymentDetailModel] = None


class UpdateChargeCommand(BaseModel):
    amount: DecimalString
    due_date: Optional[date] = None


# Closure schemas
class WriteOffCommand(BaseModel):
    transaction_date: date
    external_id: Optional[str] = None


class CloseLoanCommand(BaseModel):
    transaction_date: date


class ForecloseCommand(BaseModel):
    transaction_date: date
    external_id: Optional[str] = None
    payment_detail: Optional[PaymentDetailModel] = None


class TransferCommand(BaseModel):
    transaction_date: date


class BulkRepaymentItem(RepaymentCommand):
    loan_id: str


class BulkRepaymentCommand(BaseModel):
    repayments: List[BulkRepaymentItem] = Field(..., min_length=1)


class AddTrancheCommand(BaseModel):
    expected_date: date
    principal: MoneyModel


class UpdateTrancheCommand(BaseModel):
    expected_date: Optional[date] = None
    principal: Optional[MoneyModel] = None


CommandT = TypeVar('CommandT', bound=BaseModel)


def parse_command(model_cls: Type[CommandT], payload: Union[CommandT, Dict[str, Any]]) -> CommandT:
    """
    Validate a command payload

    Args:
        model_cls: Command schema
        payload: Schema instance or raw dictionary

    Returns:
        Validated command

    Raises:
        LoanValidationError: If the payload does not match the schema
    """
    if isinstance(payload, model_cls):
        return payload
    try:
        return model_cls.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        parameter = ".".join(str(part) for part in first.get('loc', ())) or None
        raise LoanValidationError(
            f"Invalid {model_cls.__name__}: {first.get('msg')}",
            parameter=parameter,
            errors=e.error_count(),
        ) from e
