"""
Schedule Generation Module

Loan terms, the holiday/working-day calendar and the default
amortization schedule generator. Generation is a pure function of its
inputs: identical terms, disbursements and calendars always give the
same installments.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple
import calendar

from .currency import Money, Currency
from .installments import RepaymentInstallment


class AmortizationMethod(Enum):
    """Methods for loan amortization"""
    EQUAL_INSTALLMENT = "equal_installment"  # French method - equal payments
    EQUAL_PRINCIPAL = "equal_principal"      # Equal principal + declining interest
    BULLET = "bullet"                        # Interest only, principal at end


class InterestMethod(Enum):
    """Basis for periodic interest"""
    DECLINING_BALANCE = "declining_balance"  # On outstanding principal
    FLAT = "flat"                            # On the full disbursed principal


class PaymentFrequency(Enum):
    """Payment frequency options"""
    WEEKLY = "weekly"          # 52 payments per year
    BI_WEEKLY = "bi_weekly"    # 26 payments per year
    MONTHLY = "monthly"        # 12 payments per year
    QUARTERLY = "quarterly"    # 4 payments per year
    SEMI_ANNUALLY = "semi_annually"  # 2 payments per year
    ANNUALLY = "annually"      # 1 payment per year

    @property
    def payments_per_year(self) -> int:
        return {
            PaymentFrequency.WEEKLY: 52,
            PaymentFrequency.BI_WEEKLY: 26,
            PaymentFrequency.MONTHLY: 12,
            PaymentFrequency.QUARTERLY: 4,
            PaymentFrequency.SEMI_ANNUALLY: 2,
            PaymentFrequency.ANNUALLY: 1,
        }[self]


@dataclass
class LoanTerms:
    """Loan terms used to build the repayment schedule"""
    principal_amount: Money
    annual_interest_rate: Decimal       # e.g., 0.075 for 7.5%
    number_of_repayments: int
    expected_disbursement_date: date
    payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    repayment_every: int = 1            # e.g. 2 with MONTHLY for every other month
    amortization_method: AmortizationMethod = AmortizationMethod.EQUAL_INSTALLMENT
    interest_method: InterestMethod = InterestMethod.DECLINING_BALANCE
    first_repayment_date: Optional[date] = None

    def __post_init__(self):
        if not isinstance(self.annual_interest_rate, Decimal):
            self.annual_interest_rate = Decimal(str(self.annual_interest_rate))
        if self.number_of_repayments < 1:
            raise ValueError("Number of repayments must be at least 1")
        if self.repayment_every < 1:
            raise ValueError("Repayment frequency multiplier must be at least 1")
        if self.annual_interest_rate < Decimal('0'):
            raise ValueError("Interest rate cannot be negative")
        if not self.principal_amount.is_positive():
            raise ValueError("Principal amount must be positive")
        if self.first_repayment_date and self.first_repayment_date <= self.expected_disbursement_date:
            raise ValueError("First repayment date must be after the expected disbursement date")

    @property
    def currency(self) -> Currency:
        return self.principal_amount.currency

    @property
    def periodic_rate(self) -> Decimal:
        return (
            self.annual_interest_rate
            / Decimal(self.payment_frequency.payments_per_year)
            * Decimal(self.repayment_every)
        )


@dataclass(frozen=True)
class DisbursementEvent:
    """A tranche: actual date when disbursed, expected date otherwise"""
    disbursement_date: date
    principal: Money
    disbursed: bool = True


@dataclass
class HolidayCalendar:
    holidays: Set[date] = field(default_factory=set)

    def is_holiday(self, on_date: date) -> bool:
        return on_date in self.holidays


@dataclass(frozen=True)
class WorkingDays:
    """Weekdays (Monday=0) on which repayments may fall due"""
    weekdays: FrozenSet[int] = frozenset(range(7))

    def is_working_day(self, on_date: date) -> bool:
        return on_date.weekday() in self.weekdays


@dataclass
class RecalculationContext:
    """
    Actual repayment history fed back into the generator when interest
    recalculation is enabled
    """
    recalculate_from: date
    principal_payments: List[Tuple[date, Money]] = field(default_factory=list)
    unpaid_fees: List[Tuple[date, Money]] = field(default_factory=list)
    compound_fees: bool = False

    def principal_paid_by(self, on_date: date, currency: Currency) -> Money:
        return Money.total(currency, (amount for paid_on, amount in self.principal_payments if paid_on <= on_date))

    def unpaid_fees_by(self, on_date: date, currency: Currency) -> Money:
        if not self.compound_fees:
            return Money.zero(currency)
        return Money.total(currency, (amount for due_on, amount in self.unpaid_fees if due_on <= on_date))


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance(start_date: date, frequency: PaymentFrequency, periods: int) -> date:
    """Date `periods` repayment periods after start_date"""
    if frequency == PaymentFrequency.WEEKLY:
        return start_date + timedelta(days=7 * periods)
    elif frequency == PaymentFrequency.BI_WEEKLY:
        return start_date + timedelta(days=14 * periods)
    elif frequency == PaymentFrequency.MONTHLY:
        return add_months(start_date, periods)
    elif frequency == PaymentFrequency.QUARTERLY:
        return add_months(start_date, 3 * periods)
    elif frequency == PaymentFrequency.SEMI_ANNUALLY:
        return add_months(start_date, 6 * periods)
    elif frequency == PaymentFrequency.ANNUALLY:
        return add_months(start_date, 12 * periods)
    raise ValueError(f"Unsupported payment frequency: {frequency}")


def next_working_day(
    on_date: date,
    holiday_calendar: Optional[HolidayCalendar] = None,
    working_days: Optional[WorkingDays] = None,
) -> date:
    """Move a date forward until it is a working, non-holiday day"""
    holiday_calendar = holiday_calendar or HolidayCalendar()
    working_days = working_days or WorkingDays()
    if not working_days.weekdays:
        raise ValueError("At least one working day is required")
    adjusted = on_date
    for _ in range(366):
        if working_days.is_working_day(adjusted) and not holiday_calendar.is_holiday(adjusted):
            return adjusted
        adjusted = adjusted + timedelta(days=1)
    raise ValueError(f"No working day within a year of {on_date.isoformat()}")


class ScheduleGenerator(ABC):
    """Builds an ordered list of installments from loan terms"""

    @abstractmethod
    def generate(
        self,
        terms: LoanTerms,
        disbursement_events: Sequence[DisbursementEvent],
        holiday_calendar: Optional[HolidayCalendar] = None,
        working_days: Optional[WorkingDays] = None,
        recalculation: Optional[RecalculationContext] = None,
    ) -> List[RepaymentInstallment]:
        """Return installments ordered by installment number with no date gaps"""


class DefaultScheduleGenerator(ScheduleGenerator):
    """
    Equal-installment, equal-principal and bullet schedules on a
    declining-balance or flat interest basis
    """

    def due_dates(
        self,
        terms: LoanTerms,
        start: date,
        holiday_calendar: Optional[HolidayCalendar] = None,
        working_days: Optional[WorkingDays] = None,
    ) -> List[date]:
        """
        Due dates for every installment

        Unadjusted dates are always derived from the first repayment
        date so month-end dates do not drift; each is then moved to the
        next working day.
        """
        first = terms.first_repayment_date or advance(start, terms.payment_frequency, terms.repayment_every)
        dates = []
        previous = start
        for period in range(terms.number_of_repayments):
            unadjusted = advance(first, terms.payment_frequency, period * terms.repayment_every)
            adjusted = next_working_day(unadjusted, holiday_calendar, working_days)
            if adjusted < previous:
                adjusted = previous
            dates.append(adjusted)
            previous = adjusted
        return dates

    def generate(
        self,
        terms: LoanTerms,
        disbursement_events: Sequence[DisbursementEvent],
        holiday_calendar: Optional[HolidayCalendar] = None,
        working_days: Optional[WorkingDays] = None,
        recalculation: Optional[RecalculationContext] = None,
    ) -> List[RepaymentInstallment]:
        currency = terms.currency
        zero = Money.zero(currency)
        events = sorted(disbursement_events, key=lambda e: e.disbursement_date)
        if not events:
            events = [DisbursementEvent(terms.expected_disbursement_date, terms.principal_amount, False)]

        start = events[0].disbursement_date
        pending = list(events)
        rate = terms.periodic_rate
        count = terms.number_of_repayments

        balance = zero
        disbursed = zero
        installment_amount: Optional[Money] = None
        installments: List[RepaymentInstallment] = []
        from_date = start

        for number, due_date in enumerate(self.due_dates(terms, start, holiday_calendar, working_days), start=1):
            periods_left = count - number + 1
            balance_changed = installment_amount is None

            while pending and pending[0].disbursement_date <= from_date:
                event = pending.pop(0)
                balance = balance + event.principal
                disbursed = disbursed + event.principal
                balance_changed = True

            if terms.interest_method == InterestMethod.FLAT:
                scheduled_interest = disbursed * rate if balance.is_positive() else zero
            else:
                scheduled_interest = balance * rate

            # Recalculation moves interest only; principal dues keep summing to the disbursed amount
            interest = scheduled_interest
            recalculated = False
            if recalculation is not None and from_date >= recalculation.recalculate_from:
                actual = (disbursed - recalculation.principal_paid_by(from_date, currency)).non_negative()
                interest_basis = actual + recalculation.unpaid_fees_by(from_date, currency)
                if terms.interest_method == InterestMethod.DECLINING_BALANCE:
                    interest = interest_basis * rate
                recalculated = True

            if number == count:
                principal = balance
            elif terms.amortization_method == AmortizationMethod.BULLET:
                principal = zero
            elif (terms.amortization_method == AmortizationMethod.EQUAL_PRINCIPAL
                  or terms.interest_method == InterestMethod.FLAT):
                principal = balance / Decimal(periods_left)
            else:
                if balance_changed:
                    installment_amount = self._installment_amount(balance, rate, periods_left)
                principal = (installment_amount - scheduled_interest).max(zero)
            principal = principal.min(balance).non_negative()

            installments.append(RepaymentInstallment(
                installment_number=number,
                from_date=from_date,
                due_date=due_date,
                principal_due=principal,
                interest_due=interest,
                is_recalculated_interest_component=recalculated,
            ))
            balance = balance - principal
            from_date = due_date

        # Tranches expected after the last period fall on the final installment
        for event in pending:
            last = installments[-1]
            last.principal_due = last.principal_due + event.principal

        return installments

    @staticmethod
    def _installment_amount(balance: Money, rate: Decimal, periods: int) -> Money:
        """Annuity payment for the remaining balance"""
        if rate == Decimal('0'):
            return balance / Decimal(periods)
        factor = (Decimal('1') + rate) ** periods
        return balance * (rate * factor / (factor - Decimal('1')))


def maturity_date(installments: Iterable[RepaymentInstallment]) -> Optional[date]:
    dates = [installment.due_date for installment in installments]
    return max(dates) if dates else None
