"""
Repayment Installment Module

One period of the amortization schedule with due, paid, waived and
written-off amounts for each of the four components (principal,
interest, fee charges, penalty charges).

For every component: due == paid + waived + written_off + outstanding,
and outstanding is never negative.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from .currency import Money, Currency
from .exceptions import ReplayInconsistencyError


class Component(Enum):
    """Installment components in allocation vocabulary"""
    PRINCIPAL = "principal"
    INTEREST = "interest"
    FEE = "fee_charges"
    PENALTY = "penalty_charges"


@dataclass
class RepaymentInstallment:
    """Single period of a loan repayment schedule"""
    installment_number: int
    from_date: date
    due_date: date
    principal_due: Money
    interest_due: Money
    fee_charges_due: Money = None
    penalty_charges_due: Money = None

    principal_paid: Money = None
    interest_paid: Money = None
    fee_charges_paid: Money = None
    penalty_charges_paid: Money = None

    principal_waived: Money = None
    interest_waived: Money = None
    fee_charges_waived: Money = None
    penalty_charges_waived: Money = None

    principal_written_off: Money = None
    interest_written_off: Money = None
    fee_charges_written_off: Money = None
    penalty_charges_written_off: Money = None

    completed: bool = False
    obligations_met_on_date: Optional[date] = None
    is_recalculated_interest_component: bool = False

    def __post_init__(self):
        if self.installment_number < 1:
            raise ValueError("Installment number must be positive")
        if self.due_date < self.from_date:
            raise ValueError(
                f"Installment {self.installment_number} due date precedes its from date"
            )
        zero = Money.zero(self.principal_due.currency)
        for component in Component:
            for suffix in ("due", "paid", "waived", "written_off"):
                name = f"{component.value}_{suffix}"
                value = getattr(self, name)
                if value is None:
                    setattr(self, name, zero)
                elif value.currency != self.currency:
                    raise ValueError(f"Installment {name} currency must match principal currency")

    @property
    def currency(self) -> Currency:
        return self.principal_due.currency

    # ------------------------------------------------------------------ #
    # Derived balances
    # ------------------------------------------------------------------ #

    def _amount(self, component: Component, suffix: str) -> Money:
        return getattr(self, f"{component.value}_{suffix}")

    def due(self, component: Component) -> Money:
        return self._amount(component, "due")

    def outstanding(self, component: Component) -> Money:
        return (
            self._amount(component, "due")
            - self._amount(component, "paid")
            - self._amount(component, "waived")
            - self._amount(component, "written_off")
        )

    @property
    def principal_outstanding(self) -> Money:
        return self.outstanding(Component.PRINCIPAL)

    @property
    def interest_outstanding(self) -> Money:
        return self.outstanding(Component.INTEREST)

    @property
    def fee_charges_outstanding(self) -> Money:
        return self.outstanding(Component.FEE)

    @property
    def penalty_charges_outstanding(self) -> Money:
        return self.outstanding(Component.PENALTY)

    @property
    def total_due(self) -> Money:
        return Money.total(self.currency, (self.due(c) for c in Component))

    @property
    def total_outstanding(self) -> Money:
        return Money.total(self.currency, (self.outstanding(c) for c in Component))

    @property
    def total_paid(self) -> Money:
        return Money.total(self.currency, (self._amount(c, "paid") for c in Component))

    @property
    def total_waived(self) -> Money:
        return Money.total(self.currency, (self._amount(c, "waived") for c in Component))

    def is_due_on_or_before(self, on_date: date) -> bool:
        return self.due_date <= on_date

    def covers(self, on_date: date, first: bool = False) -> bool:
        """True if on_date falls in (from_date, due_date], inclusive of from_date for the first period"""
        if first and on_date == self.from_date:
            return True
        return self.from_date < on_date <= self.due_date

    # ------------------------------------------------------------------ #
    # Mutation, only through the transaction processor
    # ------------------------------------------------------------------ #

    def reset_derived_components(self) -> None:
        """Zero every paid, waived and written-off amount"""
        zero = Money.zero(self.currency)
        for component in Component:
            for suffix in ("paid", "waived", "written_off"):
                setattr(self, f"{component.value}_{suffix}", zero)
        self.completed = self.total_outstanding.is_zero()
        self.obligations_met_on_date = None

    def pay_component(self, component: Component, on_date: date, amount: Money) -> Money:
        """
        Pay up to `amount` towards one component

        Args:
            component: Component being paid
            on_date: Transaction date
            amount: Amount available

        Returns:
            The portion actually applied
        """
        applied = amount.min(self.outstanding(component)).non_negative()
        name = f"{component.value}_paid"
        setattr(self, name, getattr(self, name) + applied)
        self._check_if_completed(on_date)
        return applied

    def waive_component(self, component: Component, on_date: date, amount: Money) -> Money:
        applied = amount.min(self.outstanding(component)).non_negative()
        name = f"{component.value}_waived"
        setattr(self, name, getattr(self, name) + applied)
        self._check_if_completed(on_date)
        return applied

    def write_off_outstanding(self, on_date: date) -> Dict[Component, Money]:
        """Write off every outstanding component and report the amounts"""
        written_off = {}
        for component in Component:
            amount = self.outstanding(component)
            name = f"{component.value}_written_off"
            setattr(self, name, getattr(self, name) + amount)
            written_off[component] = amount
        self._check_if_completed(on_date)
        return written_off

    def drop_unsettled_interest(self) -> Money:
        """Drop any interest not already settled; used when foreclosing"""
        settled = self.interest_paid + self.interest_waived + self.interest_written_off
        removed = self.interest_due - settled
        self.interest_due = settled
        return removed

    def _check_if_completed(self, on_date: date) -> None:
        if self.total_outstanding.is_zero():
            if not self.completed:
                self.obligations_met_on_date = on_date
            self.completed = True
        else:
            self.completed = False
            self.obligations_met_on_date = None

    def refresh_completed(self) -> None:
        self.completed = self.total_outstanding.is_zero()
        if not self.completed:
            self.obligations_met_on_date = None

    def check_integrity(self, transaction_id: Optional[int] = None) -> None:
        """
        Raise if any component balance is impossible

        Raises:
            ReplayInconsistencyError: If a due, paid, waived, written-off
                or outstanding amount is negative
        """
        for component in Component:
            for suffix in ("due", "paid", "waived", "written_off"):
                if self._amount(component, suffix).is_negative():
                    raise ReplayInconsistencyError(
                        f"Installment {self.installment_number} has negative "
                        f"{component.value} {suffix}",
                        transaction_id=transaction_id,
                        installment_number=self.installment_number,
                    )
            if self.outstanding(component).is_negative():
                raise ReplayInconsistencyError(
                    f"Installment {self.installment_number} has negative "
                    f"{component.value} outstanding",
                    transaction_id=transaction_id,
                    installment_number=self.installment_number,
                )

    def snapshot(self) -> Dict[str, Decimal]:
        """Component amounts keyed by field name, for comparisons and archives"""
        result = {}
        for component in Component:
            for suffix in ("due", "paid", "waived", "written_off"):
                result[f"{component.value}_{suffix}"] = self._amount(component, suffix).amount
        return result

    def to_dict(self) -> Dict:
        data = {
            'installment_number': self.installment_number,
            'from_date': self.from_date.isoformat(),
            'due_date': self.due_date.isoformat(),
            'currency': self.currency.code,
            'completed': self.completed,
            'is_recalculated_interest_component': self.is_recalculated_interest_component,
        }
        data.update({key: str(value) for key, value in self.snapshot().items()})
        return data
