"""
Collateral Module

Collateral pledged against individual loans. Pledged quantity is held
out of the client's available pool while the loan is open and returned
when the loan closes.
"""

from dataclasses import dataclass
from decimal import Decimal
from threading import RLock
from typing import Dict, Iterable, List, Tuple

from .currency import Money, Currency


@dataclass
class CollateralItem:
    """A quantity of one client collateral pledged to a loan"""
    client_collateral_id: str
    quantity: Decimal
    base_price: Money
    pct_to_base: Decimal  # Percentage of the base price counted as value

    def __post_init__(self):
        if not isinstance(self.quantity, Decimal):
            self.quantity = Decimal(str(self.quantity))
        if not isinstance(self.pct_to_base, Decimal):
            self.pct_to_base = Decimal(str(self.pct_to_base))
        if self.quantity < Decimal('0'):
            raise ValueError("Collateral quantity cannot be negative")

    @property
    def value(self) -> Money:
        return self.base_price * (self.quantity * self.pct_to_base / Decimal('100'))


def total_collateral_value(items: Iterable[CollateralItem], currency: Currency) -> Money:
    """Sum of quantity x base price x pct-to-base across pledged items"""
    return Money.total(currency, (item.value for item in items))


class ClientCollateralPool:
    """Quantity of each client collateral not pledged to an open loan"""

    def __init__(self):
        self._available: Dict[str, Decimal] = {}
        self._lock = RLock()

    def register(self, client_collateral_id: str, quantity: Decimal) -> None:
        with self._lock:
            self._available[client_collateral_id] = Decimal(str(quantity))

    def available(self, client_collateral_id: str) -> Decimal:
        with self._lock:
            return self._available.get(client_collateral_id, Decimal('0'))

    def pledge(self, items: Iterable[CollateralItem]) -> None:
        """
        Hold pledged quantities out of the pool

        Raises:
            ValueError: If a client does not hold enough of a collateral
        """
        with self._lock:
            requested: Dict[str, Decimal] = {}
            for item in items:
                requested[item.client_collateral_id] = (
                    requested.get(item.client_collateral_id, Decimal('0')) + item.quantity
                )
            for collateral_id, quantity in requested.items():
                if self.available(collateral_id) < quantity:
                    raise ValueError(
                        f"Client collateral {collateral_id} has only "
                        f"{self.available(collateral_id)} available"
                    )
            for collateral_id, quantity in requested.items():
                self._available[collateral_id] = self.available(collateral_id) - quantity

    def release(self, items: Iterable[CollateralItem]) -> List[Tuple[str, Decimal]]:
        """Return pledged quantities to the pool"""
        released = []
        with self._lock:
            for item in items:
                current = self._available.get(item.client_collateral_id, Decimal('0'))
                self._available[item.client_collateral_id] = current + item.quantity
                released.append((item.client_collateral_id, item.quantity))
        return released
