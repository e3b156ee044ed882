"""
Money and Currency Module

ISO 4217 currency codes and an immutable Money value type with exact
Decimal arithmetic. Rounding is always explicit and derived from the
currency's minor-unit precision. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_HALF_EVEN, getcontext
from dataclasses import dataclass
from typing import Iterable, Union
from enum import Enum

from .exceptions import CurrencyMismatchError

# High precision for intermediate interest computations
getcontext().prec = 28

DEFAULT_ROUNDING = ROUND_HALF_UP


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    JPY = ("JPY", 0)  # Japanese Yen, no minor unit
    KES = ("KES", 2)  # Kenyan Shilling
    INR = ("INR", 2)  # Indian Rupee
    KWD = ("KWD", 3)  # Kuwaiti Dinar, 3 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.precision)

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        for currency in cls:
            if currency.code == code.upper():
                return currency
        raise ValueError(f"Unsupported currency code: {code}")


def round_to_currency(value: Decimal, currency: Currency, rounding: str = DEFAULT_ROUNDING) -> Decimal:
    """
    Round a decimal to the currency's precision

    Args:
        value: Decimal to round
        currency: Currency defining precision
        rounding: decimal rounding mode, half-up unless stated otherwise

    Returns:
        Properly rounded Decimal
    """
    return value.quantize(currency.quantum, rounding=rounding)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    Arithmetic between two Money values requires identical currency.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            if isinstance(self.amount, float):
                raise TypeError("Money amounts must not be built from float")
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        object.__setattr__(self, 'amount', round_to_currency(self.amount, self.currency))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def of(cls, currency: Currency, amount: Union[Decimal, int, str], rounding: str = DEFAULT_ROUNDING) -> 'Money':
        """Build Money with an explicit rounding mode"""
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        return cls(round_to_currency(value, currency, rounding), currency)

    @classmethod
    def total(cls, currency: Currency, values: Iterable['Money']) -> 'Money':
        result = cls.zero(currency)
        for value in values:
            result = result + value
        return result

    def _check_currency(self, other: 'Money', operation: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {operation} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise CurrencyMismatchError(
                f"Cannot {operation} {self.currency.code} and {other.currency.code}",
                left=self.currency.code,
                right=other.currency.code,
            )

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if isinstance(multiplier, Money):
            raise TypeError("Cannot multiply Money by Money")
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __truediv__(self, divisor: Decimal) -> 'Money':
        if not isinstance(divisor, Decimal):
            divisor = Decimal(str(divisor))
        return Money(self.amount / divisor, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def min(self, other: 'Money') -> 'Money':
        return self if self <= other else other

    def max(self, other: 'Money') -> 'Money':
        return self if self >= other else other

    def non_negative(self) -> 'Money':
        """Clamp negative values to zero"""
        return self if not self.is_negative() else Money.zero(self.currency)

    def split(self, parts: int) -> list:
        """
        Split into `parts` amounts that sum exactly to this amount.
        The remainder in minor units goes to the last part.
        """
        if parts <= 0:
            raise ValueError("Cannot split money into zero parts")
        share = Money.of(self.currency, self.amount / Decimal(parts), ROUND_HALF_EVEN)
        result = [share] * (parts - 1)
        result.append(self - share * Decimal(parts - 1))
        return result

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def to_dict(self) -> dict:
        return {'amount': str(self.amount), 'currency': self.currency.code}

    @classmethod
    def from_dict(cls, data: dict) -> 'Money':
        return cls(Decimal(data['amount']), Currency.from_code(data['currency']))
