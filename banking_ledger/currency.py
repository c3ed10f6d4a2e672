"""
Money Module

Currency codes and the fixed-point Money type used for every balance and
amount in the ledger. NEVER uses float for monetary values: floats handed in
from the outside are converted through their string form before any
arithmetic happens.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from typing import Optional, Union
from enum import Enum

from .errors import CurrencyMismatchError, InvalidAmountError

# Set global decimal context for financial precision
getcontext().prec = 28

AmountLike = Union[Decimal, int, str, float]


class Currency(Enum):
    """Supported ISO 4217 currency codes with precision info"""
    PEN = ("PEN", 2)  # Peruvian Sol
    USD = ("USD", 2)  # US Dollar

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal('0.1') ** self.precision


# Finest unit any supported currency can express
SMALLEST_UNIT = min(currency.quantum for currency in Currency)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    The amount is always quantized to the currency precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', parse_amount(self.amount))

        try:
            rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise InvalidAmountError(self.amount, "Amount exceeds supported precision")
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def from_string(cls, value: str, currency: Currency) -> 'Money':
        """Parse a serialized amount (as written by ``str(money.amount)``)"""
        return cls(parse_amount(value), currency)

    def _check_currency(self, other: 'Money') -> None:
        if self.currency != other.currency:
            raise CurrencyMismatchError(self.currency, other.currency)

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other)
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

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def parse_amount(value: AmountLike) -> Decimal:
    """
    Convert an incoming amount to Decimal without going through binary floats.

    Raises:
        InvalidAmountError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise InvalidAmountError(value, "Amount must be a number")

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise InvalidAmountError(value, "Amount is not a valid decimal")
    else:
        raise InvalidAmountError(value, "Amount must be a number")

    if not result.is_finite():
        raise InvalidAmountError(value, "Amount must be finite")
    return result


def has_valid_precision(value: Decimal, currency: Optional[Currency] = None) -> bool:
    """
    True when the value carries no more fractional digits than the currency allows

    Raises:
        InvalidAmountError: If the value has too many digits to represent at all
    """
    quantum = currency.quantum if currency else SMALLEST_UNIT
    try:
        return value == value.quantize(quantum)
    except InvalidOperation:
        raise InvalidAmountError(value, "Amount exceeds supported precision")
