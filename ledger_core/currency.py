"""
Multi-Currency Support Module

Handles ISO 4217 currency codes and proper Decimal precision for monetary
values. NEVER uses float for monetary values. All rounding is
round-half-even so repeated conversions carry no systematic bias.
"""

from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places
    CAD = ("CAD", 2)  # Canadian Dollar, 2 decimal places
    CHF = ("CHF", 2)  # Swiss Franc, 2 decimal places
    AUD = ("AUD", 2)  # Australian Dollar, 2 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01 for USD"""
        return Decimal('1').scaleb(-self.precision)

    @classmethod
    def from_code(cls, code) -> 'Currency':
        """Look up a currency by ISO code (case-insensitive)"""
        if isinstance(code, Currency):
            return code
        try:
            return cls[str(code).strip().upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency: {code}", {"currency": code})


def quantize(value: Decimal, currency: Currency) -> Decimal:
    """Round a Decimal to the currency's precision using round-half-even"""
    return value.quantize(currency.minor_unit, rounding=ROUND_HALF_EVEN)


def to_decimal(value) -> Decimal:
    """Convert int/str/Decimal to a finite Decimal"""
    if isinstance(value, float):
        value = repr(value)
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}", {"amount": value})
    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}", {"amount": value})
    return result


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        object.__setattr__(self, 'amount', quantize(to_decimal(self.amount), self.currency))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', op: str) -> None:
        if self.currency != other.currency:
            raise ValidationError(f"Cannot {op} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier) -> 'Money':
        return Money(self.amount * to_decimal(multiplier), self.currency)

    def __truediv__(self, divisor) -> 'Money':
        return Money(self.amount / to_decimal(divisor), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

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

    def to_dict(self) -> dict:
        return {"amount": str(self.amount), "currency": self.currency.code}

    @classmethod
    def from_dict(cls, data: dict) -> 'Money':
        return cls(Decimal(data["amount"]), Currency[data["currency"]])

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"
