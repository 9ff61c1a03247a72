"""
Currency Module

Handles the currencies SFD loans are written in and proper Decimal precision
for repayment calculations. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING, getcontext
from dataclasses import dataclass
from functools import total_ordering
from enum import Enum

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    XOF = ("XOF", 0)  # West African CFA franc (FCFA), no minor unit
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def unit(self) -> Decimal:
        """Smallest representable amount in this currency"""
        return Decimal('0.1') ** self.precision

    @property
    def label(self) -> str:
        """Display label used in client-facing messages"""
        return "FCFA" if self is Currency.XOF else self.code


@total_ordering
@dataclass(frozen=True, eq=False)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        # Round to currency precision
        rounded = self.amount.quantize(self.currency.unit, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def ceil(cls, amount: Decimal, currency: Currency) -> 'Money':
        """Build Money rounding up to the smallest currency unit"""
        if not isinstance(amount, Decimal):
            amount = Decimal(str(amount))
        return cls(amount.quantize(currency.unit, rounding=ROUND_CEILING), currency)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        return Money(self.amount * Decimal(str(multiplier)), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

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
        """Format for display, e.g. "8 750 FCFA" or "EUR 12.50" """
        if self.currency is Currency.XOF:
            grouped = f"{self.amount:,.0f}".replace(",", " ")
            return f"{grouped} {self.currency.label}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"
