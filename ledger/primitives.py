"""
Ledger primitives shared by every settlement component.

- Money: integer minor units plus an ISO 4217 currency code
- Opaque reference ids for orders, intents and ledger records
- Idempotency keys derived from the operation that produced a record
"""

import secrets
import time
from enum import Enum
from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import CurrencyMismatchError, ValidationError

DEFAULT_CURRENCY = "KES"


class Money(BaseModel):
    amount: int = Field(..., strict=True, description="Amount in minor units (cents)")
    currency: str = Field(default=DEFAULT_CURRENCY, min_length=3, max_length=3)

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        if not value.isalpha() or not value.isupper():
            raise ValueError("currency must be a three letter upper case ISO code")
        return value

    @classmethod
    def zero(cls, currency: str = DEFAULT_CURRENCY) -> "Money":
        return cls(amount=0, currency=currency)

    @classmethod
    def of(cls, amount: int, currency: str = DEFAULT_CURRENCY) -> "Money":
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(f"Money amount must be an integer number of minor units, got {amount!r}")
        return cls(amount=amount, currency=currency)

    def _check_currency(self, other: "Money") -> None:
        if self.currency != other.currency:
            raise CurrencyMismatchError(f"Cannot combine {self.currency} with {other.currency}")

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def __mul__(self, quantity: int) -> "Money":
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError(f"Quantity must be an integer, got {quantity!r}")
        return Money(amount=self.amount * quantity, currency=self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount >= other.amount

    def is_negative(self) -> bool:
        return self.amount < 0

    def is_positive(self) -> bool:
        return self.amount > 0

    def allocate(self, weights: Sequence[int]) -> list["Money"]:
        """
        Split this amount pro-rata to integer weights.

        Uses the largest-remainder method: every part gets the floor of its
        exact share and the leftover minor units go to the parts with the
        largest remainders (ties broken by position), so the parts always sum
        to the original amount.
        """
        if not weights:
            raise ValidationError("Cannot allocate over an empty set of weights")
        if any(w < 0 for w in weights):
            raise ValidationError("Allocation weights must be non-negative")
        total_weight = sum(weights)
        if total_weight == 0:
            raise ValidationError("Allocation weights must not all be zero")

        shares = []
        remainders = []
        for index, weight in enumerate(weights):
            share, remainder = divmod(self.amount * weight, total_weight)
            shares.append(share)
            remainders.append((remainder, -index))

        leftover = self.amount - sum(shares)
        for _, neg_index in sorted(remainders, reverse=True)[:leftover]:
            shares[-neg_index] += 1

        return [Money(amount=s, currency=self.currency) for s in shares]

    def __str__(self) -> str:
        whole, cents = divmod(abs(self.amount), 100)
        sign = "-" if self.amount < 0 else ""
        return f"{self.currency} {sign}{whole:,}.{cents:02d}"


def sum_money(values: Sequence[Money], currency: str = DEFAULT_CURRENCY) -> Money:
    total = Money.zero(values[0].currency if values else currency)
    for value in values:
        total = total + value
    return total


class StatusEnum(str, Enum):
    """String enum whose members declare which values are terminal."""

    @classmethod
    def terminal_values(cls) -> frozenset:
        return frozenset()

    @property
    def is_terminal(self) -> bool:
        return self.value in self.terminal_values()


def make_reference(prefix: str, length: int = 9) -> str:
    """Opaque, unique, human-readable id such as ``MORD-1718000000000-K3J9X2QPA``."""
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
    suffix = "".join(secrets.choice(alphabet) for _ in range(length))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def idempotency_key(*parts: object) -> str:
    return ":".join(str(p) for p in parts)
