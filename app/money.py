from __future__ import annotations

from dataclasses import dataclass

from app.exceptions import CurrencyMismatchError

_SYMBOLS = {"nzd": "$", "aud": "$", "usd": "$", "eur": "€", "gbp": "£"}


@dataclass(frozen=True, slots=True)
class Money:
    """An integer amount of minor currency units (cents) tagged with its currency."""

    cents: int
    currency: str = "nzd"

    def __post_init__(self) -> None:
        if not isinstance(self.cents, int) or isinstance(self.cents, bool):
            raise TypeError(f"Money.cents must be an int, got {type(self.cents).__name__}")
        object.__setattr__(self, "currency", self.currency.lower())

    @classmethod
    def zero(cls, currency: str = "nzd") -> Money:
        return cls(0, currency)

    def _check(self, other: Money) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(self.currency, other.currency)

    def __add__(self, other: Money) -> Money:
        self._check(other)
        return Money(self.cents + other.cents, self.currency)

    def __sub__(self, other: Money) -> Money:
        self._check(other)
        return Money(self.cents - other.cents, self.currency)

    def format(self) -> str:
        symbol = _SYMBOLS.get(self.currency, "")
        sign = "-" if self.cents < 0 else ""
        whole, frac = divmod(abs(self.cents), 100)
        return f"{sign}{symbol}{whole:,}.{frac:02d} {self.currency.upper()}"

    def __str__(self) -> str:
        return self.format()
