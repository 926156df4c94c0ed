"""
Currency types
==============

CurrencyCode is the closed set of currencies the app can display and
store. Unknown codes are rejected at the boundary (API models and
parse_currency) so free-form strings never reach the conversion path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict

from subtrack.core.errors import UnknownCurrency


class CurrencyCode(str, Enum):
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    JPY = "JPY"
    AUD = "AUD"
    CAD = "CAD"
    INR = "INR"


CURRENCY_SYMBOLS: Dict[CurrencyCode, str] = {
    CurrencyCode.USD: "$",
    CurrencyCode.EUR: "€",
    CurrencyCode.GBP: "£",
    CurrencyCode.JPY: "¥",
    CurrencyCode.AUD: "A$",
    CurrencyCode.CAD: "C$",
    CurrencyCode.INR: "₹",
}

CURRENCY_NAMES: Dict[CurrencyCode, str] = {
    CurrencyCode.USD: "US Dollar",
    CurrencyCode.EUR: "Euro",
    CurrencyCode.GBP: "British Pound",
    CurrencyCode.JPY: "Japanese Yen",
    CurrencyCode.AUD: "Australian Dollar",
    CurrencyCode.CAD: "Canadian Dollar",
    CurrencyCode.INR: "Indian Rupee",
}


def parse_currency(code) -> CurrencyCode:
    """Validate *code* against the supported set (case-insensitive)."""
    if isinstance(code, CurrencyCode):
        return code
    try:
        return CurrencyCode(str(code).strip().upper())
    except ValueError:
        raise UnknownCurrency(str(code)) from None


@dataclass(frozen=True)
class ExchangeRateTable:
    """Rates for one base currency: 1 unit of base = rates[X] units of X."""

    base_currency: CurrencyCode
    rates: Dict[str, float]
    fetched_at: datetime
    is_fallback: bool = False
    source: str = field(default="api", compare=False)

    def __post_init__(self) -> None:
        rates = dict(self.rates)
        rates[self.base_currency.value] = 1.0
        object.__setattr__(self, "rates", rates)

    def rate_for(self, target: CurrencyCode):
        """Return the rate to *target*, or None when the table lacks it."""
        rate = self.rates.get(target.value)
        if rate is None or rate <= 0:
            return None
        return rate
