from __future__ import annotations

from decimal import Decimal
from typing import Protocol

from .base_types import Currency


class RateProvider(Protocol):
    """Lookup interface for current conversion rates and the BTC spot price.

    `estimated` turns true once any value handed out came from approximate fallback data.
    """

    estimated: bool

    def rate(self, from_currency: Currency, to_currency: Currency) -> Decimal: ...

    def btc_price(self, currency: Currency) -> Decimal: ...
