from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from domain.base_types import Currency
from domain.valuation import ValuationEngine, ValuationResult
from tests.helpers.time_utils import DEFAULT_NOW
from tests.helpers.transactions import make_tx


class FixedRates:
    """Rate provider with a fixed BTC price and an explicit table of conversions."""

    def __init__(self, *, btc_price: str, rates: dict[tuple[str, str], str] | None = None) -> None:
        self._btc_price = Decimal(btc_price)
        self._rates = {pair: Decimal(rate) for pair, rate in (rates or {}).items()}
        self.lookups: list[tuple[str, str]] = []
        self.estimated = False

    def rate(self, from_currency: Currency, to_currency: Currency) -> Decimal:
        self.lookups.append((from_currency, to_currency))
        if from_currency == to_currency:
            return Decimal("1")
        return self._rates[(from_currency, to_currency)]

    def btc_price(self, currency: Currency) -> Decimal:
        return self._btc_price


def sample_result(btc_price: str = "60000", *, as_of: datetime = DEFAULT_NOW) -> ValuationResult:
    engine = ValuationEngine(rates=FixedRates(btc_price=btc_price), main_currency=Currency("USD"))
    return engine.value([make_tx(btc_amount="0.1", price_per_unit="50000", fee="10")], as_of=as_of)
