from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable

from .base_types import Currency
from .rates import RateSnapshot, ResolutionMethod, ResolvedRate, to_rate

logger = logging.getLogger(__name__)

ONE = Decimal("1")

# Approximate rates used only when no live data can answer a query. Values are
# deliberately coarse and are never written back into a snapshot; anything
# resolved from this table is reported as estimated.
STATIC_FALLBACK_RATES: dict[Currency, dict[Currency, Decimal]] = {
    Currency("EUR"): {
        Currency("USD"): Decimal("1.1"),
        Currency("PLN"): Decimal("4.5"),
        Currency("GBP"): Decimal("0.85"),
        Currency("JPY"): Decimal("160"),
        Currency("CHF"): Decimal("0.95"),
    },
    Currency("USD"): {
        Currency("EUR"): Decimal("0.9"),
        Currency("PLN"): Decimal("4.0"),
        Currency("GBP"): Decimal("0.75"),
        Currency("JPY"): Decimal("145"),
        Currency("CHF"): Decimal("0.85"),
    },
}
STATIC_FALLBACK_BTC_PRICE: tuple[Currency, Decimal] = (Currency("USD"), Decimal("100000"))


class RateResolver:
    """Total, stateless mapping from a currency pair and a snapshot to a positive rate.

    Lookup order: identity, direct entry, inverse entry, triangulation via the
    primary base, triangulation via the secondary base, static fallback table.
    The resolver never returns zero, NaN or None.
    """

    def __init__(
        self,
        *,
        primary_base: Currency = Currency("EUR"),
        secondary_base: Currency = Currency("USD"),
        fallback_rates: dict[Currency, dict[Currency, Decimal]] | None = None,
        fallback_btc_price: tuple[Currency, Decimal] = STATIC_FALLBACK_BTC_PRICE,
    ) -> None:
        if primary_base == secondary_base:
            msg = "primary_base and secondary_base must differ"
            raise ValueError(msg)
        self.primary_base = primary_base
        self.secondary_base = secondary_base
        self._fallback_rates = fallback_rates if fallback_rates is not None else STATIC_FALLBACK_RATES
        self._fallback_btc_price = fallback_btc_price

    def resolve(self, from_currency: Currency, to_currency: Currency, snapshot: RateSnapshot) -> Decimal:
        return self.resolve_detailed(from_currency, to_currency, snapshot).value

    def resolve_detailed(
        self, from_currency: Currency, to_currency: Currency, snapshot: RateSnapshot
    ) -> ResolvedRate:
        if from_currency == to_currency:
            return ResolvedRate(ONE, ResolutionMethod.IDENTITY)

        live = self._resolve_live(from_currency, to_currency, snapshot)
        if live is not None:
            return live

        return ResolvedRate(self._resolve_static(from_currency, to_currency), ResolutionMethod.STATIC_FALLBACK)

    def btc_price(self, currency: Currency, snapshot: RateSnapshot) -> Decimal:
        return self.btc_price_detailed(currency, snapshot).value

    def btc_price_detailed(self, currency: Currency, snapshot: RateSnapshot) -> ResolvedRate:
        cached = to_rate(snapshot.btc_price.get(currency))
        if cached is not None:
            return ResolvedRate(cached, ResolutionMethod.CACHED)

        for anchor in self._price_anchors(snapshot):
            anchor_price = to_rate(snapshot.btc_price.get(anchor))
            if anchor_price is None:
                continue
            conversion = self.resolve_detailed(anchor, currency, snapshot)
            method = ResolutionMethod.STATIC_FALLBACK if conversion.estimated else ResolutionMethod.DERIVED
            return ResolvedRate(anchor_price * conversion.value, method)

        fallback_currency, fallback_price = self._fallback_btc_price
        logger.warning("No cached BTC price available, using static fallback for %s", currency)
        conversion = self.resolve_detailed(fallback_currency, currency, snapshot)
        return ResolvedRate(fallback_price * conversion.value, ResolutionMethod.STATIC_FALLBACK)

    def _price_anchors(self, snapshot: RateSnapshot) -> Iterable[Currency]:
        yield self.primary_base
        yield self.secondary_base
        for code in sorted(snapshot.btc_price):
            if code not in (self.primary_base, self.secondary_base):
                yield code

    def _resolve_live(
        self, from_currency: Currency, to_currency: Currency, snapshot: RateSnapshot
    ) -> ResolvedRate | None:
        direct = snapshot.direct_rate(from_currency, to_currency)
        if direct is not None:
            return ResolvedRate(direct, ResolutionMethod.DIRECT)

        inverse = snapshot.direct_rate(to_currency, from_currency)
        if inverse is not None:
            return ResolvedRate(ONE / inverse, ResolutionMethod.INVERSE)

        via_primary = self._triangulate(from_currency, to_currency, self.primary_base, snapshot)
        if via_primary is not None:
            return ResolvedRate(via_primary, ResolutionMethod.PRIMARY_BASE)

        via_secondary = self._triangulate(from_currency, to_currency, self.secondary_base, snapshot)
        if via_secondary is not None:
            return ResolvedRate(via_secondary, ResolutionMethod.SECONDARY_BASE)

        return None

    @staticmethod
    def _triangulate(
        from_currency: Currency, to_currency: Currency, base: Currency, snapshot: RateSnapshot
    ) -> Decimal | None:
        base_to_from = ONE if from_currency == base else snapshot.direct_rate(base, from_currency)
        base_to_target = ONE if to_currency == base else snapshot.direct_rate(base, to_currency)
        if base_to_from is None or base_to_target is None:
            return None
        return (ONE / base_to_from) * base_to_target

    def _resolve_static(self, from_currency: Currency, to_currency: Currency) -> Decimal:
        table = self._fallback_rates
        direct = to_rate(table.get(from_currency, {}).get(to_currency))
        if direct is not None:
            rate = direct
        elif (inverse := to_rate(table.get(to_currency, {}).get(from_currency))) is not None:
            rate = ONE / inverse
        else:
            rate = self._static_via_row(from_currency, to_currency)

        if rate is None:
            logger.warning("No exchange rate found for %s to %s, using 1", from_currency, to_currency)
            return ONE

        logger.warning("Using static fallback rate %s for %s to %s", rate, from_currency, to_currency)
        return rate

    def _static_via_row(self, from_currency: Currency, to_currency: Currency) -> Decimal | None:
        for base, row in self._fallback_rates.items():
            leg_from = ONE if from_currency == base else to_rate(row.get(from_currency))
            leg_to = ONE if to_currency == base else to_rate(row.get(to_currency))
            if leg_from is not None and leg_to is not None:
                return (ONE / leg_from) * leg_to
        return None


class SnapshotRates:
    """A resolver bound to one snapshot, used as the valuation engine's rate provider."""

    def __init__(self, resolver: RateResolver, snapshot: RateSnapshot) -> None:
        self._resolver = resolver
        self._snapshot = snapshot
        self.estimated = False

    def rate(self, from_currency: Currency, to_currency: Currency) -> Decimal:
        return self._track(self._resolver.resolve_detailed(from_currency, to_currency, self._snapshot))

    def btc_price(self, currency: Currency) -> Decimal:
        return self._track(self._resolver.btc_price_detailed(currency, self._snapshot))

    def _track(self, resolved: ResolvedRate) -> Decimal:
        if resolved.estimated:
            self.estimated = True
        return resolved.value


__all__ = [
    "RateResolver",
    "STATIC_FALLBACK_BTC_PRICE",
    "STATIC_FALLBACK_RATES",
    "SnapshotRates",
]
