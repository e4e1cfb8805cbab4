from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Mapping

from .base_types import Currency, CurrencyPair

RateMatrix = Mapping[Currency, Mapping[Currency, Decimal]]


def to_rate(value: Any) -> Decimal | None:
    """Coerce `value` into a usable rate, or None when it is missing, non-finite or <= 0."""
    if value is None or isinstance(value, bool):
        return None
    try:
        rate = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not rate.is_finite() or rate <= 0:
        return None
    return rate


def _freeze_matrix(matrix: Mapping[Currency, Mapping[Currency, Decimal]]) -> RateMatrix:
    return MappingProxyType({base: MappingProxyType(dict(row)) for base, row in matrix.items() if row})


@dataclass(frozen=True)
class RateSnapshot:
    """Immutable bundle of every rate currently believed to be true.

    Absent pairs are unknown; identity entries are never stored.
    """

    rate_matrix: RateMatrix = field(default_factory=lambda: MappingProxyType({}))
    btc_price: Mapping[Currency, Decimal] = field(default_factory=lambda: MappingProxyType({}))
    timestamp: datetime | None = None

    @classmethod
    def build(
        cls,
        *,
        rate_matrix: Mapping[Currency, Mapping[Currency, Decimal]] | None = None,
        btc_price: Mapping[Currency, Decimal] | None = None,
        timestamp: datetime | None = None,
    ) -> RateSnapshot:
        return cls(
            rate_matrix=_freeze_matrix(rate_matrix or {}),
            btc_price=MappingProxyType(dict(btc_price or {})),
            timestamp=timestamp,
        )

    @property
    def is_empty(self) -> bool:
        return not self.rate_matrix and not self.btc_price

    def direct_rate(self, base: Currency, quote: Currency) -> Decimal | None:
        row = self.rate_matrix.get(base)
        if row is None:
            return None
        return to_rate(row.get(quote))

    def merged(self, partial: PartialRates, *, timestamp: datetime) -> RateSnapshot:
        """Field-level merge: obtained pairs overwrite, everything else is kept."""
        matrix: dict[Currency, dict[Currency, Decimal]] = {base: dict(row) for base, row in self.rate_matrix.items()}
        for base, row in partial.rate_matrix.items():
            for quote, value in row.items():
                rate = to_rate(value)
                if rate is None or base == quote:
                    continue
                matrix.setdefault(base, {})[quote] = rate

        prices = dict(self.btc_price)
        for code, value in partial.btc_price.items():
            price = to_rate(value)
            if price is not None:
                prices[code] = price

        return RateSnapshot.build(rate_matrix=matrix, btc_price=prices, timestamp=timestamp)


@dataclass
class PartialRates:
    """The subset of rates obtained by one fetch."""

    btc_price: dict[Currency, Decimal] = field(default_factory=dict)
    rate_matrix: dict[Currency, dict[Currency, Decimal]] = field(default_factory=dict)

    def add(self, pair: CurrencyPair, rate: Decimal) -> None:
        if pair.is_btc_price:
            self.btc_price[pair.quote] = rate
        else:
            self.rate_matrix.setdefault(pair.base, {})[pair.quote] = rate

    @property
    def pair_count(self) -> int:
        return len(self.btc_price) + sum(len(row) for row in self.rate_matrix.values())

    @property
    def is_empty(self) -> bool:
        return self.pair_count == 0


class ResolutionMethod(StrEnum):
    IDENTITY = "IDENTITY"
    DIRECT = "DIRECT"
    INVERSE = "INVERSE"
    PRIMARY_BASE = "PRIMARY_BASE"
    SECONDARY_BASE = "SECONDARY_BASE"
    CACHED = "CACHED"
    DERIVED = "DERIVED"
    STATIC_FALLBACK = "STATIC_FALLBACK"


@dataclass(frozen=True)
class ResolvedRate:
    value: Decimal
    method: ResolutionMethod

    @property
    def estimated(self) -> bool:
        return self.method == ResolutionMethod.STATIC_FALLBACK


__all__ = [
    "PartialRates",
    "RateMatrix",
    "RateSnapshot",
    "ResolutionMethod",
    "ResolvedRate",
    "to_rate",
]
