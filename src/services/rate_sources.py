from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol

from domain.base_types import CurrencyPair


class RateSourceError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class ProviderUnavailableError(RateSourceError):
    """Network failure, timeout or an HTTP error status from the provider."""


class MalformedResponseError(RateSourceError):
    """The provider answered but the payload holds no usable rate."""


class RateSource(Protocol):
    def provider_for(self, pair: CurrencyPair) -> str: ...

    def fetch_rate(self, pair: CurrencyPair) -> Decimal: ...


class HybridRateSource(RateSource):
    """Send BTC price queries to the crypto source and FX queries to the fiat source."""

    def __init__(self, *, crypto_source: RateSource, fiat_source: RateSource) -> None:
        self.crypto_source = crypto_source
        self.fiat_source = fiat_source

    def provider_for(self, pair: CurrencyPair) -> str:
        return self._route(pair).provider_for(pair)

    def fetch_rate(self, pair: CurrencyPair) -> Decimal:
        return self._route(pair).fetch_rate(pair)

    def _route(self, pair: CurrencyPair) -> RateSource:
        if pair.is_btc_price:
            return self.crypto_source
        return self.fiat_source


__all__ = [
    "HybridRateSource",
    "MalformedResponseError",
    "ProviderUnavailableError",
    "RateSource",
    "RateSourceError",
]
