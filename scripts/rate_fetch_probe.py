# flake8: noqa E402
# Run via uv for access to dev deps, e.g.:
# uv run scripts/rate_fetch_probe.py --currency PLN --currency JPY
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Ensure the src directory is importable when the script is invoked via uv/python directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from config import config
from domain.base_types import CurrencyPair, currency
from domain.rate_resolver import RateResolver
from services.coingecko_source import CoinGeckoSource
from services.exchange_rate_api_source import ExchangeRateApiSource
from services.rate_fetcher import RateFetcher, default_required_pairs
from services.rate_sources import HybridRateSource, RateSource
from services.rate_store import RateStore


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch live rates once and show how each BTC price resolves.")
    parser.add_argument(
        "--currency",
        action="append",
        dest="currencies",
        help="Currency to fetch and resolve. Can be repeated; defaults to the configured supported currencies.",
    )
    parser.add_argument(
        "--store",
        default=str(PROJECT_ROOT / ".cache" / "rate_fetch_probe" / "price-cache.json"),
        help="Rate cache file to merge into (default: .cache/rate_fetch_probe/price-cache.json).",
    )
    parser.add_argument("--verbose", action="store_true", help="Log every fetch attempt.")
    return parser.parse_args()


class CountingRateSource(RateSource):
    def __init__(self, inner: RateSource) -> None:
        self.inner = inner
        self.fetch_count = 0

    def provider_for(self, pair: CurrencyPair) -> str:
        return self.inner.provider_for(pair)

    def fetch_rate(self, pair: CurrencyPair):  # type: ignore[no-untyped-def]
        self.fetch_count += 1
        rate = self.inner.fetch_rate(pair)
        print(f"[source] fetch #{self.fetch_count} {pair} via {self.provider_for(pair)} => {rate}")
        return rate


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    settings = config()
    codes = args.currencies or list(settings.supported_currencies)
    bases = (settings.primary_base_currency, settings.secondary_base_currency)

    store = RateStore(path=Path(args.store))
    store.load()
    print(f"Using store at {store.path} (last update: {store.status().timestamp})")

    source = CountingRateSource(HybridRateSource(crypto_source=CoinGeckoSource(), fiat_source=ExchangeRateApiSource()))
    fetcher = RateFetcher(
        source=source,
        store=store,
        required_pairs=default_required_pairs(codes, bases),
        max_attempts=settings.max_fetch_attempts,
        retry_backoff_seconds=settings.retry_backoff_seconds,
        min_request_delay_seconds=settings.min_request_delay_seconds,
    )
    snapshot = fetcher.refresh()

    resolver = RateResolver(primary_base=currency(bases[0]), secondary_base=currency(bases[1]))
    for code in codes:
        resolved = resolver.btc_price_detailed(currency(code), snapshot)
        marker = " (estimated)" if resolved.estimated else ""
        print(f"[price] BTC-{code.upper()} => {resolved.value} [{resolved.method}]{marker}")


if __name__ == "__main__":
    main()
