from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Protocol, Sequence

from sqlalchemy.exc import SQLAlchemyError

from config import AppSettings, config
from db.db import init_db
from db.repositories import PortfolioSummaryRepository
from domain.base_types import Currency, Transaction, TransactionFingerprint, currency
from domain.rate_resolver import RateResolver, SnapshotRates
from domain.rates import RateSnapshot, ResolvedRate
from domain.summary import PortfolioSummary
from domain.valuation import ValuationEngine, ValuationResult

from .coingecko_source import CoinGeckoSource
from .exchange_rate_api_source import ExchangeRateApiSource
from .rate_fetcher import RateFetcher, default_required_pairs
from .rate_sources import HybridRateSource
from .rate_store import RateStatus, RateStore
from .summary_cache import SummaryCache

logger = logging.getLogger(__name__)


class TransactionSource(Protocol):
    def list_transactions(self) -> Sequence[Transaction]: ...

    def fingerprint(self) -> TransactionFingerprint: ...


class CurrencySettings(Protocol):
    @property
    def main_currency(self) -> Currency: ...

    @property
    def secondary_currency(self) -> Currency: ...


@dataclass(frozen=True)
class StaticCurrencySettings:
    main_currency: Currency
    secondary_currency: Currency


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PortfolioService:
    """Entry point for collaborators: current prices, conversion rates and the portfolio summary."""

    def __init__(
        self,
        *,
        transactions: TransactionSource,
        settings: CurrencySettings,
        rate_store: RateStore,
        rate_fetcher: RateFetcher,
        resolver: RateResolver,
        summary_cache: SummaryCache,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.transactions = transactions
        self.settings = settings
        self.rate_store = rate_store
        self.rate_fetcher = rate_fetcher
        self.resolver = resolver
        self.summary_cache = summary_cache
        self._clock = clock

    def get_current_price(self, currency_code: Currency | None = None) -> Decimal:
        return self.get_current_price_detailed(currency_code).value

    def get_current_price_detailed(self, currency_code: Currency | None = None) -> ResolvedRate:
        target = currency_code or self.settings.main_currency
        snapshot, _ = self.rate_store.get()
        return self.resolver.btc_price_detailed(target, snapshot)

    def get_rate(self, from_currency: Currency, to_currency: Currency) -> Decimal:
        return self.get_rate_detailed(from_currency, to_currency).value

    def get_rate_detailed(self, from_currency: Currency, to_currency: Currency) -> ResolvedRate:
        snapshot, _ = self.rate_store.get()
        return self.resolver.resolve_detailed(from_currency, to_currency, snapshot)

    def get_portfolio_summary(self, force_fresh: bool = False) -> PortfolioSummary:
        return self.summary_cache.get_summary(
            self.compute_summary,
            fingerprint=self.transactions.fingerprint(),
            force_fresh=force_fresh,
        )

    def invalidate_summary(self) -> None:
        self.summary_cache.invalidate()

    def force_refresh_rates(self) -> RateSnapshot:
        return self.rate_fetcher.force_refresh()

    def rate_status(self) -> RateStatus:
        return self.rate_store.status()

    def compute_summary(self) -> ValuationResult:
        snapshot, _ = self.rate_store.get()
        rates = SnapshotRates(self.resolver, snapshot)
        engine = ValuationEngine(rates=rates, main_currency=self.settings.main_currency)
        result = engine.value(self.transactions.list_transactions(), as_of=self._clock())
        if result.rates_estimated:
            logger.warning("Portfolio summary uses estimated rates for %s", self.settings.main_currency)
        return result

    def ensure_fresh_rates(self, max_age: timedelta) -> RateSnapshot:
        snapshot, age = self.rate_store.get()
        if age is not None and age <= max_age:
            return snapshot
        return self.rate_fetcher.refresh()

    def start(self, *, fetch_interval_seconds: float, summary_refresh_interval_seconds: float) -> None:
        self.ensure_fresh_rates(timedelta(seconds=fetch_interval_seconds))
        self.rate_fetcher.start(fetch_interval_seconds)
        self.summary_cache.schedule_background_refresh(
            self.compute_summary,
            self.transactions.fingerprint,
            summary_refresh_interval_seconds,
        )

    def stop(self) -> None:
        self.rate_fetcher.stop()
        self.summary_cache.stop_background_refresh()


def build_default_service(
    transactions: TransactionSource,
    *,
    settings: AppSettings | None = None,
    currency_settings: CurrencySettings | None = None,
) -> PortfolioService:
    app_settings = settings or config()
    store = RateStore(path=app_settings.rate_cache_file)
    store.load()

    source = HybridRateSource(crypto_source=CoinGeckoSource(), fiat_source=ExchangeRateApiSource())
    fetcher = RateFetcher(
        source=source,
        store=store,
        required_pairs=default_required_pairs(
            app_settings.supported_currencies,
            (app_settings.primary_base_currency, app_settings.secondary_base_currency),
        ),
        max_attempts=app_settings.max_fetch_attempts,
        retry_backoff_seconds=app_settings.retry_backoff_seconds,
        min_request_delay_seconds=app_settings.min_request_delay_seconds,
    )
    resolver = RateResolver(
        primary_base=currency(app_settings.primary_base_currency),
        secondary_base=currency(app_settings.secondary_base_currency),
    )
    repository: PortfolioSummaryRepository | None
    try:
        repository = PortfolioSummaryRepository(init_db(app_settings.summary_db_url))
    except (OSError, SQLAlchemyError):
        logger.exception(
            "Cannot open summary database %s, summaries will not be persisted", app_settings.summary_db_url
        )
        repository = None
    summary_cache = SummaryCache(
        max_age=timedelta(seconds=app_settings.summary_max_age_seconds),
        repository=repository,
    )
    return PortfolioService(
        transactions=transactions,
        settings=currency_settings
        or StaticCurrencySettings(
            main_currency=currency(app_settings.main_currency),
            secondary_currency=currency(app_settings.secondary_currency),
        ),
        rate_store=store,
        rate_fetcher=fetcher,
        resolver=resolver,
        summary_cache=summary_cache,
    )


__all__ = [
    "CurrencySettings",
    "PortfolioService",
    "StaticCurrencySettings",
    "TransactionSource",
    "build_default_service",
]
