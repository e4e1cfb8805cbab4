from __future__ import annotations

import threading
import time
from decimal import Decimal
from unittest.mock import Mock

import pytest

from domain.base_types import BTC, Currency, CurrencyPair
from services.exchange_rate_api_source import ExchangeRateApiSource, _ExchangeRateApiClient
from services.rate_fetcher import RateFetcher, RequestThrottle, default_required_pairs
from services.rate_sources import HybridRateSource, MalformedResponseError, ProviderUnavailableError
from services.rate_store import RateStore
from tests.helpers.stub_sources import ScriptedRateSource
from tests.helpers.time_utils import FakeClock, FakeMonotonic

EUR = Currency("EUR")
USD = Currency("USD")
PLN = Currency("PLN")
GBP = Currency("GBP")

BTC_USD = CurrencyPair(BTC, USD)
BTC_EUR = CurrencyPair(BTC, EUR)
EUR_USD = CurrencyPair(EUR, USD)
EUR_PLN = CurrencyPair(EUR, PLN)
EUR_GBP = CurrencyPair(EUR, GBP)
USD_PLN = CurrencyPair(USD, PLN)

ALL_PAIRS = [BTC_USD, BTC_EUR, EUR_USD, EUR_PLN, EUR_GBP, USD_PLN]


def _fetcher(
    source: ScriptedRateSource,
    store: RateStore,
    monotonic: FakeMonotonic,
    *,
    pairs: list[CurrencyPair] | None = None,
    max_attempts: int = 3,
) -> RateFetcher:
    return RateFetcher(
        source=source,
        store=store,
        required_pairs=pairs or ALL_PAIRS,
        max_attempts=max_attempts,
        retry_backoff_seconds=0.5,
        min_request_delay_seconds=0.2,
        sleep=monotonic.sleep,
        monotonic=monotonic,
    )


def test_default_required_pairs_cover_prices_and_base_rows() -> None:
    pairs = default_required_pairs(["eur", "USD", "PLN"], ["EUR", "USD"])

    assert pairs == [
        CurrencyPair(BTC, EUR),
        CurrencyPair(BTC, USD),
        CurrencyPair(BTC, PLN),
        CurrencyPair(EUR, USD),
        CurrencyPair(EUR, PLN),
        CurrencyPair(USD, EUR),
        CurrencyPair(USD, PLN),
    ]


def test_partial_success_updates_only_obtained_pairs(clock: FakeClock) -> None:
    store = RateStore(clock=clock)
    source = ScriptedRateSource(
        {
            BTC_USD: Decimal("90000"),
            BTC_EUR: Decimal("85000"),
            EUR_USD: Decimal("1.05"),
            EUR_PLN: Decimal("4.3"),
            EUR_GBP: Decimal("0.83"),
            USD_PLN: Decimal("4.1"),
        }
    )
    _fetcher(source, store, FakeMonotonic()).refresh()
    clock.advance(minutes=5)

    failing = ScriptedRateSource(
        {
            BTC_USD: Decimal("95000"),
            BTC_EUR: ProviderUnavailableError("timeout"),
            EUR_USD: Decimal("1.10"),
            EUR_PLN: Decimal("4.5"),
            EUR_GBP: MalformedResponseError("no rate"),
            USD_PLN: Decimal("4.0"),
        }
    )
    snapshot = _fetcher(failing, store, FakeMonotonic()).refresh()

    assert snapshot.btc_price[USD] == Decimal("95000")
    assert snapshot.btc_price[EUR] == Decimal("85000")
    assert snapshot.direct_rate(EUR, USD) == Decimal("1.10")
    assert snapshot.direct_rate(EUR, PLN) == Decimal("4.5")
    assert snapshot.direct_rate(EUR, GBP) == Decimal("0.83")
    assert snapshot.direct_rate(USD, PLN) == Decimal("4.0")
    assert snapshot.timestamp == clock.now
    assert failing.calls_for(BTC_EUR) == 3
    assert failing.calls_for(EUR_GBP) == 3


def test_nothing_obtained_leaves_store_untouched(clock: FakeClock) -> None:
    store = RateStore(clock=clock)
    seeded = ScriptedRateSource({EUR_USD: Decimal("1.05")})
    before = _fetcher(seeded, store, FakeMonotonic(), pairs=[EUR_USD]).refresh()
    clock.advance(minutes=10)

    down = ScriptedRateSource({pair: ProviderUnavailableError("down") for pair in ALL_PAIRS})
    after = _fetcher(down, store, FakeMonotonic()).refresh()

    assert after is before
    assert store.get()[0].timestamp == before.timestamp
    assert store.status().minutes_ago == 10


def test_retries_with_exponential_backoff(clock: FakeClock) -> None:
    monotonic = FakeMonotonic()
    source = ScriptedRateSource(
        {EUR_USD: [ProviderUnavailableError("429"), ProviderUnavailableError("429"), Decimal("1.1")]}
    )
    fetcher = _fetcher(source, RateStore(clock=clock), monotonic, pairs=[EUR_USD], max_attempts=5)

    partial = fetcher.fetch_rates()

    assert partial.rate_matrix == {EUR: {USD: Decimal("1.1")}}
    assert source.calls_for(EUR_USD) == 3
    assert monotonic.sleeps == [0.5, 1.0]


def test_unusable_rate_counts_as_failed_attempt(clock: FakeClock) -> None:
    source = ScriptedRateSource({EUR_USD: [Decimal("0"), Decimal("-1"), Decimal("1.2")]})
    fetcher = _fetcher(source, RateStore(clock=clock), FakeMonotonic(), pairs=[EUR_USD])

    partial = fetcher.fetch_rates()

    assert partial.rate_matrix == {EUR: {USD: Decimal("1.2")}}
    assert source.calls_for(EUR_USD) == 3


def test_requests_to_same_provider_are_spaced(clock: FakeClock) -> None:
    monotonic = FakeMonotonic()
    source = ScriptedRateSource({EUR_USD: Decimal("1.1"), EUR_PLN: Decimal("4.3"), EUR_GBP: Decimal("0.8")})
    fetcher = _fetcher(source, RateStore(clock=clock), monotonic, pairs=[EUR_USD, EUR_PLN, EUR_GBP])

    fetcher.fetch_rates()

    assert monotonic.sleeps == pytest.approx([0.2, 0.2])


def test_throttle_is_tracked_per_provider() -> None:
    monotonic = FakeMonotonic()
    throttle = RequestThrottle(min_interval_seconds=0.2, monotonic=monotonic, sleep=monotonic.sleep)

    throttle.wait("coingecko")
    throttle.wait("exchange-rate-api")
    monotonic.value += 0.05
    throttle.wait("coingecko")

    assert monotonic.sleeps == pytest.approx([0.15])


def test_constructor_validation(clock: FakeClock) -> None:
    source = ScriptedRateSource({})
    store = RateStore(clock=clock)

    with pytest.raises(ValueError):
        RateFetcher(source=source, store=store, required_pairs=[EUR_USD], max_attempts=0)
    with pytest.raises(ValueError):
        RateFetcher(source=source, store=store, required_pairs=[])


def test_concurrent_refreshes_coalesce(clock: FakeClock) -> None:
    release = threading.Event()
    source = ScriptedRateSource({EUR_USD: Decimal("1.1"), BTC_USD: Decimal("90000")}, delay=release)
    fetcher = _fetcher(source, RateStore(clock=clock), FakeMonotonic(), pairs=[EUR_USD, BTC_USD])
    results = []

    def run() -> None:
        results.append(fetcher.refresh())

    leader = threading.Thread(target=run)
    leader.start()
    deadline = time.monotonic() + 5
    while not source.calls and time.monotonic() < deadline:
        time.sleep(0.01)
    assert fetcher.fetch_in_progress

    followers = [threading.Thread(target=run) for _ in range(4)]
    for thread in followers:
        thread.start()
    time.sleep(0.2)
    release.set()
    for thread in [leader, *followers]:
        thread.join(timeout=5)

    assert len(results) == 5
    assert all(result is results[0] for result in results)
    assert source.calls_for(EUR_USD) == 1
    assert source.calls_for(BTC_USD) == 1
    assert not fetcher.fetch_in_progress


def test_periodic_refresh_runs_in_background(clock: FakeClock) -> None:
    source = ScriptedRateSource({EUR_USD: Decimal("1.1")})
    store = RateStore(clock=clock)
    fetcher = _fetcher(source, store, FakeMonotonic(), pairs=[EUR_USD])

    fetcher.start(0.01)
    try:
        deadline = time.monotonic() + 5
        while store.get()[0].is_empty and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        fetcher.stop()

    assert store.get()[0].direct_rate(EUR, USD) == Decimal("1.1")


def test_malformed_fiat_payload_keeps_other_pairs(clock: FakeClock) -> None:
    response = Mock()
    response.json.return_value = {"base": "EUR", "time_last_updated": "n/a", "rates": {"USD": 1.08}}
    response.raise_for_status.return_value = None
    session = Mock()
    session.request.return_value = response
    fiat = ExchangeRateApiSource(client=_ExchangeRateApiClient(base_url="https://fx.test", timeout=1, session=session))
    crypto = ScriptedRateSource({BTC_USD: Decimal("90000")})
    store = RateStore(clock=clock)
    fetcher = _fetcher(
        HybridRateSource(crypto_source=crypto, fiat_source=fiat), store, FakeMonotonic(), pairs=[BTC_USD, EUR_USD]
    )

    snapshot = fetcher.refresh()

    assert snapshot.btc_price[USD] == Decimal("90000")
    assert snapshot.direct_rate(EUR, USD) is None
    assert session.request.call_count == 3
    assert store.get()[0] is snapshot


def test_unexpected_source_error_counts_as_failed_attempt(clock: FakeClock) -> None:
    source = ScriptedRateSource({EUR_USD: RuntimeError("bug in source"), EUR_PLN: Decimal("4.3")})
    fetcher = _fetcher(source, RateStore(clock=clock), FakeMonotonic(), pairs=[EUR_USD, EUR_PLN])

    snapshot = fetcher.refresh()

    assert snapshot.direct_rate(EUR, PLN) == Decimal("4.3")
    assert snapshot.direct_rate(EUR, USD) is None
    assert source.calls_for(EUR_USD) == 3


def test_default_attempt_bound_is_five_calls(clock: FakeClock) -> None:
    monotonic = FakeMonotonic()
    source = ScriptedRateSource({EUR_USD: ProviderUnavailableError("down")})
    fetcher = RateFetcher(
        source=source,
        store=RateStore(clock=clock),
        required_pairs=[EUR_USD],
        sleep=monotonic.sleep,
        monotonic=monotonic,
    )

    assert fetcher.fetch_rates().is_empty
    assert source.calls_for(EUR_USD) == 5
    assert monotonic.sleeps == [0.5, 1.0, 2.0, 4.0]
