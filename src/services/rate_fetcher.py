from __future__ import annotations

import logging
import threading
import time
from decimal import Decimal
from typing import Callable, Iterable, Sequence

from domain.base_types import BTC, Currency, CurrencyPair
from domain.rates import PartialRates, RateSnapshot, to_rate

from .rate_sources import MalformedResponseError, RateSource, RateSourceError
from .rate_store import RateStore
from .scheduling import PeriodicTask
from .single_flight import SingleFlight

logger = logging.getLogger(__name__)


def default_required_pairs(
    supported_currencies: Iterable[str], base_currencies: Iterable[str]
) -> list[CurrencyPair]:
    """BTC priced in every supported currency plus FX pairs out of each base currency."""
    supported = [Currency(code.upper()) for code in supported_currencies]
    pairs = [CurrencyPair(BTC, quote) for quote in supported]
    for base_raw in base_currencies:
        base = Currency(base_raw.upper())
        pairs.extend(CurrencyPair(base, quote) for quote in supported if quote != base)
    return pairs


class RequestThrottle:
    """Enforce a minimum delay between consecutive requests to the same provider."""

    def __init__(
        self,
        *,
        min_interval_seconds: float,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if min_interval_seconds < 0:
            msg = "min_interval_seconds must be >= 0"
            raise ValueError(msg)
        self.min_interval_seconds = min_interval_seconds
        self._monotonic = monotonic
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request: dict[str, float] = {}

    def wait(self, provider: str) -> None:
        with self._lock:
            last = self._last_request.get(provider)
            if last is not None:
                remaining = self.min_interval_seconds - (self._monotonic() - last)
                if remaining > 0:
                    self._sleep(remaining)
            self._last_request[provider] = self._monotonic()


class RateFetcher:
    """Pull rates from a source and merge them into the rate store.

    Every pair is requested separately and retried with exponential backoff. A
    pair that keeps failing is left out of the result so the store keeps its
    previous value. Concurrent refreshes coalesce into one in-flight fetch.
    """

    def __init__(
        self,
        *,
        source: RateSource,
        store: RateStore,
        required_pairs: Sequence[CurrencyPair],
        max_attempts: int = 5,
        retry_backoff_seconds: float = 0.5,
        min_request_delay_seconds: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts <= 0:
            msg = "max_attempts must be > 0"
            raise ValueError(msg)
        if retry_backoff_seconds < 0:
            msg = "retry_backoff_seconds must be >= 0"
            raise ValueError(msg)
        if not required_pairs:
            msg = "required_pairs must contain at least one pair"
            raise ValueError(msg)

        self.source = source
        self.store = store
        self.required_pairs = tuple(required_pairs)
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep
        self._throttle = RequestThrottle(
            min_interval_seconds=min_request_delay_seconds, monotonic=monotonic, sleep=sleep
        )
        self._flight: SingleFlight[RateSnapshot] = SingleFlight()
        self._task: PeriodicTask | None = None

    @property
    def fetch_in_progress(self) -> bool:
        return self._flight.in_flight

    def fetch_rates(self, required_pairs: Iterable[CurrencyPair] | None = None) -> PartialRates:
        pairs = tuple(required_pairs) if required_pairs is not None else self.required_pairs
        partial = PartialRates()
        for pair in pairs:
            rate = self._fetch_pair(pair)
            if rate is not None:
                partial.add(pair, rate)
        logger.info("Fetched %d of %d rate pairs", partial.pair_count, len(pairs))
        return partial

    def refresh(self, required_pairs: Iterable[CurrencyPair] | None = None) -> RateSnapshot:
        """Fetch and merge; a call overlapping an in-flight refresh joins it instead."""
        pairs = tuple(required_pairs) if required_pairs is not None else self.required_pairs
        return self._flight.do(lambda: self._fetch_and_merge(pairs))

    def force_refresh(self) -> RateSnapshot:
        return self.refresh()

    def start(self, interval_seconds: float) -> None:
        if self._task is None:
            self._task = PeriodicTask(name="rate-fetcher", interval_seconds=interval_seconds, action=self.refresh)
        self._task.start()

    def stop(self) -> None:
        if self._task is not None:
            self._task.stop()

    def _fetch_and_merge(self, pairs: Sequence[CurrencyPair]) -> RateSnapshot:
        partial = self.fetch_rates(pairs)
        if partial.is_empty:
            logger.warning("Rate fetch obtained no pairs, keeping previous snapshot")
            snapshot, _ = self.store.get()
            return snapshot
        return self.store.update(partial)

    def _fetch_pair(self, pair: CurrencyPair) -> Decimal | None:
        provider = self.source.provider_for(pair)
        for attempt in range(self.max_attempts):
            if attempt > 0:
                self._sleep(self.retry_backoff_seconds * 2 ** (attempt - 1))
            self._throttle.wait(provider)
            try:
                rate = to_rate(self.source.fetch_rate(pair))
                if rate is None:
                    raise MalformedResponseError(f"{provider} returned an unusable rate for {pair}")
                return rate
            except RateSourceError as exc:
                logger.debug(
                    "Attempt %d/%d for %s via %s failed: %s", attempt + 1, self.max_attempts, pair, provider, exc
                )
            except Exception:
                logger.exception(
                    "Attempt %d/%d for %s via %s failed unexpectedly", attempt + 1, self.max_attempts, pair, provider
                )

        logger.warning("Giving up on %s via %s after %d attempts", pair, provider, self.max_attempts)
        return None


__all__ = ["RateFetcher", "RequestThrottle", "default_required_pairs"]
