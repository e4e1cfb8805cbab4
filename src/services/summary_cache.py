from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from db.repositories import PortfolioSummaryRepository
from domain.base_types import TransactionFingerprint
from domain.summary import PortfolioSummary
from domain.valuation import ValuationResult

from .scheduling import PeriodicTask
from .single_flight import SingleFlight

logger = logging.getLogger(__name__)

ComputeFn = Callable[[], ValuationResult]
FingerprintProvider = Callable[[], TransactionFingerprint]


class SummaryState(StrEnum):
    EMPTY = "EMPTY"
    FRESH = "FRESH"
    STALE = "STALE"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SummaryCache:
    """Memoizes the portfolio valuation and decides when it must be recomputed.

    A summary is fresh while the transaction-log fingerprint it was computed
    from still matches and it is younger than `max_age`. Recomputation is lazy,
    runs at most once at a time, and falls back to the previous summary (flagged
    stale) when the computation fails.
    """

    def __init__(
        self,
        *,
        max_age: timedelta = timedelta(minutes=5),
        repository: PortfolioSummaryRepository | None = None,
        cache_key: str = "default",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_age <= timedelta(0):
            msg = "max_age must be positive"
            raise ValueError(msg)
        self.max_age = max_age
        self.cache_key = cache_key
        self._repository = repository
        self._clock = clock
        self._lock = threading.Lock()
        self._flight: SingleFlight[PortfolioSummary] = SingleFlight()
        self._background: PeriodicTask | None = None

        self._valid = False
        self._generation = 0
        # A persisted summary only serves as a fallback; the cache still starts EMPTY.
        self._summary: PortfolioSummary | None = self._load_persisted()

    def state(self, fingerprint: TransactionFingerprint | None = None) -> SummaryState:
        with self._lock:
            summary, valid = self._summary, self._valid
        if summary is None or not valid:
            return SummaryState.EMPTY
        if self._is_fresh(summary, fingerprint):
            return SummaryState.FRESH
        return SummaryState.STALE

    def peek(self) -> PortfolioSummary | None:
        return self._summary

    def get_summary(
        self,
        compute_fn: ComputeFn,
        *,
        fingerprint: TransactionFingerprint,
        force_fresh: bool = False,
    ) -> PortfolioSummary:
        if not force_fresh:
            with self._lock:
                summary, valid = self._summary, self._valid
            if summary is not None and valid and self._is_fresh(summary, fingerprint):
                logger.debug("Using valid cached summary data")
                return summary

        return self._flight.do(lambda: self._recompute(compute_fn, fingerprint, force_fresh))

    def invalidate(self) -> None:
        logger.debug("Invalidating summary cache due to transaction changes")
        with self._lock:
            self._valid = False
            self._generation += 1

    def refresh_if_stale(self, compute_fn: ComputeFn, fingerprint: TransactionFingerprint) -> bool:
        if self._flight.in_flight:
            logger.debug("Summary generation already in progress")
            return False
        state = self.state(fingerprint)
        if state == SummaryState.FRESH:
            return False
        logger.debug("Running scheduled summary update, cache is %s", state)
        self.get_summary(compute_fn, fingerprint=fingerprint)
        return True

    def schedule_background_refresh(
        self,
        compute_fn: ComputeFn,
        fingerprint_provider: FingerprintProvider,
        interval_seconds: float,
    ) -> PeriodicTask:
        self.stop_background_refresh()
        task = PeriodicTask(
            name="summary-cache-refresh",
            interval_seconds=interval_seconds,
            action=lambda: self.refresh_if_stale(compute_fn, fingerprint_provider()),
        )
        self._background = task
        task.start()
        return task

    def stop_background_refresh(self) -> None:
        if self._background is not None:
            self._background.stop()
            self._background = None

    def _is_fresh(self, summary: PortfolioSummary, fingerprint: TransactionFingerprint | None) -> bool:
        if self._clock() - summary.computed_at >= self.max_age:
            return False
        if fingerprint is not None and summary.fingerprint.is_superseded_by(fingerprint):
            logger.debug(
                "Transaction log changed from %s to %s, summary is stale", summary.fingerprint, fingerprint
            )
            return False
        return True

    def _recompute(
        self, compute_fn: ComputeFn, fingerprint: TransactionFingerprint, force_fresh: bool
    ) -> PortfolioSummary:
        with self._lock:
            previous, valid, generation = self._summary, self._valid, self._generation

        # Another caller may have finished a computation between our check and taking the flight.
        if not force_fresh and previous is not None and valid and self._is_fresh(previous, fingerprint):
            return previous

        logger.debug("Generating fresh summary data")
        try:
            metrics = compute_fn()
        except Exception:
            if previous is None:
                raise
            logger.exception("Error generating summary, serving summary computed at %s", previous.computed_at)
            return previous.as_stale()

        summary = PortfolioSummary(metrics=metrics, fingerprint=fingerprint, computed_at=self._clock())
        with self._lock:
            self._summary = summary
            # An invalidation that arrived mid-computation keeps the cache EMPTY.
            self._valid = generation == self._generation
        self._persist(summary)
        return summary

    def _persist(self, summary: PortfolioSummary) -> None:
        if self._repository is None:
            return
        try:
            self._repository.save(summary, cache_key=self.cache_key)
        except SQLAlchemyError:
            logger.exception("Error saving summary cache")

    def _load_persisted(self) -> PortfolioSummary | None:
        if self._repository is None:
            return None
        try:
            summary = self._repository.get(self.cache_key)
        except (SQLAlchemyError, ValueError):
            logger.exception("Error loading summary cache")
            return None
        if summary is not None:
            logger.debug("Loaded persisted summary computed at %s", summary.computed_at)
        return summary


__all__ = ["ComputeFn", "FingerprintProvider", "SummaryCache", "SummaryState"]
