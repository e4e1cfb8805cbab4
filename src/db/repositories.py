from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session, sessionmaker

from db import models
from domain.base_types import TransactionFingerprint
from domain.summary import PortfolioSummary
from domain.valuation import ValuationResult


class PortfolioSummaryRepository:
    """Stores the last computed summary per cache key.

    Opens a short-lived session per call so it can be used from the background
    refresh thread as well as from request threads.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def save(self, summary: PortfolioSummary, *, cache_key: str = "default") -> None:
        with self._session_factory() as session:
            orm_summary = session.get(models.PortfolioSummaryOrm, cache_key)
            if orm_summary is None:
                orm_summary = models.PortfolioSummaryOrm(cache_key=cache_key)
                session.add(orm_summary)
            orm_summary.metrics = summary.metrics.model_dump_json()
            orm_summary.transaction_count = summary.fingerprint.transaction_count
            orm_summary.latest_transaction_timestamp = summary.fingerprint.latest_timestamp
            orm_summary.computed_at = summary.computed_at
            session.commit()

    def get(self, cache_key: str = "default") -> PortfolioSummary | None:
        with self._session_factory() as session:
            orm_summary = session.get(models.PortfolioSummaryOrm, cache_key)
            if orm_summary is None:
                return None
            return self._to_domain(orm_summary)

    def delete(self, cache_key: str = "default") -> None:
        with self._session_factory() as session:
            orm_summary = session.get(models.PortfolioSummaryOrm, cache_key)
            if orm_summary is not None:
                session.delete(orm_summary)
                session.commit()

    @staticmethod
    def _to_domain(orm_summary: models.PortfolioSummaryOrm) -> PortfolioSummary:
        return PortfolioSummary(
            metrics=ValuationResult.model_validate_json(orm_summary.metrics),
            fingerprint=TransactionFingerprint(
                transaction_count=orm_summary.transaction_count,
                latest_timestamp=_as_utc(orm_summary.latest_transaction_timestamp),
            ),
            computed_at=_as_utc(orm_summary.computed_at),
        )


def _as_utc(timestamp: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back.
    if timestamp is not None and timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp
