from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from .base_types import TransactionFingerprint
from .valuation import ValuationResult


class PortfolioSummary(BaseModel):
    """Memoized valuation tagged with the transaction-log fingerprint it was computed from.

    `stale` is only set on a summary handed out as a fallback after a failed
    recomputation.
    """

    model_config = ConfigDict(frozen=True)

    metrics: ValuationResult
    fingerprint: TransactionFingerprint
    computed_at: datetime
    stale: bool = False

    def as_stale(self) -> PortfolioSummary:
        return self.model_copy(update={"stale": True})
