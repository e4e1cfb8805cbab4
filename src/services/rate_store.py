from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

from domain.base_types import Currency, currency
from domain.rates import PartialRates, RateSnapshot, to_rate

logger = logging.getLogger(__name__)

# Flat fields written by older versions of the cache file, mapped onto the EUR row.
_LEGACY_EUR_FIELDS: dict[str, Currency] = {
    "eurUsd": Currency("USD"),
    "eurPln": Currency("PLN"),
    "eurGbp": Currency("GBP"),
    "eurJpy": Currency("JPY"),
    "eurChf": Currency("CHF"),
}
_EUR = Currency("EUR")
_USD = Currency("USD")


class PersistenceError(Exception):
    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


@dataclass(frozen=True)
class RateStatus:
    timestamp: datetime | None
    seconds_ago: int | None

    @property
    def minutes_ago(self) -> int | None:
        if self.seconds_ago is None:
            return None
        return self.seconds_ago // 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateStore:
    """Holds the canonical rate snapshot and mirrors it to a JSON document.

    Readers get the current snapshot reference without locking. Writers build a
    new snapshot and swap the reference, so readers never see a half-merged state.
    Durability is best effort: I/O failures are logged and never propagate.
    """

    def __init__(self, *, path: Path | None = None, clock: Callable[[], datetime] = _utcnow) -> None:
        self.path = path
        self._clock = clock
        self._write_lock = threading.Lock()
        self._snapshot = RateSnapshot()

    def get(self) -> tuple[RateSnapshot, timedelta | None]:
        snapshot = self._snapshot
        if snapshot.timestamp is None:
            return snapshot, None
        return snapshot, self._clock() - snapshot.timestamp

    def update(self, partial: PartialRates) -> RateSnapshot:
        with self._write_lock:
            snapshot = self._snapshot.merged(partial, timestamp=self._clock())
            self._snapshot = snapshot
        self.save(snapshot)
        return snapshot

    def status(self) -> RateStatus:
        snapshot, age = self.get()
        if age is None:
            return RateStatus(timestamp=None, seconds_ago=None)
        return RateStatus(timestamp=snapshot.timestamp, seconds_ago=int(age.total_seconds()))

    def load(self) -> RateSnapshot:
        snapshot = RateSnapshot()
        if self.path is not None:
            try:
                snapshot = self._read(self.path)
            except PersistenceError as exc:
                logger.warning("Ignoring rate cache at %s: %s", self.path, exc)

        with self._write_lock:
            self._snapshot = snapshot
        if not snapshot.is_empty:
            logger.info("Loaded rate cache from %s (timestamp %s)", self.path, snapshot.timestamp)
        return snapshot

    def save(self, snapshot: RateSnapshot | None = None) -> bool:
        if self.path is None:
            return False
        target = snapshot or self._snapshot
        try:
            self._write(self.path, target)
        except PersistenceError:
            logger.exception("Error saving rate cache to %s", self.path)
            return False
        logger.debug("Saved rate cache to %s", self.path)
        return True

    @staticmethod
    def _read(path: Path) -> RateSnapshot:
        if not path.exists():
            return RateSnapshot()
        try:
            with path.open("r", encoding="utf-8") as handle:
                document = json.load(handle)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"unreadable rate cache: {exc}", path=path) from exc
        if not isinstance(document, dict):
            raise PersistenceError("rate cache is not a JSON object", path=path)
        return parse_snapshot_document(document)

    @staticmethod
    def _write(path: Path, snapshot: RateSnapshot) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(snapshot_to_document(snapshot), handle, indent=2)
            tmp_path.replace(path)
        except OSError as exc:
            raise PersistenceError(f"cannot write rate cache: {exc}", path=path) from exc


def snapshot_to_document(snapshot: RateSnapshot) -> dict[str, Any]:
    return {
        "btcPrice": {code: float(price) for code, price in sorted(snapshot.btc_price.items())},
        "rateMatrix": {
            base: {quote: float(rate) for quote, rate in sorted(row.items())}
            for base, row in sorted(snapshot.rate_matrix.items())
        },
        "timestamp": snapshot.timestamp.isoformat() if snapshot.timestamp else None,
    }


def parse_snapshot_document(document: dict[str, Any]) -> RateSnapshot:
    """Build a snapshot from a cache document, upgrading the legacy flat-field layout."""
    btc_price: dict[Currency, Decimal] = {}
    matrix: dict[Currency, dict[Currency, Decimal]] = {}

    _migrate_legacy_fields(document, btc_price, matrix)

    for code, value in _as_dict(document.get("btcPrice")).items():
        price = to_rate(value)
        if price is not None:
            btc_price[currency(str(code))] = price

    for matrix_key in ("exchangeRates", "rateMatrix"):
        for base_raw, row in _as_dict(document.get(matrix_key)).items():
            base = currency(str(base_raw))
            for quote_raw, value in _as_dict(row).items():
                quote = currency(str(quote_raw))
                rate = to_rate(value)
                if rate is not None and quote != base:
                    matrix.setdefault(base, {})[quote] = rate

    return RateSnapshot.build(
        rate_matrix=matrix,
        btc_price=btc_price,
        timestamp=_parse_timestamp(document.get("timestamp")),
    )


def _migrate_legacy_fields(
    document: dict[str, Any],
    btc_price: dict[Currency, Decimal],
    matrix: dict[Currency, dict[Currency, Decimal]],
) -> None:
    eur_row: dict[Currency, Decimal] = {}
    for field_name, quote in _LEGACY_EUR_FIELDS.items():
        rate = to_rate(document.get(field_name))
        if rate is not None:
            eur_row[quote] = rate
    if eur_row:
        matrix[_EUR] = eur_row

    price_eur = to_rate(document.get("priceEUR")) or to_rate(document.get("price"))
    if price_eur is not None:
        btc_price[_EUR] = price_eur

    price_usd = to_rate(document.get("priceUSD"))
    if price_usd is None and price_eur is not None and _USD in eur_row:
        price_usd = price_eur * eur_row[_USD]
    if price_usd is not None:
        btc_price[_USD] = price_usd


def _as_dict(value: Any) -> dict[Any, Any]:
    return value if isinstance(value, dict) else {}


def _parse_timestamp(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparsable rate cache timestamp %r", raw)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


__all__ = [
    "PersistenceError",
    "RateStatus",
    "RateStore",
    "parse_snapshot_document",
    "snapshot_to_document",
]
