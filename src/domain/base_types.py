from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Iterable, NewType

from pydantic import BaseModel, ConfigDict

Currency = NewType("Currency", str)
TransactionId = NewType("TransactionId", str)

BTC = Currency("BTC")


def currency(code: str) -> Currency:
    return Currency(code.strip().upper())


@dataclass(frozen=True)
class CurrencyPair:
    """A quote request: `base` priced in `quote`.

    A pair whose base is BTC is a spot price query, anything else is an FX query.
    """

    base: Currency
    quote: Currency

    @property
    def is_btc_price(self) -> bool:
        return self.base == BTC

    def __str__(self) -> str:
        return f"{self.base}-{self.quote}"


class TransactionType(StrEnum):
    BUY = "BUY"
    SELL = "SELL"


class Transaction(BaseModel):
    """Read-only view of a transaction owned by the transaction store."""

    model_config = ConfigDict(frozen=True)

    id: TransactionId
    type: TransactionType
    btc_amount: Decimal
    price_per_unit: Decimal
    currency: Currency
    fee: Decimal = Decimal("0")
    fee_currency: Currency
    timestamp: datetime


@dataclass(frozen=True)
class TransactionFingerprint:
    transaction_count: int
    latest_timestamp: datetime | None

    @classmethod
    def of(cls, transactions: Iterable[Transaction]) -> TransactionFingerprint:
        count = 0
        latest: datetime | None = None
        for tx in transactions:
            count += 1
            if latest is None or tx.timestamp > latest:
                latest = tx.timestamp
        return cls(transaction_count=count, latest_timestamp=latest)

    def is_superseded_by(self, current: TransactionFingerprint) -> bool:
        """True when `current` shows the log changed since this fingerprint was taken."""
        if current.transaction_count != self.transaction_count:
            return True
        if current.latest_timestamp is None:
            return False
        if self.latest_timestamp is None:
            return True
        return current.latest_timestamp > self.latest_timestamp
