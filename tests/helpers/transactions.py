from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from itertools import count
from typing import Sequence

from domain.base_types import (
    Currency,
    Transaction,
    TransactionFingerprint,
    TransactionId,
    TransactionType,
)
from tests.helpers.time_utils import DEFAULT_NOW

_TX_COUNTER = count()


def make_tx(
    *,
    type: TransactionType = TransactionType.BUY,
    btc_amount: str = "0.1",
    price_per_unit: str = "50000",
    currency: str = "USD",
    fee: str = "0",
    fee_currency: str | None = None,
    timestamp: datetime = DEFAULT_NOW,
) -> Transaction:
    return Transaction(
        id=TransactionId(f"tx-{next(_TX_COUNTER)}"),
        type=type,
        btc_amount=Decimal(btc_amount),
        price_per_unit=Decimal(price_per_unit),
        currency=Currency(currency),
        fee=Decimal(fee),
        fee_currency=Currency(fee_currency or currency),
        timestamp=timestamp,
    )


class InMemoryTransactions:
    """Minimal stand-in for the transaction store collaborator."""

    def __init__(self, transactions: Sequence[Transaction] = ()) -> None:
        self.transactions = list(transactions)
        self.list_calls = 0

    def list_transactions(self) -> list[Transaction]:
        self.list_calls += 1
        return list(self.transactions)

    def fingerprint(self) -> TransactionFingerprint:
        return TransactionFingerprint.of(self.transactions)

    def add(self, transaction: Transaction) -> None:
        self.transactions.append(transaction)
