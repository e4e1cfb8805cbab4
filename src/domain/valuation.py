from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel

from .base_types import Currency, Transaction, TransactionId, TransactionType
from .pricing import RateProvider

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
DAYS_PER_YEAR = Decimal("365")
SATOSHIS_PER_BTC = Decimal("100000000")


class TransactionValuation(BaseModel):
    transaction_id: TransactionId
    type: TransactionType
    timestamp: datetime
    btc_amount: Decimal
    cost_basis: Decimal
    current_value: Decimal = ZERO
    unrealized_pnl: Decimal = ZERO
    proceeds: Decimal = ZERO
    realized_pnl: Decimal = ZERO


class ValuationResult(BaseModel):
    main_currency: Currency
    as_of: datetime
    current_btc_price: Decimal

    total_btc: Decimal
    total_satoshis: int
    portfolio_value: Decimal
    cost_basis: Decimal
    total_invested: Decimal
    total_received: Decimal

    avg_buy_price: Decimal
    avg_sell_price: Decimal

    unrealized_pnl: Decimal
    realized_pnl: Decimal
    total_pnl: Decimal
    roi: Decimal
    annualized_return: Decimal
    holding_days: int

    total_transactions: int
    total_buys: int
    total_sells: int
    winning_trades: int
    losing_trades: int
    win_rate: Decimal

    rates_estimated: bool = False
    transactions: list[TransactionValuation]


@dataclass
class _Holdings:
    btc: Decimal = ZERO
    cost: Decimal = ZERO

    @property
    def average_cost(self) -> Decimal:
        if self.btc <= 0:
            return ZERO
        return self.cost / self.btc


class ValuationEngine:
    """Turn a transaction list plus current rates into portfolio metrics.

    Sales are attributed cost with the average-cost method: the running
    weighted-average price per BTC (fees included) of everything held at the
    time of the sale. All currency conversion goes through the rate provider.
    """

    def __init__(self, *, rates: RateProvider, main_currency: Currency) -> None:
        self._rates = rates
        self._main_currency = main_currency

    def value(self, transactions: Iterable[Transaction], *, as_of: datetime) -> ValuationResult:
        ordered = sorted(transactions, key=lambda tx: tx.timestamp)
        current_price = self._rates.btc_price(self._main_currency)

        holdings = _Holdings()
        valuations: list[TransactionValuation] = []
        total_invested = ZERO
        total_received = ZERO
        realized_pnl = ZERO
        btc_bought = ZERO
        btc_sold = ZERO
        weighted_buy_sum = ZERO
        weighted_sell_sum = ZERO
        winning = 0
        losing = 0

        for tx in ordered:
            if tx.type == TransactionType.BUY:
                total_paid = self._to_main(tx.btc_amount * tx.price_per_unit, tx.currency)
                cost_basis = total_paid + self._to_main(tx.fee, tx.fee_currency)
                current_value = tx.btc_amount * current_price
                valuations.append(
                    TransactionValuation(
                        transaction_id=tx.id,
                        type=tx.type,
                        timestamp=tx.timestamp,
                        btc_amount=tx.btc_amount,
                        cost_basis=cost_basis,
                        current_value=current_value,
                        unrealized_pnl=current_value - cost_basis,
                    )
                )
                holdings.btc += tx.btc_amount
                holdings.cost += cost_basis
                total_invested += cost_basis
                btc_bought += tx.btc_amount
                weighted_buy_sum += total_paid
                continue

            # Only BTC actually held carries cost; the excess of an oversell is attributed none.
            covered = min(tx.btc_amount, holdings.btc)
            if covered < tx.btc_amount:
                logger.warning(
                    "Sell %s of %s BTC exceeds holdings of %s BTC", tx.id, tx.btc_amount, holdings.btc
                )
            attributed = covered * holdings.average_cost
            gross = self._to_main(tx.btc_amount * tx.price_per_unit, tx.currency)
            proceeds = gross - self._to_main(tx.fee, tx.fee_currency)
            pnl = proceeds - attributed
            valuations.append(
                TransactionValuation(
                    transaction_id=tx.id,
                    type=tx.type,
                    timestamp=tx.timestamp,
                    btc_amount=tx.btc_amount,
                    cost_basis=attributed,
                    proceeds=proceeds,
                    realized_pnl=pnl,
                )
            )
            if pnl > 0:
                winning += 1
            else:
                losing += 1

            holdings.btc -= covered
            holdings.cost -= attributed
            realized_pnl += pnl
            total_received += proceeds
            btc_sold += tx.btc_amount
            weighted_sell_sum += gross

        portfolio_value = holdings.btc * current_price
        unrealized_pnl = portfolio_value - holdings.cost
        total_pnl = unrealized_pnl + realized_pnl
        roi = total_pnl / total_invested * HUNDRED if total_invested != 0 else ZERO
        holding_days = (as_of - ordered[0].timestamp).days if ordered else 0
        sells = winning + losing

        return ValuationResult(
            main_currency=self._main_currency,
            as_of=as_of,
            current_btc_price=current_price,
            total_btc=holdings.btc,
            total_satoshis=int((holdings.btc * SATOSHIS_PER_BTC).to_integral_value()),
            portfolio_value=portfolio_value,
            cost_basis=holdings.cost,
            total_invested=total_invested,
            total_received=total_received,
            avg_buy_price=weighted_buy_sum / btc_bought if btc_bought > 0 else ZERO,
            avg_sell_price=weighted_sell_sum / btc_sold if btc_sold > 0 else ZERO,
            unrealized_pnl=unrealized_pnl,
            realized_pnl=realized_pnl,
            total_pnl=total_pnl,
            roi=roi,
            annualized_return=annualized_return(roi, holding_days),
            holding_days=holding_days,
            total_transactions=len(ordered),
            total_buys=len(ordered) - sells,
            total_sells=sells,
            winning_trades=winning,
            losing_trades=losing,
            win_rate=Decimal(winning) / Decimal(sells) * HUNDRED if sells else ZERO,
            rates_estimated=self._rates.estimated,
            transactions=valuations,
        )

    def _to_main(self, amount: Decimal, currency: Currency) -> Decimal:
        if amount == 0:
            return ZERO
        return amount * self._rates.rate(currency, self._main_currency)


def annualized_return(roi: Decimal, holding_days: int) -> Decimal:
    """Scale ROI linearly to a one-year period.

    Simple (non-compounding) approximation; returns 0 for holdings younger than a day.
    """
    if holding_days <= 0:
        return ZERO
    return roi * DAYS_PER_YEAR / Decimal(holding_days)


__all__ = [
    "TransactionValuation",
    "ValuationEngine",
    "ValuationResult",
    "annualized_return",
]
