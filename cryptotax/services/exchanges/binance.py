"""
cryptotax/services/exchanges/binance.py

Binance spot adapter on ccxt.binance.

sync_transactions order of calls:
  1) load_markets + fetch_balance  -> USD-quoted spot symbols for held assets
  2) fetch_my_trades               -> per symbol, paged by 'since'
  3) fetch_deposits / fetch_withdrawals in 90-day windows (Binance rejects
     wider ranges on the capital history endpoints)
"""

import logging
from datetime import timedelta
from typing import List

from cryptotax.constants import USD_LIKE_ASSETS
from cryptotax.services.exchanges.base import (
    BaseExchangeAdapter,
    RawTransaction,
    is_usd_quoted,
    to_decimal,
)

logger = logging.getLogger(__name__)

HISTORY_WINDOW_MS = int(timedelta(days=90).total_seconds() * 1000)


class BinanceAdapter(BaseExchangeAdapter):
    name = "binance"
    ccxt_id = "binance"
    page_limit = 1000

    def _trade_symbols(self, exchange) -> List[str]:
        markets = self._call(exchange, "load_markets") or {}
        totals = (self._call(exchange, "fetch_balance") or {}).get("total") or {}
        held = {
            code for code, amount in totals.items()
            if code not in USD_LIKE_ASSETS and (to_decimal(amount) or 0) > 0
        }
        symbols = sorted(
            symbol for symbol, market in markets.items()
            if market.get("spot", True) and market.get("base") in held and is_usd_quoted(market)
        )
        logger.debug(f"binance: trade symbols {symbols}")
        return symbols

    def _transfer_rows(self, exchange, since: int, until: int) -> List[RawTransaction]:
        rows = []
        for window_start, window_end in _windows(since, until):
            for kind, method in (("deposit", "fetch_deposits"), ("withdrawal", "fetch_withdrawals")):
                page = self._call(exchange, method, since=window_start, params={"until": window_end}) or []
                for tx in page:
                    # pending / failed transfers are picked up by a later sync
                    if tx.get("status") != "ok":
                        continue
                    rows.append(self._transaction_row(kind, tx))
        return rows


def _windows(since: int, until: int):
    cursor = since
    while cursor < until:
        window_end = min(cursor + HISTORY_WINDOW_MS, until)
        yield cursor, window_end
        cursor = window_end
