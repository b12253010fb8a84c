"""
cryptotax/services/exchanges/kraken.py

Kraken adapter on ccxt.kraken. Trades come from fetch_my_trades (all pairs
in one call); deposits, withdrawals and staking rewards from the ledger.
Kraken's own asset codes (XXBT, ZUSD, DOT.S) are folded onto plain tickers.
"""

import logging
from typing import Dict, Iterator, List, Optional

from cryptotax.services.exchanges.base import BaseExchangeAdapter, RawTransaction, fee_of, ms_to_datetime, to_decimal

logger = logging.getLogger(__name__)

# Kraken's legacy X/Z-prefixed codes
KRAKEN_ASSET_CODES = {
    "XXBT": "BTC",
    "XBT": "BTC",
    "XETH": "ETH",
    "XXDG": "DOGE",
    "XDG": "DOGE",
    "XLTC": "LTC",
    "XXRP": "XRP",
    "XXLM": "XLM",
    "XXMR": "XMR",
    "XETC": "ETC",
    "XZEC": "ZEC",
    "XREP": "REP",
    "XMLN": "MLN",
    "ZUSD": "USD",
    "ZEUR": "EUR",
    "ZGBP": "GBP",
    "ZCAD": "CAD",
    "ZJPY": "JPY",
}

# Ledger entry types that become raw rows; trades come from fetch_my_trades
LEDGER_KINDS = {"deposit": "deposit", "withdrawal": "withdrawal", "staking": "staking"}


def normalize_asset(code: str) -> str:
    """XXBT -> BTC, ZUSD -> USD, DOT.S -> DOT, ETH2.S -> ETH2."""
    base = code.upper().split(".", 1)[0]
    return KRAKEN_ASSET_CODES.get(base, base)


class KrakenAdapter(BaseExchangeAdapter):
    name = "kraken"
    ccxt_id = "kraken"
    # Kraken pages trades and ledger entries 50 at a time
    page_limit = 50

    def normalize_asset(self, code: str) -> str:
        return normalize_asset(code)

    def _paginate(self, exchange, method: str, since: int, until: int, **kwargs) -> Iterator[Dict]:
        """Kraken returns history newest first, so the window is walked by result offset."""
        seen = set()
        offset = 0
        while True:
            params = {"end": until // 1000, "ofs": offset}
            page = self._call(exchange, method, since=since, limit=self.page_limit, params=params, **kwargs) or []
            for item in page:
                if item["id"] in seen or item["timestamp"] > until:
                    continue
                seen.add(item["id"])
                yield item
            if len(page) < self.page_limit:
                return
            offset += len(page)

    def _transfer_rows(self, exchange, since: int, until: int) -> List[RawTransaction]:
        rows = []
        for entry in self._paginate(exchange, "fetch_ledger", since, until):
            row = self._ledger_row(entry)
            if row is not None:
                rows.append(row)
        return rows

    def _ledger_row(self, entry: Dict) -> Optional[RawTransaction]:
        kind = LEDGER_KINDS.get((entry.get("info") or {}).get("type"))
        if kind is None:
            return None
        fee_asset, fee_amount = fee_of(entry)
        return RawTransaction(
            external_id=f"ledger:{entry['id']}",
            kind=kind,
            date=ms_to_datetime(entry["timestamp"]),
            base_asset=self.normalize_asset(entry["currency"]),
            base_amount=abs(to_decimal(entry["amount"])),
            fee_asset=self.normalize_asset(fee_asset or entry["currency"]) if fee_amount else None,
            fee_amount=fee_amount,
        )
