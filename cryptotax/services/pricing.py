"""
cryptotax/services/pricing.py

Fills in USD values for unpriced rows (crypto/crypto trade legs, deposits,
income) from CoinGecko's daily historical price.

CoinGecko history endpoint: /coins/{id}/history?date=DD-MM-YYYY
  -> market_data.current_price.usd
"""

import logging
import os
import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_DOWN
from typing import Dict, Optional, Tuple

import httpx
from sqlalchemy.orm import Session

from cryptotax.constants import HTTP_TIMEOUT_SECONDS, USD_QUANT
from cryptotax.models.transaction import Transaction
from cryptotax.utils.http import send_with_retry

logger = logging.getLogger(__name__)

COINGECKO_API_URL = os.getenv("COINGECKO_API_URL", "https://api.coingecko.com/api/v3")

# Ticker -> CoinGecko coin id
COINGECKO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "ADA": "cardano",
    "DOT": "polkadot",
    "DOGE": "dogecoin",
    "LTC": "litecoin",
    "XRP": "ripple",
    "XLM": "stellar",
    "BNB": "binancecoin",
    "AVAX": "avalanche-2",
    "MATIC": "matic-network",
    "LINK": "chainlink",
    "ATOM": "cosmos",
    "ETC": "ethereum-classic",
    "XMR": "monero",
    "ZEC": "zcash",
    "UNI": "uniswap",
}


class PriceSourceError(Exception):
    pass


class CoinGeckoPriceSource:
    """
    Day-close USD prices from CoinGecko, memoized per (asset, day). An
    httpx client built here is closed by close(); an injected one is left
    to its owner.
    """

    def __init__(self, client: Optional[httpx.Client] = None, base_url: str = COINGECKO_API_URL, sleep=time.sleep):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=HTTP_TIMEOUT_SECONDS)
        self._sleep = sleep
        self._cache: Dict[Tuple[str, date], Optional[Decimal]] = {}

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def historical_price(self, asset: str, day: date) -> Optional[Decimal]:
        """USD close for 'asset' on 'day', or None if CoinGecko does not know it."""
        key = (asset, day)
        if key in self._cache:
            return self._cache[key]

        coin_id = COINGECKO_IDS.get(asset.upper())
        if coin_id is None:
            logger.info(f"No CoinGecko id for {asset}; leaving unpriced")
            self._cache[key] = None
            return None

        url = f"{self.base_url}/coins/{coin_id}/history"
        params = {"date": day.strftime("%d-%m-%Y"), "localization": "false"}
        try:
            resp = send_with_retry(
                self._client, lambda: self._client.build_request("GET", url, params=params), sleep=self._sleep
            )
        except httpx.TransportError as e:
            raise PriceSourceError(f"CoinGecko unreachable: {e}") from e

        if resp.status_code == 404:
            self._cache[key] = None
            return None
        if resp.status_code != 200:
            raise PriceSourceError(f"CoinGecko returned {resp.status_code} for {asset} on {day}")

        usd = (resp.json().get("market_data") or {}).get("current_price", {}).get("usd")
        price = Decimal(str(usd)) if usd is not None else None
        self._cache[key] = price
        return price


@dataclass
class PricingReport:
    priced: int = 0
    unknown: int = 0


def _usd(value: Decimal) -> Decimal:
    return value.quantize(USD_QUANT, rounding=ROUND_HALF_DOWN)


def price_unpriced_transactions(db: Session, user_id: int, price_source) -> PricingReport:
    report = PricingReport()
    rows = (
        db.query(Transaction)
        .filter(Transaction.user_id == user_id, Transaction.value_usd.is_(None))
        .order_by(Transaction.id)
        .all()
    )
    for tx in rows:
        price = price_source.historical_price(tx.asset, tx.date.date())
        if price is None:
            report.unknown += 1
            continue
        tx.value_usd = _usd(price * tx.amount)
        if tx.fee and tx.fee_usd is None:
            tx.fee_usd = _usd(price * tx.fee)
        tx.is_priced = True
        report.priced += 1
    db.commit()
    logger.info(f"Pricing user={user_id}: priced={report.priced} unknown={report.unknown}")
    return report
