"""
cryptotax/services/exchanges/base.py

Common ground for exchange adapters:
  - pydantic shapes every adapter speaks (credentials in, balances and
    RawTransaction rows out)
  - ExchangeAPIError / ExchangeAuthError
  - BaseExchangeAdapter: builds the ccxt client from per-call credentials,
    retries network failures and maps ccxt errors onto ours

Signing, nonces and vendor endpoints are ccxt's job. Credentials are passed
per call and never stored.
"""

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import ccxt
from pydantic import BaseModel, field_validator

from cryptotax.constants import HTTP_MAX_ATTEMPTS, HTTP_TIMEOUT_SECONDS, USD_LIKE_ASSETS
from cryptotax.utils.http import backoff_delay

logger = logging.getLogger(__name__)

RAW_KINDS = ("trade", "deposit", "withdrawal", "income", "staking", "fee")

class ExchangeAPIError(Exception):
    def __init__(self, message: str, *, exchange: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.exchange = exchange
        self.status_code = status_code

class ExchangeAuthError(ExchangeAPIError):
    """The exchange rejected the API key or signature."""

# -------------------------------------------------------------------------
# Shapes
# -------------------------------------------------------------------------
class ExchangeCredentials(BaseModel):
    api_key: str
    api_secret: str
    passphrase: Optional[str] = None

    def __repr__(self) -> str:
        return f"ExchangeCredentials(api_key='{self.api_key[:4]}...')"

class Balance(BaseModel):
    id: str
    currency: str
    balance: Decimal
    available: Decimal
    hold: Decimal = Decimal("0")

class RawTransaction(BaseModel):
    """
    Exchange-neutral row. For trades, 'base' is the asset bought or sold and
    'quote' the asset paid or received. Amounts are positive.
    """

    external_id: str
    kind: str
    date: datetime
    base_asset: str
    base_amount: Decimal
    side: Optional[str] = None
    quote_asset: Optional[str] = None
    quote_amount: Optional[Decimal] = None
    fee_asset: Optional[str] = None
    fee_amount: Optional[Decimal] = None
    value_usd: Optional[Decimal] = None
    tx_hash: Optional[str] = None

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, value: str) -> str:
        if value not in RAW_KINDS:
            raise ValueError(f"Unknown raw transaction kind '{value}'")
        return value

    @field_validator("side")
    @classmethod
    def validate_side(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ("buy", "sell"):
            raise ValueError(f"Trade side must be 'buy' or 'sell', got '{value}'")
        return value

    @field_validator("date")
    @classmethod
    def force_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("base_asset", "quote_asset", "fee_asset")
    @classmethod
    def upper_asset(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value

# -------------------------------------------------------------------------
# Adapter base
# -------------------------------------------------------------------------
class BaseExchangeAdapter:
    name = "base"
    # attribute of the ccxt module, e.g. ccxt.binance
    ccxt_id = ""
    page_limit = 500

    def __init__(self, sleep: Callable[[float], None] = time.sleep, options: Optional[Dict] = None):
        self._sleep = sleep
        self._options = dict(options or {})
        self._exchanges = []

    def close(self) -> None:
        for exchange in self._exchanges:
            session = getattr(exchange, "session", None)
            if session is not None:
                session.close()
        self._exchanges = []

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # -- ccxt plumbing ----------------------------------------------------
    def connect(self, credentials: ExchangeCredentials):
        """A ccxt exchange bound to these credentials, closed with the adapter."""
        config = {
            "apiKey": credentials.api_key,
            "secret": credentials.api_secret,
            "enableRateLimit": True,
            "timeout": int(HTTP_TIMEOUT_SECONDS * 1000),
            **self._options,
        }
        if credentials.passphrase:
            config["password"] = credentials.passphrase
        exchange = getattr(ccxt, self.ccxt_id)(config)
        self._exchanges.append(exchange)
        return exchange

    def _call(self, exchange, method: str, *args, **kwargs):
        """
        exchange.<method>(...) with up to HTTP_MAX_ATTEMPTS tries on network
        errors (timeouts, 429, maintenance). Rejected keys become
        ExchangeAuthError, every other ccxt failure ExchangeAPIError.
        """
        for attempt in range(1, HTTP_MAX_ATTEMPTS + 1):
            try:
                return getattr(exchange, method)(*args, **kwargs)
            except ccxt.AuthenticationError as e:
                raise ExchangeAuthError(f"{self.name}: {e}", exchange=self.name) from e
            except ccxt.NetworkError as e:
                if attempt == HTTP_MAX_ATTEMPTS:
                    raise ExchangeAPIError(f"{self.name}: network error: {e}", exchange=self.name) from e
                logger.warning(f"{self.name}: {method} failed (attempt {attempt}/{HTTP_MAX_ATTEMPTS}): {e}")
                self._sleep(backoff_delay(attempt))
            except ccxt.BaseError as e:
                raise ExchangeAPIError(f"{self.name}: {e}", exchange=self.name) from e

    def _paginate(self, exchange, method: str, since: int, until: int, **kwargs) -> Iterator[Dict]:
        """
        Walk a 'since'-paged ccxt history call up to 'until' (ms). Each page
        starts at the last timestamp seen, so rows sharing a timestamp across
        a page boundary are not skipped; ids already yielded are dropped.
        A short page ends the walk.
        """
        seen = set()
        cursor = since
        while True:
            page = self._call(exchange, method, since=cursor, limit=self.page_limit, **kwargs) or []
            for item in page:
                if item["id"] in seen:
                    continue
                if item["timestamp"] > until:
                    return
                seen.add(item["id"])
                yield item
            if len(page) < self.page_limit:
                return
            last = page[-1]["timestamp"]
            # a full page on one timestamp would come back unchanged
            cursor = last if last > cursor else cursor + 1

    # -- interface --------------------------------------------------------
    def test_connection(self, credentials: ExchangeCredentials) -> bool:
        """
        False when the exchange rejects the credentials. Any other failure
        (outage, bad response) propagates as ExchangeAPIError.
        """
        try:
            self._authenticated_ping(credentials)
        except ExchangeAuthError as e:
            logger.info(f"{self.name}: credentials rejected: {e}")
            return False
        return True

    def _authenticated_ping(self, credentials: ExchangeCredentials) -> None:
        self._call(self.connect(credentials), "fetch_balance")

    def sync_accounts(self, credentials: ExchangeCredentials) -> List[Balance]:
        balances = self._balances(self._call(self.connect(credentials), "fetch_balance"))
        logger.info(f"{self.name}: {len(balances)} non-zero balances")
        return balances

    def sync_transactions(
        self,
        credentials: ExchangeCredentials,
        start: datetime,
        end: datetime,
    ) -> List[RawTransaction]:
        exchange = self.connect(credentials)
        since, until = to_ms(start), to_ms(end)

        rows: List[RawTransaction] = []
        for symbol in self._trade_symbols(exchange):
            for trade in self._paginate(exchange, "fetch_my_trades", since, until, symbol=symbol):
                rows.append(self._trade_row(trade))
        rows.extend(self._transfer_rows(exchange, since, until))

        rows.sort(key=lambda r: (r.date, r.external_id))
        logger.info(f"{self.name}: {len(rows)} raw transactions between {start.date()} and {end.date()}")
        return rows

    # -- hooks ------------------------------------------------------------
    def normalize_asset(self, code: str) -> str:
        return code.upper()

    def _trade_symbols(self, exchange) -> List[Optional[str]]:
        """Symbols to pass to fetch_my_trades; [None] means all at once."""
        return [None]

    def _transfer_rows(self, exchange, since: int, until: int) -> List[RawTransaction]:
        raise NotImplementedError

    # -- ccxt structures -> our shapes ------------------------------------
    def _balances(self, balance: Dict) -> List[Balance]:
        free = balance.get("free") or {}
        used = balance.get("used") or {}
        rows = []
        for code, total in sorted((balance.get("total") or {}).items()):
            total = to_decimal(total)
            if not total or total <= 0:
                continue
            hold = to_decimal(used.get(code)) or Decimal("0")
            available = to_decimal(free.get(code))
            rows.append(Balance(
                id=code,
                currency=self.normalize_asset(code),
                balance=total,
                available=available if available is not None else total - hold,
                hold=hold,
            ))
        return rows

    def _trade_row(self, trade: Dict) -> RawTransaction:
        base, quote = split_symbol(trade["symbol"])
        amount = to_decimal(trade["amount"])
        cost = to_decimal(trade.get("cost"))
        if cost is None:
            cost = amount * to_decimal(trade["price"])
        fee_asset, fee_amount = fee_of(trade)
        return RawTransaction(
            external_id=f"trade:{trade['symbol']}:{trade['id']}",
            kind="trade",
            side=trade["side"],
            date=ms_to_datetime(trade["timestamp"]),
            base_asset=self.normalize_asset(base),
            base_amount=amount,
            quote_asset=self.normalize_asset(quote),
            quote_amount=cost,
            fee_asset=self.normalize_asset(fee_asset) if fee_asset else None,
            fee_amount=fee_amount,
        )

    def _transaction_row(self, kind: str, tx: Dict) -> RawTransaction:
        """ccxt deposit / withdrawal structure."""
        fee_asset, fee_amount = fee_of(tx)
        return RawTransaction(
            external_id=f"{kind}:{tx.get('id') or tx.get('txid')}",
            kind=kind,
            date=ms_to_datetime(tx["timestamp"]),
            base_asset=self.normalize_asset(tx["currency"]),
            base_amount=abs(to_decimal(tx["amount"])),
            fee_asset=self.normalize_asset(fee_asset) if fee_asset else None,
            fee_amount=fee_amount,
            tx_hash=tx.get("txid") or None,
        )

# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def to_decimal(value) -> Optional[Decimal]:
    """ccxt hands out floats; go through str() so 0.1 stays 0.1."""
    if value is None:
        return None
    return Decimal(str(value))

def to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)

def ms_to_datetime(ms) -> datetime:
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)

def split_symbol(symbol: str) -> Tuple[str, str]:
    """'BTC/USDT' -> ('BTC', 'USDT'); a ':SETTLE' suffix is dropped."""
    base, _, quote = symbol.partition("/")
    return base, quote.split(":", 1)[0]

def fee_of(item: Dict) -> Tuple[Optional[str], Optional[Decimal]]:
    fee = item.get("fee") or {}
    cost = to_decimal(fee.get("cost"))
    if not cost:
        return None, None
    return fee.get("currency"), cost

def is_usd_quoted(market: Dict) -> bool:
    return market.get("quote") in USD_LIKE_ASSETS
