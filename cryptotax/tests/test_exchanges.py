"""
Exchange adapters over a mocked ccxt exchange: error mapping, retries,
pagination and the RawTransaction rows they produce.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import ccxt
import pytest

from cryptotax.services.exchanges.base import ExchangeAPIError, ExchangeAuthError, ExchangeCredentials
from cryptotax.services.exchanges.binance import BinanceAdapter
from cryptotax.services.exchanges.factory import get_exchange_adapter
from cryptotax.services.exchanges.kraken import KrakenAdapter, normalize_asset
from cryptotax.utils.http import backoff_delay

CREDS = ExchangeCredentials(api_key="key-123", api_secret="secret-456")
START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 3, 1, tzinfo=timezone.utc)


def ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def day(n: int) -> int:
    """ms timestamp of 2024-01-<n> 12:00 UTC"""
    return ms(datetime(2024, 1, n, 12, tzinfo=timezone.utc))


def since_filtered(items):
    """fetch_* stand-in that honours since/limit like ccxt does."""
    def fetch(symbol=None, since=None, limit=None, params=None):
        page = [item for item in items if since is None or item["timestamp"] >= since]
        return page[:limit] if limit else page
    return fetch


def trade(trade_id, ts, side, amount, price, fee_cost, fee_currency, symbol="BTC/USDT"):
    return {
        "id": trade_id, "timestamp": ts, "symbol": symbol, "side": side,
        "amount": amount, "price": price, "cost": round(amount * price, 8),
        "fee": {"cost": fee_cost, "currency": fee_currency},
    }


BALANCE = {
    "free": {"BTC": 0.5, "USDT": 100.0, "ETH": 0.0},
    "used": {"BTC": 0.1, "USDT": 0.0, "ETH": 0.0},
    "total": {"BTC": 0.6, "USDT": 100.0, "ETH": 0.0},
}

MARKETS = {
    "BTC/USDT": {"symbol": "BTC/USDT", "base": "BTC", "quote": "USDT", "spot": True},
    "ETH/USDT": {"symbol": "ETH/USDT", "base": "ETH", "quote": "USDT", "spot": True},
    "BTC/EUR": {"symbol": "BTC/EUR", "base": "BTC", "quote": "EUR", "spot": True},
}


# ---------------------------------------------------------
# ccxt plumbing
# ---------------------------------------------------------
@patch("ccxt.binance")
def test_connect_builds_ccxt_exchange_from_credentials(mock_cls):
    mock_cls.return_value = MagicMock()
    adapter = BinanceAdapter()

    adapter.connect(ExchangeCredentials(api_key="k", api_secret="s", passphrase="p"))

    config = mock_cls.call_args[0][0]
    assert config["apiKey"] == "k"
    assert config["secret"] == "s"
    assert config["password"] == "p"
    assert config["enableRateLimit"] is True


@patch("ccxt.kraken")
def test_connect_omits_empty_passphrase(mock_cls):
    mock_cls.return_value = MagicMock()
    KrakenAdapter().connect(CREDS)
    assert "password" not in mock_cls.call_args[0][0]


@patch("ccxt.binance")
def test_rejected_key_fails_connection_test(mock_cls):
    mock_ex = MagicMock()
    mock_ex.fetch_balance.side_effect = ccxt.AuthenticationError("Invalid API-key, IP, or permissions")
    mock_cls.return_value = mock_ex

    assert BinanceAdapter().test_connection(CREDS) is False


@patch("ccxt.binance")
def test_rejected_key_raises_auth_error_on_sync(mock_cls):
    mock_ex = MagicMock()
    mock_ex.fetch_balance.side_effect = ccxt.AuthenticationError("Invalid API-key")
    mock_cls.return_value = mock_ex

    with pytest.raises(ExchangeAuthError):
        BinanceAdapter().sync_accounts(CREDS)


@patch("ccxt.kraken")
def test_network_error_is_retried(mock_cls):
    mock_ex = MagicMock()
    mock_ex.fetch_balance.side_effect = [ccxt.RequestTimeout("timed out"), {"total": {}}]
    mock_cls.return_value = mock_ex
    sleeps = []

    assert KrakenAdapter(sleep=sleeps.append).test_connection(CREDS) is True
    assert sleeps == [backoff_delay(1)]


@patch("ccxt.binance")
def test_persistent_outage_raises_api_error(mock_cls):
    mock_ex = MagicMock()
    mock_ex.fetch_balance.side_effect = ccxt.ExchangeNotAvailable("maintenance")
    mock_cls.return_value = mock_ex
    sleeps = []

    with pytest.raises(ExchangeAPIError) as exc_info:
        BinanceAdapter(sleep=sleeps.append).test_connection(CREDS)

    assert not isinstance(exc_info.value, ExchangeAuthError)
    assert exc_info.value.exchange == "binance"
    assert mock_ex.fetch_balance.call_count == 3
    assert sleeps == [backoff_delay(1), backoff_delay(2)]


@patch("ccxt.binance")
def test_exchange_error_is_not_retried(mock_cls):
    mock_ex = MagicMock()
    mock_ex.fetch_balance.side_effect = ccxt.ExchangeError("bad symbol")
    mock_cls.return_value = mock_ex
    sleeps = []

    with pytest.raises(ExchangeAPIError) as exc_info:
        BinanceAdapter(sleep=sleeps.append).sync_accounts(CREDS)

    assert not isinstance(exc_info.value, ExchangeAuthError)
    assert mock_ex.fetch_balance.call_count == 1
    assert sleeps == []


@patch("ccxt.binance")
def test_close_releases_ccxt_session(mock_cls):
    mock_ex = MagicMock()
    mock_cls.return_value = mock_ex

    with BinanceAdapter() as adapter:
        adapter.connect(CREDS)

    mock_ex.session.close.assert_called_once()


# ---------------------------------------------------------
# Binance
# ---------------------------------------------------------
@patch("ccxt.binance")
def test_balances_skip_empty_assets(mock_cls):
    mock_ex = MagicMock()
    mock_ex.fetch_balance.return_value = BALANCE
    mock_cls.return_value = mock_ex

    balances = BinanceAdapter().sync_accounts(CREDS)

    assert [b.currency for b in balances] == ["BTC", "USDT"]
    btc = balances[0]
    assert btc.balance == Decimal("0.6")
    assert btc.available == Decimal("0.5")
    assert btc.hold == Decimal("0.1")


@patch("ccxt.binance")
def test_binance_sync_transactions(mock_cls):
    mock_ex = MagicMock()
    mock_ex.load_markets.return_value = MARKETS
    mock_ex.fetch_balance.return_value = BALANCE
    mock_ex.fetch_my_trades.side_effect = since_filtered([
        trade("11", day(5), "buy", 0.1, 40000.0, 0.0001, "BTC"),
        trade("12", ms(datetime(2024, 2, 5, tzinfo=timezone.utc)), "sell", 0.05, 50000.0, 2.5, "USDT"),
    ])
    mock_ex.fetch_deposits.return_value = [
        {"id": "d1", "txid": "0xabc", "timestamp": day(2), "currency": "BTC",
         "amount": 0.2, "status": "ok", "fee": None},
        {"id": "d2", "txid": "0xdef", "timestamp": day(3), "currency": "BTC",
         "amount": 9.0, "status": "pending", "fee": None},
    ]
    mock_ex.fetch_withdrawals.return_value = [
        {"id": "w1", "txid": "0x123", "timestamp": ms(datetime(2024, 2, 10, 10, tzinfo=timezone.utc)),
         "currency": "BTC", "amount": 0.05, "status": "ok", "fee": {"cost": 0.0005, "currency": "BTC"}},
    ]
    mock_cls.return_value = mock_ex

    rows = BinanceAdapter().sync_transactions(CREDS, START, END)

    # only USD-quoted markets of held assets are walked
    assert {c.kwargs["symbol"] for c in mock_ex.fetch_my_trades.call_args_list} == {"BTC/USDT"}
    assert [r.external_id for r in rows] == [
        "deposit:d1", "trade:BTC/USDT:11", "trade:BTC/USDT:12", "withdrawal:w1",
    ]

    deposit, buy, sell, withdrawal = rows
    assert deposit.kind == "deposit"
    assert deposit.base_amount == Decimal("0.2")
    assert deposit.tx_hash == "0xabc"
    assert deposit.fee_amount is None

    assert buy.side == "buy"
    assert buy.base_asset == "BTC"
    assert buy.quote_asset == "USDT"
    assert buy.quote_amount == Decimal("4000")
    assert (buy.fee_asset, buy.fee_amount) == ("BTC", Decimal("0.0001"))
    assert buy.date == datetime(2024, 1, 5, 12, tzinfo=timezone.utc)

    assert sell.side == "sell"
    assert (sell.fee_asset, sell.fee_amount) == ("USDT", Decimal("2.5"))

    assert withdrawal.base_amount == Decimal("0.05")
    assert (withdrawal.fee_asset, withdrawal.fee_amount) == ("BTC", Decimal("0.0005"))
    assert withdrawal.tx_hash == "0x123"


@patch("ccxt.binance")
def test_binance_transfers_use_90_day_windows(mock_cls):
    mock_ex = MagicMock()
    mock_ex.load_markets.return_value = {}
    mock_ex.fetch_balance.return_value = {"total": {}}
    mock_ex.fetch_deposits.return_value = []
    mock_ex.fetch_withdrawals.return_value = []
    mock_cls.return_value = mock_ex

    BinanceAdapter().sync_transactions(CREDS, START, START + timedelta(days=182))

    calls = mock_ex.fetch_deposits.call_args_list
    assert len(calls) == 3
    assert calls[0].kwargs["since"] == ms(START)
    assert calls[0].kwargs["params"] == {"until": ms(START + timedelta(days=90))}
    assert calls[2].kwargs["params"] == {"until": ms(START + timedelta(days=182))}
    assert mock_ex.fetch_withdrawals.call_count == 3
    mock_ex.fetch_my_trades.assert_not_called()


@patch("ccxt.binance")
def test_trade_pagination_keeps_rows_sharing_a_timestamp(mock_cls):
    mock_ex = MagicMock()
    mock_ex.load_markets.return_value = MARKETS
    mock_ex.fetch_balance.return_value = BALANCE
    mock_ex.fetch_my_trades.side_effect = since_filtered([
        trade("1", day(5), "buy", 0.1, 40000.0, 0, "BTC"),
        trade("2", day(6), "buy", 0.1, 40000.0, 0, "BTC"),
        trade("3", day(6), "buy", 0.1, 40000.0, 0, "BTC"),
        trade("4", day(7), "sell", 0.1, 45000.0, 0, "USDT"),
    ])
    mock_ex.fetch_deposits.return_value = []
    mock_ex.fetch_withdrawals.return_value = []
    mock_cls.return_value = mock_ex

    adapter = BinanceAdapter()
    adapter.page_limit = 2
    rows = adapter.sync_transactions(CREDS, START, END)

    assert [r.external_id for r in rows] == [f"trade:BTC/USDT:{n}" for n in (1, 2, 3, 4)]
    assert [c.kwargs["since"] for c in mock_ex.fetch_my_trades.call_args_list] == [
        ms(START), day(6), day(6) + 1,
    ]


@patch("ccxt.binance")
def test_trades_after_window_end_are_dropped(mock_cls):
    mock_ex = MagicMock()
    mock_ex.load_markets.return_value = MARKETS
    mock_ex.fetch_balance.return_value = BALANCE
    mock_ex.fetch_my_trades.side_effect = since_filtered([
        trade("1", day(5), "buy", 0.1, 40000.0, 0, "BTC"),
        trade("2", ms(END) + 1, "sell", 0.1, 45000.0, 0, "USDT"),
    ])
    mock_ex.fetch_deposits.return_value = []
    mock_ex.fetch_withdrawals.return_value = []
    mock_cls.return_value = mock_ex

    rows = BinanceAdapter().sync_transactions(CREDS, START, END)

    assert [r.external_id for r in rows] == ["trade:BTC/USDT:1"]


# ---------------------------------------------------------
# Kraken
# ---------------------------------------------------------
def ledger(entry_id, ts, kind, currency, amount, fee=0.0):
    return {
        "id": entry_id, "timestamp": ts, "currency": currency, "amount": amount,
        "fee": {"cost": fee, "currency": currency}, "info": {"type": kind},
    }


@patch("ccxt.kraken")
def test_kraken_sync_transactions(mock_cls):
    mock_ex = MagicMock()
    mock_ex.fetch_my_trades.side_effect = since_filtered([
        trade("T1", day(10), "buy", 0.1, 42000.0, 6.72, "USD", symbol="BTC/USD"),
    ])
    mock_ex.fetch_ledger.side_effect = since_filtered([
        ledger("L1", day(3), "deposit", "USD", 5000.0),
        ledger("L2", day(10), "trade", "BTC", 0.1),
        ledger("L3", day(15), "staking", "DOT.S", 0.5),
        ledger("L4", ms(datetime(2024, 2, 1, tzinfo=timezone.utc)), "withdrawal", "XXBT", -0.05, fee=0.0001),
    ])
    mock_cls.return_value = mock_ex

    rows = KrakenAdapter().sync_transactions(CREDS, START, END)

    # one call covers every pair
    assert mock_ex.fetch_my_trades.call_args.kwargs["symbol"] is None
    assert [(r.external_id, r.kind) for r in rows] == [
        ("ledger:L1", "deposit"),
        ("trade:BTC/USD:T1", "trade"),
        ("ledger:L3", "staking"),
        ("ledger:L4", "withdrawal"),
    ]

    deposit, buy, staking, withdrawal = rows
    assert deposit.fee_amount is None
    assert buy.quote_amount == Decimal("4200")
    assert (buy.fee_asset, buy.fee_amount) == ("USD", Decimal("6.72"))
    assert staking.base_asset == "DOT"
    assert withdrawal.base_asset == "BTC"
    assert withdrawal.base_amount == Decimal("0.05")
    assert (withdrawal.fee_asset, withdrawal.fee_amount) == ("BTC", Decimal("0.0001"))


@patch("ccxt.kraken")
def test_kraken_pages_by_offset(mock_cls):
    entries = [
        ledger("L3", day(12), "deposit", "USD", 300.0),
        ledger("L2", day(11), "deposit", "USD", 200.0),
        ledger("L1", day(10), "deposit", "USD", 100.0),
    ]

    def fetch_ledger(since=None, limit=None, params=None):
        offset = params["ofs"]
        return entries[offset:offset + limit]

    mock_ex = MagicMock()
    mock_ex.fetch_my_trades.return_value = []
    mock_ex.fetch_ledger.side_effect = fetch_ledger
    mock_cls.return_value = mock_ex

    adapter = KrakenAdapter()
    adapter.page_limit = 2
    rows = adapter.sync_transactions(CREDS, START, END)

    assert [c.kwargs["params"]["ofs"] for c in mock_ex.fetch_ledger.call_args_list] == [0, 2]
    assert all(c.kwargs["since"] == ms(START) for c in mock_ex.fetch_ledger.call_args_list)
    assert [r.external_id for r in rows] == ["ledger:L1", "ledger:L2", "ledger:L3"]


@patch("ccxt.kraken")
def test_kraken_balances_use_plain_tickers(mock_cls):
    mock_ex = MagicMock()
    mock_ex.fetch_balance.return_value = {
        "free": {"XXBT": 1.0}, "used": {}, "total": {"XXBT": 1.0, "ZUSD": 0.0},
    }
    mock_cls.return_value = mock_ex

    balances = KrakenAdapter().sync_accounts(CREDS)

    assert [(b.id, b.currency, b.balance) for b in balances] == [("XXBT", "BTC", Decimal("1.0"))]


@pytest.mark.parametrize("code,expected", [
    ("XXBT", "BTC"),
    ("XBT", "BTC"),
    ("ZUSD", "USD"),
    ("DOT.S", "DOT"),
    ("ETH2.S", "ETH2"),
    ("SOL", "SOL"),
])
def test_kraken_normalize_asset(code, expected):
    assert normalize_asset(code) == expected


# ---------------------------------------------------------
# Factory
# ---------------------------------------------------------
def test_factory_returns_adapter_by_name():
    with get_exchange_adapter("Binance") as adapter:
        assert isinstance(adapter, BinanceAdapter)
    with get_exchange_adapter("kraken") as adapter:
        assert isinstance(adapter, KrakenAdapter)


def test_factory_rejects_unknown_exchange():
    with pytest.raises(ValueError):
        get_exchange_adapter("coinbase")


def test_credentials_repr_hides_secret():
    assert "secret-456" not in repr(CREDS)
