"""
CoinGecko historical prices and back-filling unpriced rows.
"""

from datetime import date
from decimal import Decimal

import httpx
import pytest

from cryptotax.models.transaction import Transaction
from cryptotax.routers.transaction import get_price_source
from cryptotax.services.pricing import CoinGeckoPriceSource, PriceSourceError, price_unpriced_transactions
from cryptotax.tests.factories import add_tx, utc


def source_for(handler, calls=None):
    def recording(request):
        if calls is not None:
            calls.append(request)
        return handler(request)

    client = httpx.Client(transport=httpx.MockTransport(recording))
    return CoinGeckoPriceSource(client=client, base_url="https://cg.test/api/v3", sleep=lambda s: None)


def test_historical_price_request_and_cache():
    calls = []
    source = source_for(
        lambda r: httpx.Response(200, json={"market_data": {"current_price": {"usd": 42000.5}}}), calls
    )

    assert source.historical_price("BTC", date(2024, 1, 15)) == Decimal("42000.5")
    assert source.historical_price("BTC", date(2024, 1, 15)) == Decimal("42000.5")

    (request,) = calls
    assert request.url.path == "/api/v3/coins/bitcoin/history"
    assert request.url.params["date"] == "15-01-2024"


def test_unknown_symbol_makes_no_request():
    calls = []
    source = source_for(lambda r: httpx.Response(200, json={}), calls)

    assert source.historical_price("NOTACOIN", date(2024, 1, 1)) is None
    assert calls == []


def test_missing_price_data_is_none():
    source = source_for(lambda r: httpx.Response(200, json={"id": "bitcoin"}))
    assert source.historical_price("BTC", date(2010, 1, 1)) is None

    source = source_for(lambda r: httpx.Response(404, json={"error": "not found"}))
    assert source.historical_price("ETH", date(2010, 1, 1)) is None


def test_upstream_failure_raises():
    source = source_for(lambda r: httpx.Response(500))

    with pytest.raises(PriceSourceError):
        source.historical_price("BTC", date(2024, 1, 1))


class FixedPrices:
    def __init__(self, prices):
        self.prices = prices

    def historical_price(self, asset, day):
        return self.prices.get(asset)


def test_price_unpriced_transactions(db_session, user):
    eth = add_tx(db_session, user.id, utc(2024, 2, 1), "buy", "2", asset="ETH", fee=Decimal("0.01"))
    odd = add_tx(db_session, user.id, utc(2024, 2, 1), "income", "5", asset="ODD")
    priced = add_tx(db_session, user.id, utc(2024, 2, 1), "buy", "1", "40000")

    report = price_unpriced_transactions(db_session, user.id, FixedPrices({"ETH": Decimal("2500.555")}))

    assert (report.priced, report.unknown) == (1, 1)
    db_session.expire_all()
    eth = db_session.get(Transaction, eth.id)
    assert eth.value_usd == Decimal("5001.11")
    assert eth.fee_usd == Decimal("25.01")
    assert eth.is_priced is True
    assert db_session.get(Transaction, odd.id).value_usd is None
    assert db_session.get(Transaction, priced.id).value_usd == Decimal("40000")


def test_source_closes_the_client_it_built():
    with CoinGeckoPriceSource() as source:
        client = source._client
        assert not client.is_closed
    assert client.is_closed


def test_source_leaves_injected_client_open():
    client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
    with CoinGeckoPriceSource(client=client):
        pass
    assert not client.is_closed
    client.close()


def test_request_dependency_closes_source_afterwards():
    dependency = get_price_source()
    source = next(dependency)
    assert not source._client.is_closed

    with pytest.raises(StopIteration):
        next(dependency)
    assert source._client.is_closed
