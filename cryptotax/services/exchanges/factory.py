"""
cryptotax/services/exchanges/factory.py

Maps a Source.exchange name to its adapter class.
"""

from typing import Dict, Type

from cryptotax.services.exchanges.base import BaseExchangeAdapter
from cryptotax.services.exchanges.binance import BinanceAdapter
from cryptotax.services.exchanges.kraken import KrakenAdapter

ADAPTERS: Dict[str, Type[BaseExchangeAdapter]] = {
    BinanceAdapter.name: BinanceAdapter,
    KrakenAdapter.name: KrakenAdapter,
}


def get_exchange_adapter(exchange: str, **kwargs) -> BaseExchangeAdapter:
    try:
        adapter_cls = ADAPTERS[(exchange or "").lower()]
    except KeyError:
        raise ValueError(f"Unsupported exchange '{exchange}'. Supported: {sorted(ADAPTERS)}")
    return adapter_cls(**kwargs)
