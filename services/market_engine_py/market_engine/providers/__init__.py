"""Market-data provider adapters."""

from .base import DataProvider, HealthCheck, MarketExtrasProvider, OHLCProvider
from .binance import BinanceProvider
from .coingecko import CoinGeckoProvider

__all__ = [
    "DataProvider",
    "HealthCheck",
    "MarketExtrasProvider",
    "OHLCProvider",
    "BinanceProvider",
    "CoinGeckoProvider",
]
