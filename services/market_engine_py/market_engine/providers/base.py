"""Capabilities a market-data provider can offer.

Adapters do not subclass anything; they satisfy these protocols
structurally.  :class:`DataProvider` is mandatory, the others are optional
and detected with ``isinstance`` by the data service.
"""
from __future__ import annotations

from typing import Dict, List, Protocol, Sequence, runtime_checkable

from ..models import (
    CoinDetails,
    GlobalMarket,
    MarketChart,
    MarketCoin,
    OHLCSeries,
    PriceQuote,
    SearchHit,
    TrendingCoin,
)


@runtime_checkable
class DataProvider(Protocol):
    name: str

    def supports(self, coin_id: str) -> bool: ...

    async def get_price(self, coin_id: str) -> PriceQuote: ...

    async def get_prices(self, coin_ids: Sequence[str]) -> Dict[str, PriceQuote]: ...

    async def get_market_coins(self, page: int = 1, page_size: int = 20) -> List[MarketCoin]: ...

    async def get_coin_details(self, coin_id: str) -> CoinDetails: ...

    async def get_market_chart(self, coin_id: str, days: int = 30) -> MarketChart: ...


@runtime_checkable
class OHLCProvider(Protocol):
    async def get_ohlc(self, coin_id: str, days: int = 30) -> OHLCSeries: ...


@runtime_checkable
class MarketExtrasProvider(Protocol):
    async def get_trending(self) -> List[TrendingCoin]: ...

    async def get_global(self) -> GlobalMarket: ...

    async def search(self, query: str) -> List[SearchHit]: ...


@runtime_checkable
class HealthCheck(Protocol):
    async def ping(self) -> bool: ...
