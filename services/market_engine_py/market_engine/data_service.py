# market_engine/data_service.py
"""Resilient market-data access.

``MarketDataService`` walks an ordered list of providers: the first one is
the primary, every later one is a fallback.  For each request:

1. the primary is called under its timeout; a success is cached and
   returned tagged ``primary``;
2. on failure (or when the primary does not support the coin) each
   fallback that supports the coin is tried in turn under the shorter
   fallback timeout; a success is cached and tagged ``secondary``;
3. failing that, a cache entry younger than the staleness window is
   returned tagged ``cache``;
4. otherwise ``AllSourcesExhausted`` is raised.

Providers are never raced: a chain is strictly sequential.  Batch price
requests apply the chain per coin, so a coin resolved by the primary never
reaches a fallback.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Type

from pydantic import BaseModel

from .cache import MarketCache
from .config import Settings
from .errors import AllSourcesExhausted, ProviderError, ProviderTimeout
from .logs import get_logger
from .models import (
    CoinDetails,
    DataSource,
    GlobalMarket,
    MarketChart,
    MarketCoin,
    OHLCSeries,
    PriceQuote,
    SearchHit,
    TrendingCoin,
)
from .providers.base import DataProvider, HealthCheck, MarketExtrasProvider, OHLCProvider

logger = get_logger("data_service")

# served when the primary cannot answer; tagged as non-live data
DEFAULT_TRENDING: List[TrendingCoin] = [
    TrendingCoin(id=i, name=n, symbol=s, market_cap_rank=r, source=DataSource.CACHE)
    for i, n, s, r in [
        ("bitcoin", "Bitcoin", "BTC", 1),
        ("ethereum", "Ethereum", "ETH", 2),
        ("solana", "Solana", "SOL", 5),
        ("binancecoin", "BNB", "BNB", 4),
        ("ripple", "XRP", "XRP", 3),
        ("cardano", "Cardano", "ADA", 8),
        ("dogecoin", "Dogecoin", "DOGE", 9),
    ]
]


def retag(value: Any, source: DataSource) -> Any:
    """Return ``value`` with every tagged model's ``source`` replaced."""
    if isinstance(value, BaseModel) and "source" in type(value).model_fields:
        return value.model_copy(update={"source": source})
    if isinstance(value, list):
        return [retag(v, source) for v in value]
    if isinstance(value, dict):
        return {k: retag(v, source) for k, v in value.items()}
    return value


class MarketDataService:
    def __init__(
        self,
        providers: Sequence[DataProvider],
        cache: Optional[MarketCache] = None,
        settings: Optional[Settings] = None,
    ):
        if not providers:
            raise ValueError("at least one provider is required")
        self.providers: List[DataProvider] = list(providers)
        self.settings = settings or Settings.from_env()
        self.cache = cache if cache is not None else MarketCache(self.settings.cache_staleness_secs)

    @property
    def primary(self) -> DataProvider:
        return self.providers[0]

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _source(index: int) -> DataSource:
        return DataSource.PRIMARY if index == 0 else DataSource.SECONDARY

    def _timeout(self, index: int, heavy: bool = False, listing: bool = False) -> float:
        s = self.settings
        if index == 0:
            return s.primary_heavy_timeout if heavy else s.primary_timeout
        return s.fallback_market_timeout if listing else s.fallback_timeout

    @staticmethod
    async def _call(provider: Any, timeout: float, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await asyncio.wait_for(fn(), timeout)
        except asyncio.TimeoutError as e:
            raise ProviderTimeout(provider.name, timeout) from e

    async def _resolve(
        self,
        operation: str,
        key: str,
        call: Callable[[Any], Awaitable[Any]],
        coin_id: Optional[str] = None,
        heavy: bool = False,
        listing: bool = False,
        capability: Optional[Type] = None,
    ) -> Any:
        for index, provider in enumerate(self.providers):
            if capability is not None and not isinstance(provider, capability):
                continue
            if coin_id is not None and not provider.supports(coin_id):
                logger.debug("%s does not support %s, skipping", provider.name, coin_id)
                continue
            timeout = self._timeout(index, heavy=heavy, listing=listing)
            try:
                value = await self._call(provider, timeout, lambda: call(provider))
            except ProviderError as e:
                logger.info("[%s] %s failed for %s: %s", operation, provider.name, coin_id or key, e)
                continue
            source = self._source(index)
            value = retag(value, source)
            self.cache.set(key, value, source)
            if index > 0:
                logger.info("[%s] Using %s fallback for %s", operation, provider.name, coin_id or key)
            return value

        entry = self.cache.get_fresh(key)
        if entry is not None:
            logger.info("[%s] Using cached data for %s (age %.0fs)", operation, coin_id or key,
                        entry.age(self.cache.now()))
            return retag(entry.value, DataSource.CACHE)
        raise AllSourcesExhausted(operation, coin_id)

    # ------------------------------------------------------------------
    # operations with fallback
    # ------------------------------------------------------------------
    async def get_price(self, coin_id: str) -> PriceQuote:
        return await self._resolve(
            "price",
            MarketCache.key("price", coin_id),
            lambda p: p.get_price(coin_id),
            coin_id=coin_id,
        )

    async def get_prices(self, coin_ids: Sequence[str]) -> Dict[str, PriceQuote]:
        """
        Resolve each coin independently.  Coins nobody can price and that
        have no fresh cache entry are left out of the result.
        """
        ids = list(dict.fromkeys(coin_ids))
        results: Dict[str, PriceQuote] = {}
        pending = list(ids)

        for index, provider in enumerate(self.providers):
            work = [cid for cid in pending if provider.supports(cid)]
            if not work:
                continue
            timeout = self._timeout(index, heavy=True)
            try:
                quotes = await self._call(provider, timeout, lambda: provider.get_prices(work))
            except ProviderError as e:
                logger.info("[prices] %s batch failed for %d coins: %s", provider.name, len(work), e)
                continue
            source = self._source(index)
            for cid in work:
                quote = quotes.get(cid)
                if quote is None:
                    continue
                quote = retag(quote, source)
                results[cid] = quote
                self.cache.set(MarketCache.key("price", cid), quote, source)
            if index > 0 and quotes:
                logger.info("[prices] Using %s fallback for %s", provider.name, ", ".join(sorted(quotes)))
            pending = [cid for cid in pending if cid not in results]
            if not pending:
                break

        for cid in pending:
            entry = self.cache.get_fresh(MarketCache.key("price", cid))
            if entry is not None:
                logger.info("[prices] Using cached data for %s", cid)
                results[cid] = retag(entry.value, DataSource.CACHE)
            else:
                logger.warning("[prices] No price for %s from any source", cid)

        return {cid: results[cid] for cid in ids if cid in results}

    async def get_market_coins(self, page: int = 1, page_size: int = 20) -> List[MarketCoin]:
        return await self._resolve(
            "market data",
            MarketCache.key("market", page, page_size),
            lambda p: p.get_market_coins(page, page_size),
            heavy=True,
            listing=True,
        )

    async def get_coin_details(self, coin_id: str) -> CoinDetails:
        return await self._resolve(
            "details",
            MarketCache.key("details", coin_id),
            lambda p: p.get_coin_details(coin_id),
            coin_id=coin_id,
            heavy=True,
        )

    async def get_market_chart(self, coin_id: str, days: int = 30) -> MarketChart:
        return await self._resolve(
            "chart data",
            MarketCache.key("chart", coin_id, days),
            lambda p: p.get_market_chart(coin_id, days),
            coin_id=coin_id,
            heavy=True,
        )

    async def get_ohlc(self, coin_id: str, days: int = 30) -> OHLCSeries:
        return await self._resolve(
            "OHLC data",
            MarketCache.key("ohlc", coin_id, days),
            lambda p: p.get_ohlc(coin_id, days),
            coin_id=coin_id,
            heavy=True,
            capability=OHLCProvider,
        )

    # ------------------------------------------------------------------
    # primary-only operations
    # ------------------------------------------------------------------
    def _extras(self, operation: str) -> Any:
        if not isinstance(self.primary, MarketExtrasProvider):
            raise AllSourcesExhausted(operation)
        return self.primary

    async def get_trending(self) -> List[TrendingCoin]:
        """Trending coins from the primary, or a fixed list of majors when it fails."""
        if not isinstance(self.primary, MarketExtrasProvider):
            return list(DEFAULT_TRENDING)
        try:
            coins = await self._call(self.primary, self._timeout(0), self.primary.get_trending)
        except ProviderError as e:
            logger.warning("[trending] %s failed: %s; using defaults", self.primary.name, e)
            return list(DEFAULT_TRENDING)
        return retag(coins, DataSource.PRIMARY)

    async def get_global(self) -> GlobalMarket:
        provider = self._extras("global data")
        try:
            return await self._call(provider, self._timeout(0), provider.get_global)
        except ProviderError as e:
            logger.warning("[global] %s failed: %s", provider.name, e)
            raise

    async def search(self, query: str) -> List[SearchHit]:
        provider = self._extras("search")
        try:
            return await self._call(provider, self._timeout(0), lambda: provider.search(query))
        except ProviderError as e:
            logger.warning("[search] %s failed for %r: %s", provider.name, query, e)
            raise

    async def health(self) -> Dict[str, bool]:
        async def is_up(provider: Any) -> bool:
            try:
                return bool(await self._call(provider, self.settings.fallback_timeout, provider.ping))
            except ProviderError as e:
                logger.info("[health] %s unhealthy: %s", provider.name, e)
                return False

        checked = [p for p in self.providers if isinstance(p, HealthCheck)]
        states = await asyncio.gather(*(is_up(p) for p in checked))
        return {p.name: ok for p, ok in zip(checked, states)}
