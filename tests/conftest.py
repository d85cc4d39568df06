"""Shared test doubles: scripted providers, a controllable clock and an in-memory alert store."""
import asyncio
import datetime as dt
from dataclasses import replace
from typing import Dict, List, Optional

import pytest

from market_engine import MarketCache, MarketDataService, Settings
from market_engine.alerts import Alert
from market_engine.errors import UnsupportedCoin
from market_engine.models import (
    CoinDetails,
    GlobalMarket,
    MarketChart,
    MarketCoin,
    MarketData,
    OHLCSeries,
    Candle,
    PricePoint,
    PriceQuote,
    SearchHit,
    TrendingCoin,
)

FAST_SETTINGS = Settings(
    primary_timeout=0.2,
    primary_heavy_timeout=0.2,
    fallback_timeout=0.1,
    fallback_market_timeout=0.1,
    http_backoff_base_secs=0.0,
)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Scripted provider exposing only the five mandatory operations."""

    def __init__(
        self,
        name: str,
        prices: Optional[Dict[str, float]] = None,
        charts: Optional[Dict[str, List[float]]] = None,
        supported: Optional[set] = None,
        delay: float = 0.0,
    ):
        self.name = name
        self.prices = dict(prices or {})
        self.charts = dict(charts or {})
        self.supported = supported
        self.delay = delay
        self.failures: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    def fail(self, operation: str, exc: Exception) -> None:
        self.failures[operation] = exc

    def recover(self, operation: Optional[str] = None) -> None:
        if operation is None:
            self.failures.clear()
        else:
            self.failures.pop(operation, None)

    def count(self, operation: str) -> int:
        return sum(1 for c in self.calls if c[0] == operation)

    async def _enter(self, operation: str, *args) -> None:
        self.calls.append((operation, *args))
        if self.delay:
            await asyncio.sleep(self.delay)
        if operation in self.failures:
            raise self.failures[operation]

    def supports(self, coin_id: str) -> bool:
        return self.supported is None or coin_id in self.supported

    def _quote(self, coin_id: str) -> PriceQuote:
        return PriceQuote(coin_id=coin_id, price=self.prices[coin_id], change_24h=3.0)

    async def get_price(self, coin_id):
        await self._enter("get_price", coin_id)
        if coin_id not in self.prices:
            raise UnsupportedCoin(self.name, coin_id)
        return self._quote(coin_id)

    async def get_prices(self, coin_ids):
        await self._enter("get_prices", list(coin_ids))
        return {c: self._quote(c) for c in coin_ids if c in self.prices}

    async def get_market_coins(self, page=1, page_size=20):
        await self._enter("get_market_coins", page, page_size)
        coins = [
            MarketCoin(id=c, symbol=c[:3], name=c.title(), current_price=p, market_cap_rank=i + 1)
            for i, (c, p) in enumerate(sorted(self.prices.items()))
        ]
        start = (page - 1) * page_size
        return coins[start:start + page_size]

    async def get_coin_details(self, coin_id):
        await self._enter("get_coin_details", coin_id)
        if coin_id not in self.prices:
            raise UnsupportedCoin(self.name, coin_id)
        return CoinDetails(
            id=coin_id,
            symbol=coin_id[:3],
            name=coin_id.title(),
            market_data=MarketData(current_price=self.prices[coin_id]),
        )

    async def get_market_chart(self, coin_id, days=30):
        await self._enter("get_market_chart", coin_id, days)
        if coin_id not in self.charts:
            raise UnsupportedCoin(self.name, coin_id)
        closes = self.charts[coin_id]
        return MarketChart(prices=[PricePoint(i * 86_400_000, p) for i, p in enumerate(closes)])


class FakeFullProvider(FakeProvider):
    """Also offers OHLC, market extras and a health check."""

    async def get_ohlc(self, coin_id, days=30):
        await self._enter("get_ohlc", coin_id, days)
        closes = self.charts.get(coin_id)
        if not closes:
            raise UnsupportedCoin(self.name, coin_id)
        return OHLCSeries(
            candles=[Candle(timestamp=i, open=p, high=p, low=p, close=p) for i, p in enumerate(closes)]
        )

    async def get_trending(self):
        await self._enter("get_trending")
        return [TrendingCoin(id="pepe", name="Pepe", symbol="PEPE", market_cap_rank=30)]

    async def get_global(self):
        await self._enter("get_global")
        return GlobalMarket(active_cryptocurrencies=10_000, total_market_cap_usd=2.5e12)

    async def search(self, query):
        await self._enter("search", query)
        return [SearchHit(id="bitcoin", name="Bitcoin", symbol="BTC", market_cap_rank=1)]

    async def ping(self):
        await self._enter("ping")
        return True


class MemoryAlertStore:
    def __init__(self, alerts: List[Alert]):
        self.alerts: Dict[int, Alert] = {a.id: a for a in alerts}
        self.mark_calls: List[int] = []

    def list_pending(self) -> List[Alert]:
        return [a for a in self.alerts.values() if a.is_active and not a.is_triggered]

    def mark_triggered(self, alert_id: int, triggered_at: dt.datetime, current_price: float) -> bool:
        self.mark_calls.append(alert_id)
        alert = self.alerts[alert_id]
        if alert.is_triggered or not alert.is_active:
            return False
        self.alerts[alert_id] = replace(
            alert, is_triggered=True, triggered_at=triggered_at, current_price=current_price
        )
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MarketCache(staleness_secs=300.0, clock=clock)


@pytest.fixture
def settings():
    return FAST_SETTINGS


@pytest.fixture
def make_service(cache, settings):
    def _make(*providers):
        return MarketDataService(list(providers), cache=cache, settings=settings)

    return _make
