"""Normalized result types shared by every provider adapter.

Adapters translate their native payloads into these models; a payload that
cannot be coerced raises pydantic's ``ValidationError`` which the adapters
convert into :class:`~market_engine.errors.MalformedResponse`.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field


class DataSource(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    CACHE = "cache"


@dataclass(frozen=True)
class PricePoint:
    timestamp: int  # epoch ms
    price: float


def to_price_points(pairs: Iterable[Tuple[float, float]]) -> List[PricePoint]:
    """Build an ascending, duplicate-free series from ``[ts, price]`` pairs.

    When the same timestamp appears twice the last value wins.
    """
    by_ts: Dict[int, float] = {}
    for ts, price in pairs:
        by_ts[int(ts)] = float(price)
    return [PricePoint(ts, by_ts[ts]) for ts in sorted(by_ts)]


class _Tagged(BaseModel):
    source: DataSource = DataSource.PRIMARY


class PriceQuote(_Tagged):
    coin_id: str
    price: float
    change_24h: Optional[float] = None


class MarketCoin(_Tagged):
    id: str
    symbol: str
    name: str
    image: str = ""
    current_price: float
    market_cap: float = 0.0
    market_cap_rank: Optional[int] = None
    price_change_percentage_24h: Optional[float] = None
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    total_volume: Optional[float] = None


class MarketData(BaseModel):
    current_price: float
    price_change_percentage_24h: Optional[float] = None
    market_cap: float = 0.0
    market_cap_rank: Optional[int] = None
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    circulating_supply: Optional[float] = None
    total_supply: Optional[float] = None
    ath: Optional[float] = None


class CoinImage(BaseModel):
    large: str = ""
    small: str = ""
    thumb: str = ""


class CoinDetails(_Tagged):
    id: str
    symbol: str
    name: str
    image: CoinImage = Field(default_factory=CoinImage)
    market_data: MarketData
    description: str = ""
    homepage: List[str] = Field(default_factory=list)
    blockchain_sites: List[str] = Field(default_factory=list)


class MarketChart(_Tagged):
    prices: List[PricePoint]
    market_caps: List[PricePoint] = Field(default_factory=list)
    total_volumes: List[PricePoint] = Field(default_factory=list)

    def closes(self) -> List[float]:
        return [p.price for p in self.prices]


class Candle(BaseModel):
    timestamp: int
    open: float
    high: float
    low: float
    close: float


class OHLCSeries(_Tagged):
    candles: List[Candle]


class TrendingCoin(_Tagged):
    id: str
    name: str
    symbol: str
    market_cap_rank: Optional[int] = None


class GlobalMarket(BaseModel):
    active_cryptocurrencies: int = 0
    markets: int = 0
    total_market_cap_usd: float = 0.0
    total_volume_usd: float = 0.0
    market_cap_change_percentage_24h_usd: float = 0.0
    market_cap_percentage: Dict[str, float] = Field(default_factory=dict)


class SearchHit(BaseModel):
    id: str
    name: str
    symbol: str
    market_cap_rank: Optional[int] = None
    thumb: str = ""
