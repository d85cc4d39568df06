# market_engine/providers/coingecko.py
"""CoinGecko adapter (primary provider).

CoinGecko ids are the canonical coin identifiers of the engine, so this
adapter supports every coin; an id CoinGecko does not know surfaces as
``UnsupportedCoin``.  The API key, when configured, is sent in the
``x-cg-demo-api-key`` header (``x-cg-pro-api-key`` for the pro base URL)
unless ``COINGECKO_API_KEY_HEADER`` names another one.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from ..config import Settings
from ..errors import MalformedResponse, ProviderUnavailable, UnsupportedCoin
from ..logs import get_logger
from ..models import (
    Candle,
    CoinDetails,
    CoinImage,
    GlobalMarket,
    MarketChart,
    MarketCoin,
    MarketData,
    OHLCSeries,
    PriceQuote,
    SearchHit,
    TrendingCoin,
    to_price_points,
)
from .http import get_json, normalizing

logger = get_logger("coingecko")

VS_CURRENCY = "usd"


def _usd(block: Optional[Mapping[str, Any]]) -> Optional[float]:
    if not block:
        return None
    value = block.get(VS_CURRENCY)
    return None if value is None else float(value)


class CoinGeckoProvider:
    name = "coingecko"

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or Settings.from_env()
        self.base_url = self.settings.coingecko_base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=30.0, headers={"Accept": "application/json"})
        logger.info(
            "CoinGecko base=%s header='%s' key=%s",
            self.base_url,
            self._header_name(),
            self.settings.masked_coingecko_key,
        )

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------
    def _header_name(self) -> str:
        if self.settings.coingecko_api_key_header:
            return self.settings.coingecko_api_key_header
        return "x-cg-pro-api-key" if "pro-api" in self.base_url else "x-cg-demo-api-key"

    def _headers(self) -> Dict[str, str]:
        if not self.settings.coingecko_api_key:
            return {}
        return {self._header_name(): self.settings.coingecko_api_key}

    async def _get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        return await get_json(
            self._client,
            self.name,
            f"{self.base_url}{path}",
            params=params,
            headers=self._headers(),
            max_attempts=self.settings.http_max_attempts,
            backoff_base=self.settings.http_backoff_base_secs,
            backoff_max=self.settings.http_backoff_max_secs,
            logger=logger,
        )

    async def _get_coin(self, coin_id: str, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        try:
            return await self._get(path, params)
        except ProviderUnavailable as e:
            if e.status_code == 404:
                raise UnsupportedCoin(self.name, coin_id) from e
            raise

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CoinGeckoProvider":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # DataProvider
    # ------------------------------------------------------------------
    def supports(self, coin_id: str) -> bool:
        return bool(coin_id)

    async def _simple_price(self, coin_ids: Sequence[str]) -> Dict[str, Any]:
        data = await self._get(
            "/simple/price",
            {"ids": ",".join(coin_ids), "vs_currencies": VS_CURRENCY, "include_24hr_change": "true"},
        )
        if not isinstance(data, dict):
            raise MalformedResponse(self.name, "simple/price payload is not an object")
        return data

    def _quote(self, coin_id: str, row: Mapping[str, Any]) -> Optional[PriceQuote]:
        if row.get(VS_CURRENCY) is None:
            return None
        with normalizing(self.name, "simple/price"):
            return PriceQuote(
                coin_id=coin_id,
                price=row[VS_CURRENCY],
                change_24h=row.get(f"{VS_CURRENCY}_24h_change"),
            )

    async def get_price(self, coin_id: str) -> PriceQuote:
        data = await self._simple_price([coin_id])
        quote = self._quote(coin_id, data.get(coin_id) or {})
        if quote is None:
            raise UnsupportedCoin(self.name, coin_id)
        return quote

    async def get_prices(self, coin_ids: Sequence[str]) -> Dict[str, PriceQuote]:
        if not coin_ids:
            return {}
        data = await self._simple_price(coin_ids)
        quotes: Dict[str, PriceQuote] = {}
        for coin_id in coin_ids:
            quote = self._quote(coin_id, data.get(coin_id) or {})
            if quote is not None:
                quotes[coin_id] = quote
        return quotes

    async def get_market_coins(self, page: int = 1, page_size: int = 20) -> List[MarketCoin]:
        rows = await self._get(
            "/coins/markets",
            {
                "vs_currency": VS_CURRENCY,
                "order": "market_cap_desc",
                "per_page": page_size,
                "page": page,
                "sparkline": "false",
            },
        )
        with normalizing(self.name, "coins/markets"):
            return [
                MarketCoin(
                    id=row["id"],
                    symbol=row["symbol"],
                    name=row["name"],
                    image=row.get("image") or "",
                    current_price=row["current_price"],
                    market_cap=row.get("market_cap") or 0.0,
                    market_cap_rank=row.get("market_cap_rank"),
                    price_change_percentage_24h=row.get("price_change_percentage_24h"),
                    high_24h=row.get("high_24h"),
                    low_24h=row.get("low_24h"),
                    total_volume=row.get("total_volume"),
                )
                for row in rows
            ]

    async def get_coin_details(self, coin_id: str) -> CoinDetails:
        data = await self._get_coin(
            coin_id,
            f"/coins/{coin_id}",
            {
                "localization": "false",
                "tickers": "false",
                "market_data": "true",
                "community_data": "false",
                "developer_data": "false",
            },
        )
        with normalizing(self.name, "coins/{id}"):
            md = data["market_data"]
            links = data.get("links") or {}
            return CoinDetails(
                id=data["id"],
                symbol=data["symbol"],
                name=data["name"],
                image=CoinImage(**(data.get("image") or {})),
                market_data=MarketData(
                    current_price=_usd(md["current_price"]),
                    price_change_percentage_24h=md.get("price_change_percentage_24h"),
                    market_cap=_usd(md.get("market_cap")) or 0.0,
                    market_cap_rank=md.get("market_cap_rank"),
                    high_24h=_usd(md.get("high_24h")),
                    low_24h=_usd(md.get("low_24h")),
                    circulating_supply=md.get("circulating_supply"),
                    total_supply=md.get("total_supply"),
                    ath=_usd(md.get("ath")),
                ),
                description=(data.get("description") or {}).get("en") or "",
                homepage=[u for u in links.get("homepage") or [] if u],
                blockchain_sites=[u for u in links.get("blockchain_site") or [] if u],
            )

    async def get_market_chart(self, coin_id: str, days: int = 30) -> MarketChart:
        params: Dict[str, Any] = {"vs_currency": VS_CURRENCY, "days": days}
        if days >= 90:
            params["interval"] = "daily"
        data = await self._get_coin(coin_id, f"/coins/{coin_id}/market_chart", params)
        with normalizing(self.name, "market_chart"):
            prices = to_price_points(data["prices"])
            if not prices:
                raise MalformedResponse(self.name, f"empty price history for {coin_id}")
            return MarketChart(
                prices=prices,
                market_caps=to_price_points(data.get("market_caps") or []),
                total_volumes=to_price_points(data.get("total_volumes") or []),
            )

    # ------------------------------------------------------------------
    # Optional capabilities
    # ------------------------------------------------------------------
    async def get_ohlc(self, coin_id: str, days: int = 30) -> OHLCSeries:
        rows = await self._get_coin(
            coin_id, f"/coins/{coin_id}/ohlc", {"vs_currency": VS_CURRENCY, "days": days}
        )
        with normalizing(self.name, "ohlc"):
            return OHLCSeries(
                candles=[
                    Candle(timestamp=int(r[0]), open=r[1], high=r[2], low=r[3], close=r[4])
                    for r in rows
                ]
            )

    async def get_trending(self) -> List[TrendingCoin]:
        data = await self._get("/search/trending")
        with normalizing(self.name, "search/trending"):
            return [TrendingCoin.model_validate(entry["item"]) for entry in data["coins"]]

    async def get_global(self) -> GlobalMarket:
        data = await self._get("/global")
        with normalizing(self.name, "global"):
            g = data["data"]
            return GlobalMarket(
                active_cryptocurrencies=g.get("active_cryptocurrencies") or 0,
                markets=g.get("markets") or 0,
                total_market_cap_usd=_usd(g.get("total_market_cap")) or 0.0,
                total_volume_usd=_usd(g.get("total_volume")) or 0.0,
                market_cap_change_percentage_24h_usd=g.get("market_cap_change_percentage_24h_usd") or 0.0,
                market_cap_percentage=g.get("market_cap_percentage") or {},
            )

    async def search(self, query: str) -> List[SearchHit]:
        data = await self._get("/search", {"query": query})
        with normalizing(self.name, "search"):
            return [SearchHit.model_validate(c) for c in data.get("coins", [])]

    async def ping(self) -> bool:
        data = await self._get("/ping")
        return isinstance(data, dict) and "gecko_says" in data
