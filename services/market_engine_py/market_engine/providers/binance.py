# market_engine/providers/binance.py
"""Binance adapter (secondary provider).

Binance only knows trading pairs, so the adapter keeps a two-way table
between canonical (CoinGecko) ids and ``<BASE>USDT`` symbols.  Coins not in
the table are unsupported.  Binance has no notion of market cap or coin
metadata: those fields come back as ``0``/placeholder values and must not
be treated as authoritative.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx
import pandas as pd

from ..config import Settings
from ..errors import MalformedResponse, ProviderUnavailable, UnsupportedCoin
from ..logs import get_logger
from ..models import (
    Candle,
    CoinDetails,
    CoinImage,
    MarketChart,
    MarketCoin,
    MarketData,
    OHLCSeries,
    PriceQuote,
    PricePoint,
)
from .http import get_json, normalizing

logger = get_logger("binance")

COINGECKO_TO_BINANCE: Dict[str, str] = {
    "bitcoin": "BTCUSDT",
    "ethereum": "ETHUSDT",
    "binancecoin": "BNBUSDT",
    "ripple": "XRPUSDT",
    "cardano": "ADAUSDT",
    "solana": "SOLUSDT",
    "polkadot": "DOTUSDT",
    "dogecoin": "DOGEUSDT",
    "avalanche": "AVAXUSDT",
    "shiba-inu": "SHIBUSDT",
    "polygon": "MATICUSDT",
    "litecoin": "LTCUSDT",
    "chainlink": "LINKUSDT",
    "uniswap": "UNIUSDT",
    "cosmos": "ATOMUSDT",
    "stellar": "XLMUSDT",
    "monero": "XMRUSDT",
    "algorand": "ALGOUSDT",
    "vechain": "VETUSDT",
    "filecoin": "FILUSDT",
    "tron": "TRXUSDT",
    "wrapped-bitcoin": "WBTCUSDT",
    "near-protocol": "NEARUSDT",
    "internet-computer": "ICPUSDT",
    "aptos": "APTUSDT",
    "aave": "AAVEUSDT",
    "the-graph": "GRTUSDT",
    "fantom": "FTMUSDT",
    "sand": "SANDUSDT",
    "decentraland": "MANAUSDT",
    "axie-infinity": "AXSUSDT",
    "eos": "EOSUSDT",
    "maker": "MKRUSDT",
    "optimism": "OPUSDT",
    "arbitrum": "ARBUSDT",
    "sui": "SUIUSDT",
    "pepe": "PEPEUSDT",
    "immutable": "IMXUSDT",
    "injective": "INJUSDT",
    "render": "RENDERUSDT",
    "celestia": "TIAUSDT",
    "sei": "SEIUSDT",
    "bonk": "BONKUSDT",
    "jupiter": "JUPUSDT",
    "starknet": "STRKUSDT",
    "toncoin": "TONUSDT",
    "bitcoin-cash": "BCHUSDT",
    "ethereum-classic": "ETCUSDT",
    "pancakeswap-token": "CAKEUSDT",
    "thorchain": "RUNEUSDT",
    "hedera-hashgraph": "HBARUSDT",
    "quant-network": "QNTUSDT",
    "lido-dao": "LDOUSDT",
    "kaspa": "KASPAUSDT",
    "cronos": "CROUSDT",
    "mantle": "MNTUSDT",
    "okb": "OKBUSDT",
    "fetch-ai": "FETUSDT",
    "theta-token": "THETAUSDT",
    "flow": "FLOWUSDT",
    "axelar": "AXLUSDT",
    "kava": "KAVAUSDT",
    "gala": "GALAUSDT",
    "enjincoin": "ENJUSDT",
    "chiliz": "CHZUSDT",
    "1inch": "1INCHUSDT",
    "compound-governance-token": "COMPUSDT",
    "curve-dao-token": "CRVUSDT",
    "synthetix-network-token": "SNXUSDT",
    "yearn-finance": "YFIUSDT",
    "sushi": "SUSHIUSDT",
    "balancer": "BALUSDT",
    "uma": "UMAUSDT",
    "loopring": "LRCUSDT",
    "matic-network": "MATICUSDT",
    "zilliqa": "ZILUSDT",
    "basic-attention-token": "BATUSDT",
    "zcash": "ZECUSDT",
    "dash": "DASHUSDT",
    "neo": "NEOUSDT",
    "iota": "IOTAUSDT",
    "qtum": "QTUMUSDT",
    "ontology": "ONTUSDT",
    "icon": "ICXUSDT",
    "waves": "WAVESUSDT",
}

# polygon/matic-network share a pair; the later entry owns the reverse lookup
BINANCE_TO_COINGECKO: Dict[str, str] = {v: k for k, v in COINGECKO_TO_BINANCE.items()}

_KLINE_COLS = [
    "open_time", "open", "high", "low", "close", "volume",
    "close_time", "quote_asset_volume", "number_of_trades",
    "taker_buy_base_asset_volume", "taker_buy_quote_asset_volume", "ignore",
]

PLACEHOLDER_DESCRIPTION = "Price data from Binance. Full details unavailable."


def kline_params(days: int) -> Tuple[str, int]:
    """Pick a kline interval and candle count covering ``days`` of history."""
    days = max(1, int(days))
    if days <= 1:
        return "15m", min(96, -(-days * 24 * 60 // 15))
    if days <= 3:
        return "1h", min(72, days * 24)
    if days <= 7:
        return "2h", min(84, -(-days * 24 // 2))
    if days <= 30:
        return "4h", min(180, -(-days * 24 // 4))
    if days <= 90:
        return "1d", min(90, days)
    return "1d", min(1000, days)


def coin_name(coin_id: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in coin_id.split("-"))


def _image(coin_id: str, size: str) -> str:
    return f"https://assets.coingecko.com/coins/images/1/{size}/{coin_id}.png"


def _base_symbol(pair: str) -> str:
    return pair[: -len("USDT")].lower() if pair.endswith("USDT") else pair.lower()


class BinanceProvider:
    name = "binance"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        mapping: Optional[Mapping[str, str]] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.base_url = self.settings.binance_base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=30.0, headers={"Accept": "application/json"})
        self._to_symbol: Dict[str, str] = dict(mapping or COINGECKO_TO_BINANCE)
        self._to_coin_id: Dict[str, str] = {v: k for k, v in self._to_symbol.items()}

    async def _get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        return await get_json(
            self._client,
            self.name,
            f"{self.base_url}{path}",
            params=params,
            max_attempts=self.settings.http_max_attempts,
            backoff_base=self.settings.http_backoff_base_secs,
            backoff_max=self.settings.http_backoff_max_secs,
            logger=logger,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BinanceProvider":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # identifier mapping
    # ------------------------------------------------------------------
    def supports(self, coin_id: str) -> bool:
        return coin_id.lower() in self._to_symbol

    def symbol_for(self, coin_id: str) -> str:
        symbol = self._to_symbol.get(coin_id.lower())
        if symbol is None:
            raise UnsupportedCoin(self.name, coin_id)
        return symbol

    def coin_id_for(self, symbol: str) -> Optional[str]:
        return self._to_coin_id.get(symbol.upper())

    # ------------------------------------------------------------------
    # raw endpoints
    # ------------------------------------------------------------------
    @staticmethod
    def _symbols_param(symbols: Sequence[str]) -> str:
        return json.dumps(list(symbols), separators=(",", ":"))

    async def _ticker_24h(self, symbol: str) -> Dict[str, Any]:
        data = await self._get("/ticker/24hr", {"symbol": symbol})
        if not isinstance(data, dict):
            raise MalformedResponse(self.name, "ticker/24hr payload is not an object")
        return data

    async def _tickers_24h(self, symbols: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        try:
            rows = await self._get("/ticker/24hr", {"symbols": self._symbols_param(symbols)})
        except ProviderUnavailable as e:
            # one delisted symbol makes Binance reject the whole batch
            if e.status_code != 400:
                raise
            logger.warning("Binance rejected batch of %d symbols (%s), fetching all tickers", len(symbols), e)
            rows = await self._get("/ticker/24hr")
            if isinstance(rows, list):
                wanted = set(symbols)
                rows = [row for row in rows if isinstance(row, dict) and row.get("symbol") in wanted]
        if not isinstance(rows, list):
            raise MalformedResponse(self.name, "ticker/24hr payload is not a list")
        return {row.get("symbol"): row for row in rows if isinstance(row, dict)}

    async def _klines(self, symbol: str, days: int) -> pd.DataFrame:
        interval, limit = kline_params(days)
        rows = await self._get("/klines", {"symbol": symbol, "interval": interval, "limit": limit})
        with normalizing(self.name, "klines"):
            df = pd.DataFrame(rows, columns=_KLINE_COLS)
            if df.empty:
                raise MalformedResponse(self.name, f"no klines for {symbol}")
            df[["open", "high", "low", "close", "volume"]] = df[
                ["open", "high", "low", "close", "volume"]
            ].astype(float)
            df[["open_time", "close_time"]] = df[["open_time", "close_time"]].astype("int64")
        logger.debug("Binance klines %s %s x%s", symbol, interval, len(df))
        return df

    # ------------------------------------------------------------------
    # DataProvider
    # ------------------------------------------------------------------
    def _quote(self, coin_id: str, ticker: Mapping[str, Any]) -> PriceQuote:
        with normalizing(self.name, "ticker"):
            return PriceQuote(
                coin_id=coin_id,
                price=float(ticker["lastPrice"]),
                change_24h=float(ticker["priceChangePercent"]),
            )

    async def get_price(self, coin_id: str) -> PriceQuote:
        ticker = await self._ticker_24h(self.symbol_for(coin_id))
        return self._quote(coin_id, ticker)

    async def get_prices(self, coin_ids: Sequence[str]) -> Dict[str, PriceQuote]:
        wanted = {cid: self._to_symbol[cid.lower()] for cid in coin_ids if self.supports(cid)}
        if not wanted:
            return {}
        tickers = await self._tickers_24h(sorted(set(wanted.values())))
        quotes: Dict[str, PriceQuote] = {}
        for coin_id, symbol in wanted.items():
            ticker = tickers.get(symbol)
            if ticker is not None:
                quotes[coin_id] = self._quote(coin_id, ticker)
        return quotes

    async def get_market_coins(self, page: int = 1, page_size: int = 20) -> List[MarketCoin]:
        pairs = sorted(set(self._to_symbol.values()))
        tickers = await self._tickers_24h(pairs)
        with normalizing(self.name, "ticker/24hr"):
            ranked = sorted(tickers.values(), key=lambda t: float(t["quoteVolume"]), reverse=True)
            start = max(page - 1, 0) * page_size
            coins: List[MarketCoin] = []
            for rank, t in enumerate(ranked[start:start + page_size], start=start + 1):
                coin_id = self.coin_id_for(t["symbol"])
                if coin_id is None:
                    continue
                coins.append(
                    MarketCoin(
                        id=coin_id,
                        symbol=_base_symbol(t["symbol"]),
                        name=coin_name(coin_id),
                        image=_image(coin_id, "small"),
                        current_price=float(t["lastPrice"]),
                        market_cap=0.0,  # not provided by Binance
                        market_cap_rank=rank,  # volume rank, not market-cap rank
                        price_change_percentage_24h=float(t["priceChangePercent"]),
                        high_24h=float(t["highPrice"]),
                        low_24h=float(t["lowPrice"]),
                        total_volume=float(t["volume"]),
                    )
                )
            return coins

    async def get_coin_details(self, coin_id: str) -> CoinDetails:
        symbol = self.symbol_for(coin_id)
        t = await self._ticker_24h(symbol)
        with normalizing(self.name, "ticker/24hr"):
            high = float(t["highPrice"])
            return CoinDetails(
                id=coin_id,
                symbol=_base_symbol(symbol),
                name=coin_name(coin_id),
                image=CoinImage(
                    large=_image(coin_id, "large"),
                    small=_image(coin_id, "small"),
                    thumb=_image(coin_id, "thumb"),
                ),
                market_data=MarketData(
                    current_price=float(t["lastPrice"]),
                    price_change_percentage_24h=float(t["priceChangePercent"]),
                    market_cap=0.0,
                    market_cap_rank=0,
                    high_24h=high,
                    low_24h=float(t["lowPrice"]),
                    circulating_supply=0.0,
                    total_supply=None,
                    ath=high,  # 24h high stands in for the all-time high
                ),
                description=PLACEHOLDER_DESCRIPTION,
            )

    async def get_market_chart(self, coin_id: str, days: int = 30) -> MarketChart:
        df = await self._klines(self.symbol_for(coin_id), days)
        df = df.drop_duplicates(subset="close_time", keep="last").sort_values("close_time")
        return MarketChart(
            prices=[PricePoint(int(ts), float(p)) for ts, p in zip(df["close_time"], df["close"])],
            market_caps=[PricePoint(int(ts), 0.0) for ts in df["close_time"]],
            total_volumes=[PricePoint(int(ts), float(v)) for ts, v in zip(df["close_time"], df["volume"])],
        )

    # ------------------------------------------------------------------
    # Optional capabilities
    # ------------------------------------------------------------------
    async def get_ohlc(self, coin_id: str, days: int = 30) -> OHLCSeries:
        df = await self._klines(self.symbol_for(coin_id), days)
        return OHLCSeries(
            candles=[
                Candle(timestamp=int(r.open_time), open=r.open, high=r.high, low=r.low, close=r.close)
                for r in df.itertuples(index=False)
            ]
        )

    async def ping(self) -> bool:
        data = await self._get("/time")
        return isinstance(data, dict) and bool(data.get("serverTime"))
