"""Market-data resilience and quantitative-analysis engine.

This package provides provider adapters with failover for fetching
cryptocurrency market data, technical indicators and trading signals,
signal-driven backtesting and alert evaluation.  Indicator and signal
functions are pure and deterministic when given the same inputs.
"""

from .alerts import (
    Alert,
    AlertEvaluator,
    AlertKind,
    EvaluationReport,
    TechnicalCondition,
    TriggerRecord,
    should_trigger,
)
from .backtester import BacktestResult, BacktestRunner, Trade, run_backtest
from .cache import CacheEntry, MarketCache
from .config import Settings
from .data_service import MarketDataService
from .errors import (
    AllSourcesExhausted,
    InsufficientHistory,
    MalformedResponse,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    UnsupportedCoin,
)
from .indicators import (
    TechnicalIndicators,
    Trend,
    analyze_price_data,
    compute_bollinger,
    compute_ema,
    compute_macd,
    compute_pivot_points,
    compute_rsi,
    compute_sma,
    compute_stoch_rsi,
    compute_volatility,
    determine_trend,
)
from .models import DataSource, PricePoint
from .providers import BinanceProvider, CoinGeckoProvider
from .signals import Signal, SignalAction, generate_signal


def build_service(settings=None, cache=None) -> MarketDataService:
    """CoinGecko as primary, Binance as fallback."""
    settings = settings or Settings.from_env()
    return MarketDataService(
        [CoinGeckoProvider(settings), BinanceProvider(settings)],
        cache=cache,
        settings=settings,
    )


__all__ = [
    "Alert",
    "AlertEvaluator",
    "AlertKind",
    "EvaluationReport",
    "TechnicalCondition",
    "TriggerRecord",
    "should_trigger",
    "BacktestResult",
    "BacktestRunner",
    "Trade",
    "run_backtest",
    "CacheEntry",
    "MarketCache",
    "Settings",
    "MarketDataService",
    "build_service",
    "AllSourcesExhausted",
    "InsufficientHistory",
    "MalformedResponse",
    "ProviderError",
    "ProviderTimeout",
    "ProviderUnavailable",
    "UnsupportedCoin",
    "TechnicalIndicators",
    "Trend",
    "analyze_price_data",
    "compute_bollinger",
    "compute_ema",
    "compute_macd",
    "compute_pivot_points",
    "compute_rsi",
    "compute_sma",
    "compute_stoch_rsi",
    "compute_volatility",
    "determine_trend",
    "DataSource",
    "PricePoint",
    "BinanceProvider",
    "CoinGeckoProvider",
    "Signal",
    "SignalAction",
    "generate_signal",
]
