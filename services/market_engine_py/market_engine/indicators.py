"""Technical indicators over a plain price sequence.

Every function takes the closing prices oldest-first and returns the value
for the most recent bar.  None of them raise on short input: they fall
back to a neutral value instead (latest price for averages, 50 for RSI,
``neutral`` for the trend), so callers can run them on any history a
provider returns.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import numpy as np
import pandas as pd


class Trend(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class MACD:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class StochRSI:
    k: float
    d: float


@dataclass(frozen=True)
class PivotPoints:
    pivot: float
    r1: float
    s1: float
    r2: float
    s2: float


@dataclass(frozen=True)
class TechnicalIndicators:
    sma20: float
    sma50: float
    ema20: float
    rsi: float
    stoch_rsi: StochRSI
    macd: MACD
    bollinger: BollingerBands
    pivot_points: PivotPoints
    volatility: float
    trend: Trend


def _as_array(prices: Sequence[float]) -> np.ndarray:
    return np.asarray(prices, dtype=float)


def compute_sma(prices: Sequence[float], period: int) -> float:
    """Mean of the last ``period`` prices; latest price when history is short."""
    arr = _as_array(prices)
    if arr.size == 0:
        return 0.0
    if arr.size < period:
        return float(arr[-1])
    return float(arr[-period:].mean())


def compute_ema(prices: Sequence[float], period: int) -> float:
    """
    EMA seeded with the SMA of the first ``period`` prices, then smoothed
    with ``2 / (period + 1)`` over the remainder.
    """
    arr = _as_array(prices)
    if arr.size == 0:
        return 0.0
    if arr.size < period:
        return float(arr[-1])
    seed = arr[:period].mean()
    rest = pd.Series(np.concatenate(([seed], arr[period:])))
    return float(rest.ewm(alpha=2.0 / (period + 1), adjust=False).mean().iloc[-1])


def compute_rsi(prices: Sequence[float], period: int = 14) -> float:
    """
    Relative Strength Index from the simple average of the last ``period``
    gains and losses.  Returns 50 without ``period + 1`` prices and 100
    when there were no losses.
    """
    arr = _as_array(prices)
    if arr.size < period + 1:
        return 50.0
    changes = np.diff(arr)
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)
    avg_gain = gains[-period:].sum() / period
    avg_loss = losses[-period:].sum() / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100.0 - 100.0 / (1.0 + rs))


def compute_macd(prices: Sequence[float]) -> MACD:
    """
    MACD line is EMA(12) - EMA(26).  The signal line is approximated as
    ``0.9 * macd`` because only the latest MACD value is available here,
    not its history.
    """
    macd_line = compute_ema(prices, 12) - compute_ema(prices, 26)
    signal = macd_line * 0.9
    return MACD(macd=macd_line, signal=signal, histogram=macd_line - signal)


def compute_volatility(prices: Sequence[float]) -> float:
    """Population standard deviation of the whole series."""
    arr = _as_array(prices)
    if arr.size < 2:
        return 0.0
    return float(arr.std(ddof=0))


def determine_trend(prices: Sequence[float]) -> Trend:
    arr = _as_array(prices)
    if arr.size < 20:
        return Trend.NEUTRAL
    sma20 = compute_sma(arr, 20)
    sma50 = compute_sma(arr, 50)
    current = arr[-1]
    if current > sma20 > sma50:
        return Trend.BULLISH
    if current < sma20 < sma50:
        return Trend.BEARISH
    return Trend.NEUTRAL


def compute_bollinger(prices: Sequence[float], period: int = 20, n_std: float = 2.0) -> BollingerBands:
    """
    Bands around the SMA using the population deviation of the last
    ``period`` prices.  The variance is always divided by ``period`` so a
    short history gives narrow bands.
    """
    arr = _as_array(prices)
    middle = compute_sma(arr, period)
    window = arr[-period:]
    std = float(np.sqrt(((window - middle) ** 2).sum() / period)) if window.size else 0.0
    return BollingerBands(upper=middle + n_std * std, middle=middle, lower=middle - n_std * std)


def compute_stoch_rsi(prices: Sequence[float], period: int = 14) -> StochRSI:
    arr = _as_array(prices)
    if arr.size < period * 2:
        return StochRSI(k=50.0, d=50.0)
    # RSI at each of the last period + 3 bars, oldest first
    rsi_series = [compute_rsi(arr[: arr.size - i], period) for i in range(period + 2, -1, -1)]
    current = rsi_series[-1]
    window = rsi_series[-period:]
    lo, hi = min(window), max(window)
    stoch = 50.0 if hi == lo else (current - lo) / (hi - lo) * 100.0
    return StochRSI(k=stoch, d=stoch)


def compute_pivot_points(high: float, low: float, close: float) -> PivotPoints:
    pivot = (high + low + close) / 3
    return PivotPoints(
        pivot=pivot,
        r1=2 * pivot - low,
        s1=2 * pivot - high,
        r2=pivot + (high - low),
        s2=pivot - (high - low),
    )


def analyze_price_data(prices: Sequence[float]) -> TechnicalIndicators:
    """Compute the full indicator snapshot for the latest bar."""
    arr = _as_array(prices)
    recent = arr[-24:]  # ~24h when the series is hourly
    current = float(arr[-1]) if arr.size else 0.0
    high = float(recent.max()) if recent.size else 0.0
    low = float(recent.min()) if recent.size else 0.0
    return TechnicalIndicators(
        sma20=compute_sma(arr, 20),
        sma50=compute_sma(arr, 50),
        ema20=compute_ema(arr, 20),
        rsi=compute_rsi(arr),
        stoch_rsi=compute_stoch_rsi(arr),
        macd=compute_macd(arr),
        bollinger=compute_bollinger(arr),
        pivot_points=compute_pivot_points(high, low, current),
        volatility=compute_volatility(arr),
        trend=determine_trend(arr),
    )
