"""
Turn an indicator snapshot into a buy/sell/hold decision.

Each check casts at most one bullish or bearish vote and appends exactly
one reason when it does, always in the same order: RSI, trend, MACD,
moving averages.  Downstream consumers display the reasons as-is, so the
order is part of the contract.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List

from .indicators import TechnicalIndicators, Trend

RSI_OVERSOLD = 30.0
RSI_OVERBOUGHT = 70.0
MIN_CONFIDENCE_FRACTION = 0.3


class SignalAction(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


@dataclass(frozen=True)
class Signal:
    signal: SignalAction
    confidence: int
    reasons: List[str] = field(default_factory=list)


def generate_signal(indicators: TechnicalIndicators, current_price: float) -> Signal:
    reasons: List[str] = []
    bullish = 0
    bearish = 0

    if indicators.rsi < RSI_OVERSOLD:
        bullish += 1
        reasons.append(f"RSI is {indicators.rsi:.1f} (Oversold - Buy Signal)")
    elif indicators.rsi > RSI_OVERBOUGHT:
        bearish += 1
        reasons.append(f"RSI is {indicators.rsi:.1f} (Overbought - Sell Signal)")

    if indicators.trend == Trend.BULLISH:
        bullish += 1
        reasons.append("Price above SMA20 above SMA50 (Bullish Trend)")
    elif indicators.trend == Trend.BEARISH:
        bearish += 1
        reasons.append("Price below SMA20 below SMA50 (Bearish Trend)")

    if indicators.macd.histogram > 0:
        bullish += 1
        reasons.append("MACD Histogram positive (Bullish Momentum)")
    else:
        bearish += 1
        reasons.append("MACD Histogram negative (Bearish Momentum)")

    if current_price > indicators.sma20 and current_price > indicators.sma50:
        bullish += 1
        reasons.append("Price above SMA 20 & 50 (Uptrend)")
    elif current_price < indicators.sma20 and current_price < indicators.sma50:
        bearish += 1
        reasons.append("Price below SMA 20 & 50 (Downtrend)")

    total = bullish + bearish
    fraction = abs(bullish - bearish) / total if total else 0.0

    action = SignalAction.HOLD
    if bullish > bearish and fraction > MIN_CONFIDENCE_FRACTION:
        action = SignalAction.BUY
    elif bearish > bullish and fraction > MIN_CONFIDENCE_FRACTION:
        action = SignalAction.SELL

    return Signal(signal=action, confidence=int(round(fraction * 100)), reasons=reasons)
