"""
Signal-driven backtesting.

``run_backtest`` replays a price series bar by bar: at every bar the
indicators are recomputed over the history seen so far (never the future)
and the resulting signal decides whether to go all-in long or close the
position.  A position still open after the last bar is closed at the final
price; that close counts towards wins/losses but is not recorded as a trade.

``BacktestRunner`` fetches the history through the resilient data service,
runs the replay and persists the result.
"""
from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import AllSourcesExhausted, InsufficientHistory
from .indicators import TechnicalIndicators, analyze_price_data
from .logs import get_logger
from .models import PricePoint
from .signals import Signal, SignalAction, generate_signal

logger = get_logger("backtester")

WARMUP_BARS = 20
MIN_HISTORY_POINTS = 30
TRADE_HISTORY_LIMIT = 20


@dataclass(frozen=True)
class Trade:
    type: str  # "buy" or "sell"
    price: float
    confidence: int
    timestamp: Optional[int] = None
    profit: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class BacktestResult:
    initial_capital: float
    final_capital: float
    total_return: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    max_drawdown: float
    sharpe_ratio: float
    min_confidence: int
    trade_history: List[Trade] = field(default_factory=list)
    start_ts: Optional[int] = None
    end_ts: Optional[int] = None
    coin_id: str = ""
    coin_symbol: str = ""
    strategy_name: str = "Technical Signals"
    days: Optional[int] = None

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "days": self.days,
            "initial_capital": self.initial_capital,
            "min_confidence": self.min_confidence,
        }

    def to_dict(self) -> Dict[str, Any]:
        out = dataclasses.asdict(self)
        out["parameters"] = self.parameters
        return out


def _split_series(
    series: Sequence[Union[PricePoint, float]],
) -> Tuple[List[float], Optional[List[int]]]:
    if series and isinstance(series[0], PricePoint):
        return [p.price for p in series], [p.timestamp for p in series]
    return [float(p) for p in series], None


def _sharpe(returns: List[float]) -> float:
    """Mean over population std of per-sell returns; not annualised."""
    if not returns:
        return 0.0
    arr = np.asarray(returns, dtype=float)
    std = arr.std(ddof=0)
    return float(arr.mean() / std) if std > 0 else 0.0


def run_backtest(
    series: Sequence[Union[PricePoint, float]],
    initial_capital: float = 10000.0,
    min_confidence: int = 50,
    analyzer: Callable[[Sequence[float]], TechnicalIndicators] = analyze_price_data,
    signal_fn: Callable[[TechnicalIndicators, float], Signal] = generate_signal,
    history_limit: int = TRADE_HISTORY_LIMIT,
) -> BacktestResult:
    prices, timestamps = _split_series(series)

    capital = float(initial_capital)
    position = 0.0
    trades = 0
    wins = 0
    losses = 0
    history: List[Trade] = []
    max_capital = float(initial_capital)
    max_drawdown = 0.0

    for i in range(WARMUP_BARS, len(prices) - 1):
        price = prices[i]
        signal = signal_fn(analyzer(prices[: i + 1]), price)
        ts = timestamps[i] if timestamps else None

        if signal.signal == SignalAction.BUY and position == 0 and signal.confidence >= min_confidence:
            position = capital / price
            capital = 0.0
            trades += 1
            history.append(Trade("buy", price, signal.confidence, ts))
        elif signal.signal == SignalAction.SELL and position > 0 and signal.confidence >= min_confidence:
            capital = position * price
            profit = capital - initial_capital
            if profit > 0:
                wins += 1
            else:
                losses += 1
            position = 0.0
            trades += 1
            history.append(Trade("sell", price, signal.confidence, ts, profit))

            max_capital = max(max_capital, capital)
            drawdown = (max_capital - capital) / max_capital * 100
            max_drawdown = max(max_drawdown, drawdown)

    if position > 0:
        capital = position * prices[-1]
        if capital - initial_capital > 0:
            wins += 1
        else:
            losses += 1

    total_return = (capital - initial_capital) / initial_capital * 100
    win_rate = wins / trades * 100 if trades else 0.0
    sell_returns = [t.profit / initial_capital * 100 for t in history if t.type == "sell" and t.profit is not None]

    return BacktestResult(
        initial_capital=float(initial_capital),
        final_capital=round(capital, 2),
        total_return=total_return,
        total_trades=trades,
        winning_trades=wins,
        losing_trades=losses,
        win_rate=win_rate,
        max_drawdown=max_drawdown,
        sharpe_ratio=_sharpe(sell_returns),
        min_confidence=min_confidence,
        trade_history=history[-history_limit:] if history_limit > 0 else [],
        start_ts=timestamps[0] if timestamps else None,
        end_ts=timestamps[-1] if timestamps else None,
    )


class BacktestRunner:
    """Fetch history, replay it and persist the outcome."""

    def __init__(self, data_service, store=None, default_min_confidence: Optional[int] = None):
        self.data_service = data_service
        self.store = store
        if default_min_confidence is None:
            default_min_confidence = data_service.settings.default_min_confidence
        self.default_min_confidence = default_min_confidence

    async def run(
        self,
        owner_id: str,
        coin_id: str,
        coin_symbol: str,
        days: int = 90,
        initial_capital: float = 10000.0,
        min_confidence: Optional[int] = None,
        strategy_name: str = "Technical Signals",
    ) -> Tuple[Optional[int], BacktestResult]:
        if min_confidence is None:
            min_confidence = self.default_min_confidence
        chart = await self.data_service.get_market_chart(coin_id, days)
        if len(chart.prices) < MIN_HISTORY_POINTS:
            raise InsufficientHistory(coin_id, len(chart.prices), MIN_HISTORY_POINTS)

        started = dt.datetime.now(dt.timezone.utc)
        result = run_backtest(chart.prices, initial_capital=initial_capital, min_confidence=min_confidence)
        result = dataclasses.replace(
            result, coin_id=coin_id, coin_symbol=coin_symbol, strategy_name=strategy_name, days=days
        )
        logger.info(
            "Backtest %s (%s, %sd, %s source): return %.2f%% over %d trades in %.2fs",
            coin_id,
            strategy_name,
            days,
            chart.source.value,
            result.total_return,
            result.total_trades,
            (dt.datetime.now(dt.timezone.utc) - started).total_seconds(),
        )

        result_id = None
        if self.store is not None:
            result_id = await asyncio.to_thread(self.store.create, owner_id, result)
        return result_id, result

    async def run_many(
        self,
        owner_id: str,
        coins: Sequence[Tuple[str, str]],
        **kwargs: Any,
    ) -> Dict[str, BacktestResult]:
        """Backtest several ``(coin_id, coin_symbol)`` pairs, skipping coins that fail."""
        results: Dict[str, BacktestResult] = {}
        for coin_id, coin_symbol in coins:
            try:
                _, results[coin_id] = await self.run(owner_id, coin_id, coin_symbol, **kwargs)
            except (AllSourcesExhausted, InsufficientHistory) as e:
                logger.warning("Skipping backtest for %s: %s", coin_id, e)
        return results
