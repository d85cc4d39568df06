"""
Alert evaluation against live market data.

Pending alerts (active and not yet triggered) are grouped by coin so each
coin costs one price lookup, plus one 90-day chart when any of its alerts
is a technical one.  Coin groups are evaluated concurrently and a data
failure for one coin only skips that coin.  Triggering is terminal: the
store flips ``is_triggered`` once and later runs never see the alert again.
"""
from __future__ import annotations

import asyncio
import datetime as dt
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .errors import AllSourcesExhausted, ProviderError
from .indicators import analyze_price_data
from .logs import get_logger
from .signals import RSI_OVERBOUGHT, RSI_OVERSOLD, Signal, SignalAction, generate_signal

logger = get_logger("alert_evaluator")

TECHNICAL_CHART_DAYS = 90


class AlertKind(str, Enum):
    PRICE_ABOVE = "price_above"
    PRICE_BELOW = "price_below"
    PERCENT_CHANGE = "percent_change"
    TECHNICAL_SIGNAL = "technical_signal"


class TechnicalCondition(str, Enum):
    BUY = "buy"
    SELL = "sell"
    RSI_OVERSOLD = "rsi_oversold"
    RSI_OVERBOUGHT = "rsi_overbought"


@dataclass(frozen=True)
class Alert:
    id: int
    owner_id: str
    coin_id: str
    kind: AlertKind
    coin_symbol: str = ""
    target_price: Optional[float] = None
    percent_change: Optional[float] = None
    technical_signal: Optional[TechnicalCondition] = None
    is_active: bool = True
    is_triggered: bool = False
    triggered_at: Optional[dt.datetime] = None
    current_price: Optional[float] = None
    created_at: Optional[dt.datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.is_active and not self.is_triggered


@dataclass(frozen=True)
class TriggerRecord:
    alert_id: int
    owner_id: str
    coin_id: str
    coin_symbol: str
    kind: AlertKind
    current_price: float
    triggered_at: dt.datetime
    target_price: Optional[float] = None
    percent_change: Optional[float] = None
    technical_signal: Optional[TechnicalCondition] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alertId": self.alert_id,
            "userId": self.owner_id,
            "coinId": self.coin_id,
            "coinSymbol": self.coin_symbol,
            "alertType": self.kind.value,
            "currentPrice": self.current_price,
            "targetPrice": self.target_price,
            "percentChange": self.percent_change,
            "technicalSignal": self.technical_signal.value if self.technical_signal else None,
            "triggeredAt": self.triggered_at.isoformat(),
        }


@dataclass(frozen=True)
class MarketSnapshot:
    price: float
    change_24h: Optional[float] = None
    signal: Optional[Signal] = None
    rsi: Optional[float] = None


@dataclass
class EvaluationReport:
    checked: int = 0
    triggered: List[TriggerRecord] = field(default_factory=list)
    failed_coins: Dict[str, str] = field(default_factory=dict)


class AlertStore(Protocol):
    def list_pending(self) -> List[Alert]: ...

    def mark_triggered(self, alert_id: int, triggered_at: dt.datetime, current_price: float) -> bool: ...


def should_trigger(alert: Alert, snapshot: MarketSnapshot, min_signal_confidence: int = 60) -> bool:
    price = snapshot.price
    if alert.kind == AlertKind.PRICE_ABOVE:
        return price >= (alert.target_price or 0.0)
    if alert.kind == AlertKind.PRICE_BELOW:
        return price <= (alert.target_price or 0.0)
    if alert.kind == AlertKind.PERCENT_CHANGE:
        return abs(snapshot.change_24h or 0.0) >= abs(alert.percent_change or 0.0)
    if alert.kind == AlertKind.TECHNICAL_SIGNAL:
        sig = snapshot.signal
        if sig is None:
            return False
        if alert.technical_signal == TechnicalCondition.BUY:
            return sig.signal == SignalAction.BUY and sig.confidence > min_signal_confidence
        if alert.technical_signal == TechnicalCondition.SELL:
            return sig.signal == SignalAction.SELL and sig.confidence > min_signal_confidence
        if alert.technical_signal == TechnicalCondition.RSI_OVERSOLD:
            return snapshot.rsi is not None and snapshot.rsi < RSI_OVERSOLD
        if alert.technical_signal == TechnicalCondition.RSI_OVERBOUGHT:
            return snapshot.rsi is not None and snapshot.rsi > RSI_OVERBOUGHT
    return False


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class AlertEvaluator:
    def __init__(
        self,
        data_service,
        store: AlertStore,
        publisher: Optional[Callable[[TriggerRecord], Any]] = None,
        min_signal_confidence: Optional[int] = None,
        clock: Callable[[], dt.datetime] = _utcnow,
    ):
        self.data_service = data_service
        self.store = store
        self.publisher = publisher
        if min_signal_confidence is None:
            min_signal_confidence = data_service.settings.alert_signal_min_confidence
        self.min_signal_confidence = min_signal_confidence
        self._clock = clock

    async def evaluate(self) -> EvaluationReport:
        pending = await asyncio.to_thread(self.store.list_pending)
        alerts = [a for a in pending if a.is_pending]
        report = EvaluationReport(checked=len(alerts))
        if not alerts:
            logger.info("No alerts to check")
            return report

        by_coin: Dict[str, List[Alert]] = defaultdict(list)
        for alert in alerts:
            by_coin[alert.coin_id].append(alert)

        coins = list(by_coin)
        outcomes = await asyncio.gather(
            *(self._evaluate_coin(c, by_coin[c]) for c in coins), return_exceptions=True
        )
        for coin_id, outcome in zip(coins, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("Alert check for %s aborted: %r", coin_id, outcome)
                report.failed_coins[coin_id] = f"{type(outcome).__name__}: {outcome}"
                continue
            triggered, error = outcome
            report.triggered.extend(triggered)
            if error is not None:
                report.failed_coins[coin_id] = error

        logger.info(
            "Alert check completed: checked=%d triggered=%d failed_coins=%d",
            report.checked,
            len(report.triggered),
            len(report.failed_coins),
        )
        return report

    async def _snapshot(self, coin_id: str, technical: bool) -> MarketSnapshot:
        quote = await self.data_service.get_price(coin_id)
        if not technical:
            return MarketSnapshot(price=quote.price, change_24h=quote.change_24h)

        chart = await self.data_service.get_market_chart(coin_id, TECHNICAL_CHART_DAYS)
        prices = chart.closes()
        if not prices:
            return MarketSnapshot(price=quote.price, change_24h=quote.change_24h)
        indicators = analyze_price_data(prices)
        return MarketSnapshot(
            price=quote.price,
            change_24h=quote.change_24h,
            signal=generate_signal(indicators, quote.price),
            rsi=indicators.rsi,
        )

    async def _evaluate_coin(
        self, coin_id: str, alerts: Sequence[Alert]
    ) -> Tuple[List[TriggerRecord], Optional[str]]:
        technical = any(a.kind == AlertKind.TECHNICAL_SIGNAL for a in alerts)
        try:
            snapshot = await self._snapshot(coin_id, technical)
        except (AllSourcesExhausted, ProviderError) as e:
            logger.error("Error checking alerts for %s: %s", coin_id, e)
            return [], str(e)

        triggered: List[TriggerRecord] = []
        for alert in alerts:
            if not should_trigger(alert, snapshot, self.min_signal_confidence):
                continue
            now = self._clock()
            marked = await asyncio.to_thread(self.store.mark_triggered, alert.id, now, snapshot.price)
            if not marked:
                logger.info("Alert %s was already triggered, skipping", alert.id)
                continue
            record = TriggerRecord(
                alert_id=alert.id,
                owner_id=alert.owner_id,
                coin_id=alert.coin_id,
                coin_symbol=alert.coin_symbol,
                kind=alert.kind,
                current_price=snapshot.price,
                triggered_at=now,
                target_price=alert.target_price,
                percent_change=alert.percent_change,
                technical_signal=alert.technical_signal,
            )
            logger.info("Alert %s triggered: %s %s at %.6g", alert.id, coin_id, alert.kind.value, snapshot.price)
            triggered.append(record)
            self._publish(record)
        return triggered, None

    def _publish(self, record: TriggerRecord) -> None:
        if self.publisher is None:
            return
        try:
            self.publisher(record)
        except Exception:
            # the alert is already marked triggered; delivery is best effort
            logger.exception("Failed to publish trigger for alert %s", record.alert_id)
