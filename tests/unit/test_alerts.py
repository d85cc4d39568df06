import datetime as dt
import time

import pytest

from conftest import FakeProvider, MemoryAlertStore
from market_engine.alerts import (
    Alert,
    AlertEvaluator,
    AlertKind,
    MarketSnapshot,
    TechnicalCondition,
    should_trigger,
)
from market_engine.signals import Signal, SignalAction

NOW = dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone.utc)
RISING = [100.0 + i for i in range(90)]


def _alert(alert_id, coin_id="bitcoin", kind=AlertKind.PRICE_ABOVE, **kwargs):
    return Alert(id=alert_id, owner_id="user-1", coin_id=coin_id, kind=kind, coin_symbol=coin_id[:3], **kwargs)


def _evaluator(service, store, publisher=None):
    return AlertEvaluator(service, store, publisher=publisher, clock=lambda: NOW)


# --- should_trigger -------------------------------------------------------------

def test_price_thresholds_are_inclusive():
    snap = MarketSnapshot(price=100.0)
    assert should_trigger(_alert(1, target_price=100.0), snap)
    assert not should_trigger(_alert(1, target_price=100.01), snap)
    assert should_trigger(_alert(2, kind=AlertKind.PRICE_BELOW, target_price=100.0), snap)
    assert not should_trigger(_alert(2, kind=AlertKind.PRICE_BELOW, target_price=99.0), snap)


def test_percent_change_uses_magnitude():
    alert = _alert(1, kind=AlertKind.PERCENT_CHANGE, percent_change=5.0)
    assert should_trigger(alert, MarketSnapshot(price=1.0, change_24h=-6.0))
    assert should_trigger(alert, MarketSnapshot(price=1.0, change_24h=5.0))
    assert not should_trigger(alert, MarketSnapshot(price=1.0, change_24h=4.9))
    assert not should_trigger(alert, MarketSnapshot(price=1.0))


def test_signal_conditions_need_confidence_above_threshold():
    buy = _alert(1, kind=AlertKind.TECHNICAL_SIGNAL, technical_signal=TechnicalCondition.BUY)
    sell = _alert(2, kind=AlertKind.TECHNICAL_SIGNAL, technical_signal=TechnicalCondition.SELL)
    at_threshold = MarketSnapshot(price=1.0, signal=Signal(SignalAction.BUY, 60, []))
    above = MarketSnapshot(price=1.0, signal=Signal(SignalAction.BUY, 61, []))
    assert not should_trigger(buy, at_threshold)
    assert should_trigger(buy, above)
    assert not should_trigger(sell, above)
    assert not should_trigger(buy, MarketSnapshot(price=1.0))


def test_rsi_conditions():
    oversold = _alert(1, kind=AlertKind.TECHNICAL_SIGNAL, technical_signal=TechnicalCondition.RSI_OVERSOLD)
    overbought = _alert(2, kind=AlertKind.TECHNICAL_SIGNAL, technical_signal=TechnicalCondition.RSI_OVERBOUGHT)
    signal = Signal(SignalAction.HOLD, 0, [])
    assert should_trigger(oversold, MarketSnapshot(price=1.0, signal=signal, rsi=29.0))
    assert not should_trigger(oversold, MarketSnapshot(price=1.0, signal=signal, rsi=30.0))
    assert should_trigger(overbought, MarketSnapshot(price=1.0, signal=signal, rsi=70.5))
    assert not should_trigger(overbought, MarketSnapshot(price=1.0, signal=signal, rsi=None))


# --- AlertEvaluator -------------------------------------------------------------

@pytest.mark.asyncio
async def test_one_price_lookup_per_coin(make_service):
    provider = FakeProvider("coingecko", prices={"bitcoin": 50000.0})
    store = MemoryAlertStore([
        _alert(1, target_price=49000.0),
        _alert(2, kind=AlertKind.PRICE_BELOW, target_price=40000.0),
    ])

    report = await _evaluator(make_service(provider), store).evaluate()

    assert report.checked == 2
    assert [r.alert_id for r in report.triggered] == [1]
    assert provider.count("get_price") == 1
    assert provider.count("get_market_chart") == 0
    assert store.alerts[1].is_triggered
    assert store.alerts[1].triggered_at == NOW
    assert store.alerts[1].current_price == 50000.0


@pytest.mark.asyncio
async def test_triggered_alerts_are_never_reevaluated(make_service):
    provider = FakeProvider("coingecko", prices={"bitcoin": 50000.0})
    store = MemoryAlertStore([_alert(1, target_price=49000.0)])
    evaluator = _evaluator(make_service(provider), store)

    first = await evaluator.evaluate()
    second = await evaluator.evaluate()

    assert len(first.triggered) == 1
    assert (second.checked, second.triggered) == (0, [])
    assert store.mark_calls == [1]


@pytest.mark.asyncio
async def test_inactive_and_triggered_alerts_are_skipped(make_service):
    provider = FakeProvider("coingecko", prices={"bitcoin": 50000.0})
    store = MemoryAlertStore([
        _alert(1, target_price=1.0, is_active=False),
        _alert(2, target_price=1.0, is_triggered=True),
    ])

    report = await _evaluator(make_service(provider), store).evaluate()

    assert report.checked == 0
    assert provider.calls == []


@pytest.mark.asyncio
async def test_technical_alerts_share_one_chart(make_service):
    provider = FakeProvider("coingecko", prices={"bitcoin": 190.0}, charts={"bitcoin": RISING})
    store = MemoryAlertStore([
        _alert(1, kind=AlertKind.TECHNICAL_SIGNAL, technical_signal=TechnicalCondition.RSI_OVERBOUGHT),
        _alert(2, kind=AlertKind.TECHNICAL_SIGNAL, technical_signal=TechnicalCondition.RSI_OVERSOLD),
        _alert(3, target_price=150.0),
    ])

    report = await _evaluator(make_service(provider), store).evaluate()

    assert sorted(r.alert_id for r in report.triggered) == [1, 3]
    assert provider.calls.count(("get_market_chart", "bitcoin", 90)) == 1
    assert provider.count("get_price") == 1


@pytest.mark.asyncio
async def test_failure_for_one_coin_does_not_block_others(make_service):
    provider = FakeProvider("coingecko", prices={"bitcoin": 50000.0})
    store = MemoryAlertStore([
        _alert(1, coin_id="ghost", target_price=1.0),
        _alert(2, target_price=49000.0),
    ])

    report = await _evaluator(make_service(provider), store).evaluate()

    assert [r.alert_id for r in report.triggered] == [2]
    assert "ghost" in report.failed_coins
    assert not store.alerts[1].is_triggered


@pytest.mark.asyncio
async def test_chart_failure_skips_the_whole_coin(make_service):
    provider = FakeProvider("coingecko", prices={"bitcoin": 50000.0})
    store = MemoryAlertStore([
        _alert(1, target_price=49000.0),
        _alert(2, kind=AlertKind.TECHNICAL_SIGNAL, technical_signal=TechnicalCondition.BUY),
    ])

    report = await _evaluator(make_service(provider), store).evaluate()

    assert report.triggered == []
    assert report.failed_coins["bitcoin"] == "Failed to get chart data for bitcoin from all sources"


@pytest.mark.asyncio
async def test_publisher_receives_records(make_service):
    provider = FakeProvider("coingecko", prices={"ethereum": 3000.0})
    store = MemoryAlertStore([_alert(7, coin_id="ethereum", kind=AlertKind.PRICE_BELOW, target_price=3100.0)])
    published = []

    await _evaluator(make_service(provider), store, publisher=published.append).evaluate()

    assert len(published) == 1
    payload = published[0].to_dict()
    assert payload == {
        "alertId": 7,
        "userId": "user-1",
        "coinId": "ethereum",
        "coinSymbol": "eth",
        "alertType": "price_below",
        "currentPrice": 3000.0,
        "targetPrice": 3100.0,
        "percentChange": None,
        "technicalSignal": None,
        "triggeredAt": "2024-05-01T12:00:00+00:00",
    }


@pytest.mark.asyncio
async def test_publisher_failure_keeps_trigger(make_service):
    provider = FakeProvider("coingecko", prices={"bitcoin": 50000.0})
    store = MemoryAlertStore([_alert(1, target_price=1.0)])

    def broken(record):
        raise ConnectionError("broker down")

    report = await _evaluator(make_service(provider), store, publisher=broken).evaluate()

    assert len(report.triggered) == 1
    assert store.alerts[1].is_triggered


@pytest.mark.asyncio
async def test_lost_race_emits_nothing(make_service):
    class RacingStore(MemoryAlertStore):
        def mark_triggered(self, alert_id, triggered_at, current_price):
            return False

    provider = FakeProvider("coingecko", prices={"bitcoin": 50000.0})
    published = []

    report = await _evaluator(
        make_service(provider), RacingStore([_alert(1, target_price=1.0)]), publisher=published.append
    ).evaluate()

    assert report.triggered == []
    assert published == []


@pytest.mark.asyncio
async def test_store_error_for_one_coin_keeps_other_triggers(make_service):
    class FlakyStore(MemoryAlertStore):
        def mark_triggered(self, alert_id, triggered_at, current_price):
            if alert_id == 1:
                raise RuntimeError("database is locked")
            return super().mark_triggered(alert_id, triggered_at, current_price)

    provider = FakeProvider("coingecko", prices={"bitcoin": 50000.0, "ethereum": 3000.0})
    store = FlakyStore([
        _alert(1, target_price=49000.0),
        _alert(2, coin_id="ethereum", target_price=2900.0),
    ])

    report = await _evaluator(make_service(provider), store).evaluate()

    assert [r.alert_id for r in report.triggered] == [2]
    assert report.failed_coins["bitcoin"] == "RuntimeError: database is locked"
    assert store.alerts[2].is_triggered


@pytest.mark.asyncio
async def test_slow_store_writes_run_concurrently(make_service):
    class SlowStore(MemoryAlertStore):
        def mark_triggered(self, alert_id, triggered_at, current_price):
            time.sleep(0.2)
            return super().mark_triggered(alert_id, triggered_at, current_price)

    coins = ["bitcoin", "ethereum", "solana", "cardano"]
    provider = FakeProvider("coingecko", prices={c: 100.0 for c in coins})
    store = SlowStore([_alert(i, coin_id=c, target_price=50.0) for i, c in enumerate(coins, start=1)])

    started = time.perf_counter()
    report = await _evaluator(make_service(provider), store).evaluate()
    elapsed = time.perf_counter() - started

    assert len(report.triggered) == 4
    assert elapsed < 0.6
