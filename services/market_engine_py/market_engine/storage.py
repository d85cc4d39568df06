"""
SQLAlchemy persistence for alerts and backtest results.

The engine only relies on the small ``AlertStore``/``BacktestStore``
protocols; the classes here are the stand-alone implementation used by the
alert engine service and the tests.  Every call opens its own ``Session``.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Union

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base
from sqlalchemy.pool import StaticPool

from .alerts import Alert, AlertKind, TechnicalCondition
from .backtester import BacktestResult, Trade

Base = declarative_base()


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _aware(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=dt.timezone.utc)


def _ms_to_dt(ms: Optional[int]) -> Optional[dt.datetime]:
    return None if ms is None else dt.datetime.fromtimestamp(ms / 1000, tz=dt.timezone.utc)


def _dt_to_ms(value: Optional[dt.datetime]) -> Optional[int]:
    value = _aware(value)
    return None if value is None else int(value.timestamp() * 1000)


def make_engine(url: str) -> Engine:
    # store calls run on worker threads; an in-memory database must be one
    # connection shared by all of them
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url, future=True, poolclass=StaticPool, connect_args={"check_same_thread": False}
        )
    return create_engine(url, future=True)


# --- ORM models ---------------------------------------------------------------

class PriceAlertRow(Base):
    __tablename__ = "price_alerts"
    id = Column(Integer, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    coin_id = Column(String, nullable=False, index=True)
    coin_symbol = Column(String, nullable=False, default="")
    alert_type = Column(String, nullable=False)
    target_price = Column(Float, nullable=True)
    percent_change = Column(Float, nullable=True)
    technical_signal = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_triggered = Column(Boolean, nullable=False, default=False)
    triggered_at = Column(DateTime(timezone=True), nullable=True)
    current_price = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class BacktestResultRow(Base):
    __tablename__ = "backtest_results"
    id = Column(Integer, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    coin_id = Column(String, nullable=False)
    coin_symbol = Column(String, nullable=False, default="")
    strategy_name = Column(String, nullable=False)
    parameters = Column(JSON, nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    initial_capital = Column(Float, nullable=False)
    final_capital = Column(Float, nullable=False)
    total_return = Column(Float, nullable=False)
    total_trades = Column(Integer, nullable=False)
    winning_trades = Column(Integer, nullable=False)
    losing_trades = Column(Integer, nullable=False)
    win_rate = Column(Float, nullable=False)
    max_drawdown = Column(Float, nullable=False)
    sharpe_ratio = Column(Float, nullable=False)
    trade_history = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


# --- Alerts -------------------------------------------------------------------

def _to_alert(row: PriceAlertRow) -> Alert:
    return Alert(
        id=row.id,
        owner_id=row.owner_id,
        coin_id=row.coin_id,
        coin_symbol=row.coin_symbol,
        kind=AlertKind(row.alert_type),
        target_price=row.target_price,
        percent_change=row.percent_change,
        technical_signal=TechnicalCondition(row.technical_signal) if row.technical_signal else None,
        is_active=row.is_active,
        is_triggered=row.is_triggered,
        triggered_at=_aware(row.triggered_at),
        current_price=row.current_price,
        created_at=_aware(row.created_at),
    )


class SqlAlertStore:
    def __init__(self, engine: Union[Engine, str]):
        self.engine = make_engine(engine) if isinstance(engine, str) else engine
        Base.metadata.create_all(self.engine)  # create if missing; no destructive changes

    def create(
        self,
        owner_id: str,
        coin_id: str,
        kind: Union[AlertKind, str],
        coin_symbol: str = "",
        target_price: Optional[float] = None,
        percent_change: Optional[float] = None,
        technical_signal: Union[TechnicalCondition, str, None] = None,
    ) -> Alert:
        kind = AlertKind(kind)
        if kind in (AlertKind.PRICE_ABOVE, AlertKind.PRICE_BELOW) and target_price is None:
            raise ValueError(f"{kind.value} alerts need a target price")
        if kind == AlertKind.PERCENT_CHANGE and percent_change is None:
            raise ValueError("percent_change alerts need a percent threshold")
        if kind == AlertKind.TECHNICAL_SIGNAL and technical_signal is None:
            raise ValueError("technical_signal alerts need a technical condition")
        condition = TechnicalCondition(technical_signal) if technical_signal else None

        with Session(self.engine) as session:
            row = PriceAlertRow(
                owner_id=owner_id,
                coin_id=coin_id,
                coin_symbol=coin_symbol,
                alert_type=kind.value,
                target_price=target_price,
                percent_change=percent_change,
                technical_signal=condition.value if condition else None,
                is_active=True,
                is_triggered=False,
                created_at=_utcnow(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_alert(row)

    def get(self, alert_id: int) -> Optional[Alert]:
        with Session(self.engine) as session:
            row = session.get(PriceAlertRow, alert_id)
            return _to_alert(row) if row is not None else None

    def list_pending(self) -> List[Alert]:
        with Session(self.engine) as session:
            rows = session.execute(
                select(PriceAlertRow)
                .where(PriceAlertRow.is_active.is_(True), PriceAlertRow.is_triggered.is_(False))
                .order_by(PriceAlertRow.id)
            ).scalars().all()
            return [_to_alert(r) for r in rows]

    def list_for_owner(self, owner_id: str) -> List[Alert]:
        with Session(self.engine) as session:
            rows = session.execute(
                select(PriceAlertRow)
                .where(PriceAlertRow.owner_id == owner_id)
                .order_by(PriceAlertRow.created_at.desc(), PriceAlertRow.id.desc())
            ).scalars().all()
            return [_to_alert(r) for r in rows]

    def mark_triggered(self, alert_id: int, triggered_at: dt.datetime, current_price: float) -> bool:
        """Flip an alert to triggered; False if it was already triggered or inactive."""
        with Session(self.engine) as session:
            result = session.execute(
                update(PriceAlertRow)
                .where(
                    PriceAlertRow.id == alert_id,
                    PriceAlertRow.is_triggered.is_(False),
                    PriceAlertRow.is_active.is_(True),
                )
                .values(is_triggered=True, triggered_at=triggered_at, current_price=current_price)
            )
            session.commit()
            return result.rowcount == 1

    def deactivate(self, owner_id: str, alert_id: int) -> bool:
        with Session(self.engine) as session:
            result = session.execute(
                update(PriceAlertRow)
                .where(PriceAlertRow.id == alert_id, PriceAlertRow.owner_id == owner_id)
                .values(is_active=False)
            )
            session.commit()
            return result.rowcount == 1


# --- Backtests ----------------------------------------------------------------

@dataclass(frozen=True)
class StoredBacktest:
    id: int
    owner_id: str
    created_at: dt.datetime
    result: BacktestResult


class BacktestStore(Protocol):
    def create(self, owner_id: str, result: BacktestResult) -> int: ...

    def list_for_owner(self, owner_id: str, coin_id: Optional[str] = None, limit: int = 10) -> List[StoredBacktest]: ...

    def delete(self, owner_id: str, result_id: int) -> bool: ...


def _to_stored(row: BacktestResultRow) -> StoredBacktest:
    params: Dict[str, Any] = row.parameters or {}
    result = BacktestResult(
        initial_capital=row.initial_capital,
        final_capital=row.final_capital,
        total_return=row.total_return,
        total_trades=row.total_trades,
        winning_trades=row.winning_trades,
        losing_trades=row.losing_trades,
        win_rate=row.win_rate,
        max_drawdown=row.max_drawdown,
        sharpe_ratio=row.sharpe_ratio,
        min_confidence=params.get("min_confidence", 0),
        trade_history=[Trade(**t) for t in row.trade_history or []],
        start_ts=_dt_to_ms(row.start_date),
        end_ts=_dt_to_ms(row.end_date),
        coin_id=row.coin_id,
        coin_symbol=row.coin_symbol,
        strategy_name=row.strategy_name,
        days=params.get("days"),
    )
    return StoredBacktest(id=row.id, owner_id=row.owner_id, created_at=_aware(row.created_at), result=result)


class SqlBacktestStore:
    def __init__(self, engine: Union[Engine, str]):
        self.engine = make_engine(engine) if isinstance(engine, str) else engine
        Base.metadata.create_all(self.engine)

    def create(self, owner_id: str, result: BacktestResult) -> int:
        with Session(self.engine) as session:
            row = BacktestResultRow(
                owner_id=owner_id,
                coin_id=result.coin_id,
                coin_symbol=result.coin_symbol,
                strategy_name=result.strategy_name,
                parameters=result.parameters,
                start_date=_ms_to_dt(result.start_ts),
                end_date=_ms_to_dt(result.end_ts),
                initial_capital=result.initial_capital,
                final_capital=result.final_capital,
                total_return=result.total_return,
                total_trades=result.total_trades,
                winning_trades=result.winning_trades,
                losing_trades=result.losing_trades,
                win_rate=result.win_rate,
                max_drawdown=result.max_drawdown,
                sharpe_ratio=result.sharpe_ratio,
                trade_history=[t.to_dict() for t in result.trade_history],
                created_at=_utcnow(),
            )
            session.add(row)
            session.commit()
            return row.id

    def list_for_owner(self, owner_id: str, coin_id: Optional[str] = None, limit: int = 10) -> List[StoredBacktest]:
        stmt = select(BacktestResultRow).where(BacktestResultRow.owner_id == owner_id)
        if coin_id:
            stmt = stmt.where(BacktestResultRow.coin_id == coin_id)
        stmt = stmt.order_by(BacktestResultRow.created_at.desc(), BacktestResultRow.id.desc()).limit(limit)
        with Session(self.engine) as session:
            return [_to_stored(r) for r in session.execute(stmt).scalars().all()]

    def delete(self, owner_id: str, result_id: int) -> bool:
        with Session(self.engine) as session:
            result = session.execute(
                delete(BacktestResultRow).where(
                    BacktestResultRow.id == result_id, BacktestResultRow.owner_id == owner_id
                )
            )
            session.commit()
            return result.rowcount == 1
