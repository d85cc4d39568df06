"""Typed errors raised by provider adapters and the data service.

Adapters never leak ``httpx`` or parsing exceptions: everything that goes
wrong while talking to a provider surfaces as a :class:`ProviderError`
subclass.  :class:`AllSourcesExhausted` is the single terminal failure
callers of :class:`~market_engine.data_service.MarketDataService` see.
"""
from __future__ import annotations

from typing import Optional


class ProviderError(Exception):
    """Base class for failures of a single provider call."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ProviderTimeout(ProviderError):
    def __init__(self, provider: str, timeout: Optional[float] = None):
        after = f" after {timeout:.1f}s" if timeout is not None else ""
        super().__init__(provider, f"timed out{after}")
        self.timeout = timeout


class ProviderUnavailable(ProviderError):
    """Non-2xx response or network failure."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(provider, message)
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500 and self.status_code != 429


class UnsupportedCoin(ProviderError):
    def __init__(self, provider: str, coin_id: str):
        super().__init__(provider, f"no mapping for coin '{coin_id}'")
        self.coin_id = coin_id


class MalformedResponse(ProviderError):
    """Payload did not match the expected schema."""


class AllSourcesExhausted(Exception):
    def __init__(self, operation: str, coin_id: Optional[str] = None):
        target = f" for {coin_id}" if coin_id else ""
        super().__init__(f"Failed to get {operation}{target} from all sources")
        self.operation = operation
        self.coin_id = coin_id


class InsufficientHistory(Exception):
    def __init__(self, coin_id: str, points: int, required: int):
        super().__init__(
            f"Insufficient price data for backtesting {coin_id}: {points} points, need {required}"
        )
        self.coin_id = coin_id
        self.points = points
        self.required = required
