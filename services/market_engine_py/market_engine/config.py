# market_engine/config.py
"""Environment-driven configuration for the market engine.

Every value can be overridden through the environment.  Values are read
once when :meth:`Settings.from_env` is called so tests can build their own
``Settings`` without touching ``os.environ``.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


# Strip quotes/whitespace so .env "KEY=value " doesn't break things
def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return default
    v = v.strip()
    if (v.startswith('"') and v.endswith('"')) or (v.startswith("'") and v.endswith("'")):
        v = v[1:-1].strip()
    return v or default


def _env_float(name: str, default: float) -> float:
    return float(_env(name, str(default)) or default)


def _env_int(name: str, default: int) -> int:
    return int(_env(name, str(default)) or default)


@dataclass(frozen=True)
class Settings:
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    coingecko_api_key: Optional[str] = None
    coingecko_api_key_header: Optional[str] = None
    binance_base_url: str = "https://api.binance.com/api/v3"

    # per-operation timeouts (seconds)
    primary_timeout: float = 8.0
    primary_heavy_timeout: float = 10.0
    fallback_timeout: float = 5.0
    fallback_market_timeout: float = 8.0

    cache_staleness_secs: float = 300.0

    http_max_attempts: int = 2
    http_backoff_base_secs: float = 1.0
    http_backoff_max_secs: float = 3.0

    default_min_confidence: int = 50
    alert_signal_min_confidence: int = 60

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            coingecko_base_url=(_env("COINGECKO_BASE_URL", cls.coingecko_base_url) or "").rstrip("/"),
            coingecko_api_key=_env("COINGECKO_API_KEY"),
            coingecko_api_key_header=_env("COINGECKO_API_KEY_HEADER"),
            binance_base_url=(_env("BINANCE_BASE_URL", cls.binance_base_url) or "").rstrip("/"),
            primary_timeout=_env_float("PRIMARY_TIMEOUT_SECS", cls.primary_timeout),
            primary_heavy_timeout=_env_float("PRIMARY_HEAVY_TIMEOUT_SECS", cls.primary_heavy_timeout),
            fallback_timeout=_env_float("FALLBACK_TIMEOUT_SECS", cls.fallback_timeout),
            fallback_market_timeout=_env_float("FALLBACK_MARKET_TIMEOUT_SECS", cls.fallback_market_timeout),
            cache_staleness_secs=_env_float("CACHE_STALENESS_SECS", cls.cache_staleness_secs),
            http_max_attempts=_env_int("HTTP_MAX_ATTEMPTS", cls.http_max_attempts),
            http_backoff_base_secs=_env_float("HTTP_BACKOFF_BASE_SECS", cls.http_backoff_base_secs),
            http_backoff_max_secs=_env_float("HTTP_BACKOFF_MAX_SECS", cls.http_backoff_max_secs),
            default_min_confidence=_env_int("DEFAULT_MIN_CONFIDENCE", cls.default_min_confidence),
            alert_signal_min_confidence=_env_int(
                "ALERT_SIGNAL_MIN_CONFIDENCE", cls.alert_signal_min_confidence
            ),
        )

    @property
    def masked_coingecko_key(self) -> Optional[str]:
        key = self.coingecko_api_key
        return f"...{key[-4:]}" if key and len(key) >= 4 else None
