# market_engine/providers/http.py
"""HTTP plumbing shared by the provider adapters.

``get_json`` performs a GET with a small bounded retry: server errors,
rate limiting (429) and network failures are retried with exponential
backoff; other 4xx responses fail immediately.  Whatever goes wrong is
re-raised as one of the typed errors from :mod:`market_engine.errors`.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Optional

import httpx
from pydantic import ValidationError

from ..errors import MalformedResponse, ProviderError, ProviderTimeout, ProviderUnavailable


def _error_message(resp: httpx.Response) -> str:
    try:
        err_json = resp.json()
    except ValueError:
        return resp.text[:200]
    if not isinstance(err_json, dict):
        return str(err_json)[:200]
    # CoinGecko: {"error": {"status": {...}}} or {"status": {...}}; Binance: {"code", "msg"}
    error = err_json.get("error")
    if isinstance(error, dict):
        status = error.get("status")
        if isinstance(status, dict) and status.get("error_message"):
            return str(status["error_message"])
        return str(error)
    status = err_json.get("status")
    if isinstance(status, dict) and status.get("error_message"):
        return str(status["error_message"])
    return str(err_json.get("msg") or error or "")


async def get_json(
    client: httpx.AsyncClient,
    provider: str,
    url: str,
    *,
    params: Optional[Mapping[str, Any]] = None,
    headers: Optional[Mapping[str, str]] = None,
    max_attempts: int = 2,
    backoff_base: float = 1.0,
    backoff_max: float = 3.0,
    logger: Optional[logging.Logger] = None,
) -> Any:
    log = logger or logging.getLogger(provider)
    last_error: ProviderError = ProviderUnavailable(provider, f"no request made to {url}")

    for attempt in range(1, max(1, max_attempts) + 1):
        try:
            resp = await client.get(url, params=params, headers=headers)
        except httpx.TimeoutException:
            last_error = ProviderTimeout(provider)
        except httpx.HTTPError as e:
            last_error = ProviderUnavailable(provider, f"network error: {e}")
        else:
            status = resp.status_code
            if "x-ratelimit-remaining" in resp.headers:
                log.debug(
                    "%s rate: remaining=%s status=%s",
                    provider,
                    resp.headers.get("x-ratelimit-remaining"),
                    status,
                )
            if status >= 400:
                err = ProviderUnavailable(provider, f"HTTP {status}: {_error_message(resp)}", status)
                if err.is_client_error:
                    raise err
                last_error = err
            else:
                try:
                    return resp.json()
                except ValueError as e:
                    raise MalformedResponse(provider, f"invalid JSON from {url}") from e

        if attempt < max_attempts:
            delay = min(backoff_base * (2 ** (attempt - 1)), backoff_max)
            log.warning("%s attempt %s failed: %s (backoff %.2fs)", provider, attempt, last_error, delay)
            await asyncio.sleep(delay)

    raise last_error


@contextmanager
def normalizing(provider: str, what: str) -> Iterator[None]:
    """Turn schema surprises while reshaping a payload into ``MalformedResponse``."""
    try:
        yield
    except (ValidationError, KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
        raise MalformedResponse(provider, f"unexpected {what} payload: {e}") from e
