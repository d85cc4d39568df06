import httpx
import pytest

from market_engine.config import Settings
from market_engine.errors import (
    MalformedResponse,
    ProviderTimeout,
    ProviderUnavailable,
    UnsupportedCoin,
)
from market_engine.models import DataSource, PricePoint
from market_engine.providers import CoinGeckoProvider, DataProvider, HealthCheck, OHLCProvider


def _provider(handler, **overrides):
    settings = Settings(http_backoff_base_secs=0.0, **overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CoinGeckoProvider(settings, client=client)


def test_satisfies_capabilities():
    provider = _provider(lambda request: httpx.Response(200, json={}))
    assert isinstance(provider, DataProvider)
    assert isinstance(provider, OHLCProvider)
    assert isinstance(provider, HealthCheck)


@pytest.mark.asyncio
async def test_get_price_sends_demo_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"bitcoin": {"usd": 50000.0, "usd_24h_change": 2.5}})

    provider = _provider(handler, coingecko_api_key="cg-demo-1234")
    quote = await provider.get_price("bitcoin")

    assert (quote.price, quote.change_24h, quote.source) == (50000.0, 2.5, DataSource.PRIMARY)
    request = seen[0]
    assert request.url.path == "/api/v3/simple/price"
    assert request.url.params["ids"] == "bitcoin"
    assert request.url.params["include_24hr_change"] == "true"
    assert request.headers["x-cg-demo-api-key"] == "cg-demo-1234"


@pytest.mark.asyncio
async def test_pro_base_url_uses_pro_header():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"bitcoin": {"usd": 1.0}})

    provider = _provider(
        handler,
        coingecko_base_url="https://pro-api.coingecko.com/api/v3",
        coingecko_api_key="cg-pro-9999",
    )
    await provider.get_price("bitcoin")
    assert seen[0].headers["x-cg-pro-api-key"] == "cg-pro-9999"
    assert "x-cg-demo-api-key" not in seen[0].headers


@pytest.mark.asyncio
async def test_get_price_unknown_coin():
    provider = _provider(lambda request: httpx.Response(200, json={}))
    with pytest.raises(UnsupportedCoin):
        await provider.get_price("not-a-coin")


@pytest.mark.asyncio
async def test_get_prices_omits_missing():
    payload = {"bitcoin": {"usd": 50000.0}, "ethereum": {"usd": 3000.0, "usd_24h_change": -1.0}}
    provider = _provider(lambda request: httpx.Response(200, json=payload))
    quotes = await provider.get_prices(["bitcoin", "ethereum", "not-a-coin"])
    assert set(quotes) == {"bitcoin", "ethereum"}
    assert quotes["ethereum"].change_24h == -1.0


@pytest.mark.asyncio
async def test_retries_server_error_then_succeeds():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503, json={"status": {"error_message": "busy"}})
        return httpx.Response(200, json={"bitcoin": {"usd": 42.0}})

    quote = await _provider(handler).get_price("bitcoin")
    assert quote.price == 42.0
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_rate_limit_exhausts_attempts():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(429, json={"status": {"error_message": "rate limited"}})

    with pytest.raises(ProviderUnavailable) as exc:
        await _provider(handler).get_price("bitcoin")
    assert exc.value.status_code == 429
    assert "rate limited" in str(exc.value)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": "invalid vs_currency"})

    with pytest.raises(ProviderUnavailable) as exc:
        await _provider(handler).get_price("bitcoin")
    assert exc.value.status_code == 400
    assert "invalid vs_currency" in str(exc.value)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_not_found_coin_is_unsupported():
    provider = _provider(lambda request: httpx.Response(404, json={"error": "coin not found"}))
    with pytest.raises(UnsupportedCoin):
        await provider.get_market_chart("not-a-coin", 30)


@pytest.mark.asyncio
async def test_timeout_maps_to_provider_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderTimeout):
        await _provider(handler).get_price("bitcoin")


@pytest.mark.asyncio
async def test_network_error_maps_to_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderUnavailable) as exc:
        await _provider(handler).get_price("bitcoin")
    assert exc.value.status_code is None


@pytest.mark.asyncio
async def test_invalid_json_is_malformed():
    provider = _provider(lambda request: httpx.Response(200, content=b"<html>oops</html>"))
    with pytest.raises(MalformedResponse):
        await provider.get_price("bitcoin")


@pytest.mark.asyncio
async def test_market_chart_sorted_and_daily_interval():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "prices": [[3000, 12.0], [1000, 10.0], [2000, 11.0], [3000, 13.0]],
                "market_caps": [[1000, 5.0]],
                "total_volumes": [],
            },
        )

    chart = await _provider(handler).get_market_chart("bitcoin", 90)
    assert chart.prices == [PricePoint(1000, 10.0), PricePoint(2000, 11.0), PricePoint(3000, 13.0)]
    assert chart.closes() == [10.0, 11.0, 13.0]
    assert seen[0].url.path == "/api/v3/coins/bitcoin/market_chart"
    assert seen[0].url.params["interval"] == "daily"


@pytest.mark.asyncio
async def test_market_chart_short_range_has_no_interval():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"prices": [[1000, 10.0]]})

    await _provider(handler).get_market_chart("bitcoin", 7)
    assert "interval" not in seen[0].url.params


@pytest.mark.asyncio
async def test_market_chart_malformed():
    provider = _provider(lambda request: httpx.Response(200, json={"prices": "oops"}))
    with pytest.raises(MalformedResponse):
        await provider.get_market_chart("bitcoin", 30)


@pytest.mark.asyncio
async def test_market_chart_empty_is_malformed():
    provider = _provider(lambda request: httpx.Response(200, json={"prices": []}))
    with pytest.raises(MalformedResponse):
        await provider.get_market_chart("bitcoin", 30)


@pytest.mark.asyncio
async def test_market_coins():
    rows = [
        {
            "id": "bitcoin",
            "symbol": "btc",
            "name": "Bitcoin",
            "image": "https://example.com/btc.png",
            "current_price": 50000,
            "market_cap": None,
            "market_cap_rank": 1,
            "price_change_percentage_24h": 1.5,
        }
    ]
    coins = await _provider(lambda request: httpx.Response(200, json=rows)).get_market_coins(1, 10)
    assert len(coins) == 1
    assert coins[0].market_cap == 0.0
    assert coins[0].current_price == 50000.0


@pytest.mark.asyncio
async def test_coin_details():
    payload = {
        "id": "bitcoin",
        "symbol": "btc",
        "name": "Bitcoin",
        "image": {"large": "l.png", "small": "s.png", "thumb": "t.png"},
        "description": {"en": "Digital gold."},
        "links": {"homepage": ["https://bitcoin.org", ""], "blockchain_site": ["", "https://x"]},
        "market_data": {
            "current_price": {"usd": 50000},
            "market_cap": {"usd": 9.5e11},
            "market_cap_rank": 1,
            "ath": {"usd": 69000},
            "price_change_percentage_24h": 2.0,
        },
    }
    details = await _provider(lambda request: httpx.Response(200, json=payload)).get_coin_details("bitcoin")
    assert details.market_data.current_price == 50000.0
    assert details.market_data.ath == 69000.0
    assert details.description == "Digital gold."
    assert details.homepage == ["https://bitcoin.org"]
    assert details.blockchain_sites == ["https://x"]
    assert details.image.thumb == "t.png"


@pytest.mark.asyncio
async def test_trending_and_ping():
    def handler(request):
        if request.url.path.endswith("/ping"):
            return httpx.Response(200, json={"gecko_says": "(V3) To the Moon!"})
        return httpx.Response(
            200,
            json={"coins": [{"item": {"id": "pepe", "name": "Pepe", "symbol": "PEPE", "market_cap_rank": 30}}]},
        )

    provider = _provider(handler)
    trending = await provider.get_trending()
    assert [c.id for c in trending] == ["pepe"]
    assert await provider.ping() is True
