import json
from datetime import timedelta

import pytest
import requests

from app.core.clock import utc_now
from app.core.config import settings
from app.core.exceptions import NoCapacity, ProviderRateLimited, ProviderUnavailable
from app.services import alpha_vantage_client
from app.services.alpha_vantage_client import AlphaVantageClient
from app.services.credential_pool import KEY_INVALID, KEY_THROTTLED, KEY_VALID, NoCapacitySignal, ProviderKey


class FakePool:
    def __init__(self, lease=None):
        self.lease = lease if lease is not None else ProviderKey(credential_id=11, provider="alpha_vantage", api_key="TESTKEY")
        self.acquired = []
        self.blocked = []

    def acquire_key(self, provider, user_id=None):
        self.acquired.append((provider, user_id))
        return self.lease

    def block(self, credential_id, seconds, reason=""):
        self.blocked.append((credential_id, seconds, reason))
        return True


def _install_time_series(monkeypatch, responses):
    """responses maps TimeSeries method name to a payload or an exception instance"""
    created = []

    class FakeTimeSeries:
        def __init__(self, key=None, output_format=None):
            created.append((key, output_format))

        def __getattr__(self, method):
            if method not in responses:
                raise AttributeError(method)

            def call(**kwargs):
                result = responses[method]
                if isinstance(result, Exception):
                    raise result
                return result, None

            return call

    monkeypatch.setattr(alpha_vantage_client, "StatusCheckedTimeSeries", FakeTimeSeries)
    return created


GLOBAL_QUOTE = {
    "01. symbol": "IBM",
    "02. open": "180.0000",
    "03. high": "183.5000",
    "04. low": "179.2500",
    "05. price": "182.0000",
    "06. volume": "3551212",
    "07. latest trading day": "2026-03-02",
    "08. previous close": "180.0000",
    "09. change": "2.0000",
    "10. change percent": "1.1111%",
}


@pytest.mark.asyncio
async def test_get_quote_normalizes_global_quote(monkeypatch):
    created = _install_time_series(monkeypatch, {"get_quote_endpoint": GLOBAL_QUOTE})
    pool = FakePool()

    quote = await AlphaVantageClient(pool).get_quote("ibm", user_id=3)

    assert created == [("TESTKEY", "json")]
    assert pool.acquired == [("alpha_vantage", 3)]
    assert quote.symbol == "IBM"
    assert quote.price == 182.0
    assert quote.change == 2.0
    assert quote.change_percent == pytest.approx(2.0 / 180.0 * 100)
    assert quote.volume == 3551212.0
    assert quote.day_high == 183.5
    assert quote.source == "alpha_vantage"


@pytest.mark.asyncio
async def test_get_quote_without_capacity_never_calls_provider(monkeypatch):
    created = _install_time_series(monkeypatch, {"get_quote_endpoint": GLOBAL_QUOTE})
    client = AlphaVantageClient(FakePool(lease=NoCapacitySignal(provider="alpha_vantage")))

    with pytest.raises(NoCapacity):
        await client.get_quote("IBM")

    assert created == []
    assert client.get_metrics()["no_capacity"] == 1


@pytest.mark.asyncio
async def test_throttle_notice_blocks_key_and_raises_rate_limited(monkeypatch):
    note = ValueError(
        "Thank you for using Alpha Vantage! Our standard API call frequency is 5 calls per minute."
    )
    _install_time_series(monkeypatch, {"get_quote_endpoint": note})
    pool = FakePool()

    with pytest.raises(ProviderRateLimited):
        await AlphaVantageClient(pool).get_quote("IBM")

    assert pool.blocked[0][:2] == (11, settings.ALPHA_VANTAGE_RATE_LIMIT_BLOCK_SECONDS)


def _http_response(status_code, body):
    response = requests.Response()
    response.status_code = status_code
    response._content = body
    response.url = "https://www.alphavantage.co/query"
    return response


def _install_http(monkeypatch, status_code, body):
    urls = []

    def fake_get(url, **kwargs):
        urls.append(url)
        return _http_response(status_code, body)

    monkeypatch.setattr(requests, "get", fake_get)
    return urls


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"Too Many Requests", b'{"message": "rate exceeded"}'])
async def test_http_429_blocks_key_and_raises_rate_limited(monkeypatch, body):
    urls = _install_http(monkeypatch, 429, body)
    pool = FakePool()
    client = AlphaVantageClient(pool)

    with pytest.raises(ProviderRateLimited):
        await client.get_quote("IBM")

    assert len(urls) == 1
    assert "apikey=TESTKEY" in urls[0]
    assert pool.blocked[0][:2] == (11, settings.ALPHA_VANTAGE_RATE_LIMIT_BLOCK_SECONDS)
    assert client.get_metrics()["rate_limited"] == 1


@pytest.mark.asyncio
async def test_http_503_is_unavailable_without_blocking(monkeypatch):
    _install_http(monkeypatch, 503, b"Service Unavailable")
    pool = FakePool()

    with pytest.raises(ProviderUnavailable):
        await AlphaVantageClient(pool).get_quote("IBM")

    assert pool.blocked == []


@pytest.mark.asyncio
async def test_throttle_note_in_json_body_is_rate_limited(monkeypatch):
    _install_http(monkeypatch, 200, b'{"Note": "Thank you for using Alpha Vantage! Our standard API call frequency is 5 calls per minute."}')
    pool = FakePool()

    with pytest.raises(ProviderRateLimited):
        await AlphaVantageClient(pool).get_quote("IBM")

    assert len(pool.blocked) == 1


@pytest.mark.asyncio
async def test_global_quote_parsed_from_http_body(monkeypatch):
    _install_http(monkeypatch, 200, json.dumps({"Global Quote": GLOBAL_QUOTE}).encode("utf-8"))

    quote = await AlphaVantageClient(FakePool()).get_quote("IBM")

    assert quote.price == 182.0
    assert quote.previous_close == 180.0


@pytest.mark.asyncio
async def test_symbol_search_parsed_from_http_body(monkeypatch):
    body = {
        "bestMatches": [
            {"1. symbol": "IBM", "2. name": "International Business Machines", "3. type": "Equity",
             "4. region": "United States", "8. currency": "USD"},
            {"1. symbol": "IBMN", "2. name": "iShares iBonds", "3. type": "ETF",
             "4. region": "United States", "8. currency": "USD"},
        ]
    }
    _install_http(monkeypatch, 200, json.dumps(body).encode("utf-8"))

    results = await AlphaVantageClient(FakePool()).search_symbols("ibm")

    assert [match.symbol for match in results] == ["IBM", "IBMN"]
    assert results[1].type == "ETF"


@pytest.mark.asyncio
async def test_invalid_key_is_blocked_for_a_day(monkeypatch):
    error = ValueError("the parameter apikey is invalid or missing.")
    _install_time_series(monkeypatch, {"get_quote_endpoint": error})
    pool = FakePool()

    with pytest.raises(ProviderUnavailable):
        await AlphaVantageClient(pool).get_quote("IBM")

    assert pool.blocked == [(11, settings.ALPHA_VANTAGE_INVALID_KEY_BLOCK_SECONDS, "invalid api key")]


@pytest.mark.asyncio
async def test_network_error_is_unavailable(monkeypatch):
    _install_time_series(monkeypatch, {"get_quote_endpoint": requests.ConnectionError("reset")})
    pool = FakePool()

    with pytest.raises(ProviderUnavailable):
        await AlphaVantageClient(pool).get_quote("IBM")

    assert pool.blocked == []


@pytest.mark.asyncio
async def test_unknown_symbol_returns_none(monkeypatch):
    error = ValueError("Invalid API call. Please retry or visit the documentation for GLOBAL_QUOTE.")
    _install_time_series(monkeypatch, {"get_quote_endpoint": error})

    assert await AlphaVantageClient(FakePool()).get_quote("NOPE") is None


@pytest.mark.asyncio
async def test_empty_quote_returns_none(monkeypatch):
    _install_time_series(monkeypatch, {"get_quote_endpoint": {}})

    assert await AlphaVantageClient(FakePool()).get_quote("NOPE") is None


@pytest.mark.asyncio
async def test_daily_history_newest_first_within_period(monkeypatch):
    today = utc_now()
    day = lambda offset: (today - timedelta(days=offset)).strftime("%Y-%m-%d")  # noqa: E731
    series = {
        day(40): {"1. open": "1", "2. high": "1", "3. low": "1", "4. close": "1", "5. volume": "100"},
        day(2): {"1. open": "2", "2. high": "2", "3. low": "2", "4. close": "2", "5. volume": "200"},
        day(1): {"1. open": "3", "2. high": "3", "3. low": "3", "4. close": "3", "5. volume": "300"},
    }
    _install_time_series(monkeypatch, {"get_daily": series})

    bars = await AlphaVantageClient(FakePool()).get_historical_data("IBM", period="1mo", interval="1d")

    assert [bar.date for bar in bars] == [day(1), day(2)]
    assert bars[0].close == 3.0
    assert bars[1].volume == 200.0


@pytest.mark.asyncio
async def test_intraday_interval_is_rejected(monkeypatch):
    _install_time_series(monkeypatch, {})
    pool = FakePool()

    with pytest.raises(ValueError):
        await AlphaVantageClient(pool).get_historical_data("IBM", interval="5m")

    assert pool.acquired == []


@pytest.mark.asyncio
async def test_symbol_search_maps_best_matches(monkeypatch):
    matches = [
        {
            "1. symbol": "TSCO.LON",
            "2. name": "Tesco PLC",
            "3. type": "Equity",
            "4. region": "United Kingdom",
            "8. currency": "GBX",
            "9. matchScore": "0.7273",
        },
        {"1. symbol": "", "2. name": "Broken"},
        {"1. symbol": "tsco", "2. name": "Tractor Supply Company", "3. type": "Equity"},
    ]
    _install_time_series(monkeypatch, {"get_symbol_search": matches})

    results = await AlphaVantageClient(FakePool()).search_symbols("tesco", limit=5)

    assert [match.symbol for match in results] == ["TSCO.LON", "TSCO"]
    assert results[0].region == "United Kingdom"
    assert results[0].currency == "GBX"
    assert results[1].source == "alpha_vantage"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,body,verdict",
    [
        (200, json.dumps({"Global Quote": GLOBAL_QUOTE}).encode("utf-8"), KEY_VALID),
        (200, b'{"Error Message": "the parameter apikey is invalid or missing."}', KEY_INVALID),
        (401, b"Unauthorized", KEY_INVALID),
        (429, b"Too Many Requests", KEY_THROTTLED),
    ],
)
async def test_check_key_classifies_response(monkeypatch, status_code, body, verdict):
    urls = _install_http(monkeypatch, status_code, body)
    pool = FakePool()

    assert await AlphaVantageClient(pool).check_key("CHECKKEY") == verdict

    assert "apikey=CHECKKEY" in urls[0]
    assert pool.acquired == []
    assert pool.blocked == []


@pytest.mark.asyncio
async def test_check_key_server_error_is_inconclusive(monkeypatch):
    _install_http(monkeypatch, 502, b"Bad Gateway")

    with pytest.raises(ProviderUnavailable):
        await AlphaVantageClient(FakePool()).check_key("CHECKKEY")
