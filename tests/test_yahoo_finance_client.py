from types import SimpleNamespace

import pandas as pd
import pytest
from yfinance.exceptions import YFRateLimitError

from app.core.exceptions import ProviderRateLimited, ProviderUnavailable
from app.services import yahoo_finance_client
from app.services.yahoo_finance_client import YahooFinanceClient


def _install_yfinance(monkeypatch, fast_info=None, history=None, quotes=None, error=None):
    class FakeTicker:
        def __init__(self, symbol):
            self.symbol = symbol

        @property
        def fast_info(self):
            if error:
                raise error
            return fast_info or {}

        def history(self, period="1mo", interval="1d"):
            if error:
                raise error
            return history

    class FakeSearch:
        def __init__(self, query, max_results=8):
            if error:
                raise error
            self.quotes = quotes or []

    monkeypatch.setattr(yahoo_finance_client, "yf", SimpleNamespace(Ticker=FakeTicker, Search=FakeSearch))


@pytest.mark.asyncio
async def test_get_quote_normalizes_fast_info(monkeypatch):
    _install_yfinance(monkeypatch, fast_info={
        "lastPrice": 210.0,
        "previousClose": 200.0,
        "lastVolume": 1500000,
        "marketCap": 3.1e12,
        "yearLow": 150.0,
        "yearHigh": 240.0,
        "dayHigh": 212.0,
        "dayLow": 205.5,
    })

    quote = await YahooFinanceClient().get_quote("aapl")

    assert quote.symbol == "AAPL"
    assert quote.price == 210.0
    assert quote.change == 10.0
    assert quote.change_percent == pytest.approx(5.0)
    assert quote.market_cap == 3.1e12
    assert quote.fifty_two_week_high == 240.0
    assert quote.source == "yahoo"


@pytest.mark.asyncio
async def test_zero_previous_close_gives_zero_change_percent(monkeypatch):
    _install_yfinance(monkeypatch, fast_info={"lastPrice": 5.0, "previousClose": 0})

    quote = await YahooFinanceClient().get_quote("PENNY")

    assert quote.change_percent == 0.0


@pytest.mark.asyncio
async def test_missing_price_returns_none(monkeypatch):
    _install_yfinance(monkeypatch, fast_info={"lastPrice": float("nan")})

    assert await YahooFinanceClient().get_quote("ZZZZ") is None


@pytest.mark.asyncio
async def test_rate_limit_is_reported(monkeypatch):
    _install_yfinance(monkeypatch, error=YFRateLimitError())
    client = YahooFinanceClient()

    with pytest.raises(ProviderRateLimited):
        await client.get_quote("AAPL")

    assert client.get_metrics()["rate_limited"] == 1


@pytest.mark.asyncio
async def test_other_failures_are_unavailable(monkeypatch):
    _install_yfinance(monkeypatch, error=ConnectionError("reset by peer"))

    with pytest.raises(ProviderUnavailable):
        await YahooFinanceClient().get_quote("AAPL")


@pytest.mark.asyncio
async def test_history_is_newest_first_and_skips_blank_rows(monkeypatch):
    index = pd.DatetimeIndex(["2026-03-02", "2026-03-03", "2026-03-04"])
    frame = pd.DataFrame(
        {
            "Open": [10.0, 11.0, 12.0],
            "High": [10.5, 11.5, 12.5],
            "Low": [9.5, 10.5, 11.5],
            "Close": [10.2, float("nan"), 12.2],
            "Volume": [1000, 0, 3000],
        },
        index=index,
    )
    _install_yfinance(monkeypatch, history=frame)

    bars = await YahooFinanceClient().get_historical_data("AAPL", period="5d", interval="1d")

    assert [bar.date for bar in bars] == ["2026-03-04", "2026-03-02"]
    assert bars[0].close == 12.2
    assert bars[1].volume == 1000.0


@pytest.mark.asyncio
async def test_empty_history_returns_no_bars(monkeypatch):
    _install_yfinance(monkeypatch, history=pd.DataFrame())

    assert await YahooFinanceClient().get_historical_data("AAPL") == []


@pytest.mark.asyncio
async def test_unsupported_interval_is_rejected():
    with pytest.raises(ValueError):
        await YahooFinanceClient().get_historical_data("AAPL", interval="2h")


@pytest.mark.asyncio
async def test_search_keeps_typed_results(monkeypatch):
    _install_yfinance(monkeypatch, quotes=[
        {"symbol": "AAPL", "longname": "Apple Inc.", "exchDisp": "NASDAQ", "quoteType": "EQUITY"},
        {"symbol": "AAPL-NEWS", "shortname": "news item"},
        {"symbol": "APLE", "shortname": "Apple Hospitality", "exchange": "NYQ", "quoteType": "EQUITY"},
    ])

    results = await YahooFinanceClient().search_symbols("apple")

    assert [match.symbol for match in results] == ["AAPL", "APLE"]
    assert results[0].name == "Apple Inc."
    assert results[0].exchange == "NASDAQ"
    assert results[1].exchange == "NYQ"
