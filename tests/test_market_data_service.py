import asyncio

import pytest

from app.core.config import settings
from app.core.exceptions import NoCapacity, PersistenceFailure, ProviderRateLimited, ProviderUnavailable
from app.services.data_service import MarketDataService
from app.services.market_types import HistoricalBar, Quote, SymbolMatch
from tests.factories import create_stock


class FakeProvider:
    def __init__(self, name, quote=None, error=None, delay=0.0, bars=None, matches=None):
        self.name = name
        self.quote = quote
        self.error = error
        self.delay = delay
        self.bars = bars or []
        self.matches = matches or []
        self.calls = []

    async def _respond(self, value):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return value

    async def get_quote(self, symbol, user_id=None):
        self.calls.append(("quote", symbol, user_id))
        return await self._respond(self.quote)

    async def get_historical_data(self, symbol, period="1mo", interval="1d", user_id=None):
        self.calls.append(("historical", symbol, period, interval))
        return await self._respond(self.bars)

    async def search_symbols(self, query, limit=10, user_id=None):
        self.calls.append(("search", query, limit))
        return await self._respond(self.matches)


def _quote(symbol="AAPL", price=150.0, source="yahoo"):
    return Quote.build(symbol, price, source, previous_close=148.0)


@pytest.fixture
def provider_order(monkeypatch):
    monkeypatch.setattr(settings, "QUOTE_PROVIDER_ORDER", "alpha_vantage,yahoo")
    monkeypatch.setattr(settings, "HISTORICAL_PROVIDER_ORDER", "yahoo,alpha_vantage")
    monkeypatch.setattr(settings, "SEARCH_PROVIDER_ORDER", "yahoo,alpha_vantage")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ProviderRateLimited("throttled", provider="alpha_vantage"),
        ProviderUnavailable("down", provider="alpha_vantage"),
        NoCapacity("no keys", provider="alpha_vantage"),
        PersistenceFailure("could not serialize access"),
        AttributeError("'list' object has no attribute 'get'"),
    ],
)
async def test_quote_falls_back_to_next_provider_on_error(provider_order, error):
    primary = FakeProvider("alpha_vantage", error=error)
    secondary = FakeProvider("yahoo", quote=_quote())
    service = MarketDataService({"alpha_vantage": primary, "yahoo": secondary})

    quote = await service.get_quote("aapl", user_id=5)

    assert quote.symbol == "AAPL"
    assert quote.source == "yahoo"
    assert primary.calls == [("quote", "AAPL", 5)]
    assert service.get_market_health()["telemetry"]["fallbacks"] == 1


@pytest.mark.asyncio
async def test_quote_falls_back_when_provider_has_no_data(provider_order):
    service = MarketDataService({
        "alpha_vantage": FakeProvider("alpha_vantage", quote=None),
        "yahoo": FakeProvider("yahoo", quote=_quote()),
    })

    assert (await service.get_quote("AAPL")).source == "yahoo"


@pytest.mark.asyncio
async def test_slow_provider_counts_as_unavailable(provider_order, monkeypatch):
    monkeypatch.setattr(settings, "PROVIDER_TIMEOUT_SECONDS", 0.05)
    service = MarketDataService({
        "alpha_vantage": FakeProvider("alpha_vantage", quote=_quote(source="alpha_vantage"), delay=1.0),
        "yahoo": FakeProvider("yahoo", quote=_quote()),
    })

    quote = await service.get_quote("AAPL")

    assert quote.source == "yahoo"
    assert service.get_market_health()["telemetry"]["timeouts"] == 1


@pytest.mark.asyncio
async def test_quote_returns_none_when_every_provider_fails(provider_order):
    service = MarketDataService({
        "alpha_vantage": FakeProvider("alpha_vantage", error=ProviderUnavailable("down")),
        "yahoo": FakeProvider("yahoo", quote=None),
    })

    assert await service.get_quote("NOPE") is None


@pytest.mark.asyncio
async def test_explicit_order_overrides_settings(provider_order):
    primary = FakeProvider("alpha_vantage", quote=_quote(source="alpha_vantage"))
    secondary = FakeProvider("yahoo", quote=_quote())
    service = MarketDataService({"alpha_vantage": primary, "yahoo": secondary})

    quote = await service.get_quote("AAPL", order=["yahoo"])

    assert quote.source == "yahoo"
    assert primary.calls == []


@pytest.mark.asyncio
async def test_quote_cache_is_bypassed_on_request(provider_order):
    provider = FakeProvider("alpha_vantage", quote=_quote(source="alpha_vantage"))
    service = MarketDataService({"alpha_vantage": provider})

    await service.get_quote("AAPL")
    await service.get_quote("AAPL")
    assert len(provider.calls) == 1

    await service.get_quote("AAPL", use_cache=False)
    assert len(provider.calls) == 2

    service.clear_cache()
    await service.get_quote("AAPL")
    assert len(provider.calls) == 3


@pytest.mark.asyncio
async def test_historical_skips_provider_that_rejects_interval(provider_order):
    bars = [HistoricalBar(date="2026-01-02", open=1.0, high=2.0, low=0.5, close=1.5, volume=10.0)]

    class NoIntraday(FakeProvider):
        async def get_historical_data(self, symbol, period="1mo", interval="1d", user_id=None):
            raise ValueError(f"Unsupported interval: {interval}")

    service = MarketDataService({
        "yahoo": NoIntraday("yahoo"),
        "alpha_vantage": FakeProvider("alpha_vantage", bars=bars),
    })

    assert await service.get_historical_data("AAPL", period="5d", interval="1d") == bars


@pytest.mark.asyncio
async def test_search_puts_local_stocks_first_and_keeps_richer_entry(provider_order):
    create_stock("AAPL", name="Apple Inc.")
    remote = [
        SymbolMatch(symbol="AAPL", name="Apple Inc.", exchange="NMS", type="EQUITY", region="US", currency="USD",
                    source="yahoo"),
        SymbolMatch(symbol="AAPL.MX", name="Apple Inc.", source="yahoo"),
    ]
    service = MarketDataService({"yahoo": FakeProvider("yahoo", matches=remote)})

    results = await service.search_symbols("AAPL")

    assert [match.symbol for match in results] == ["AAPL", "AAPL.MX"]
    assert results[0].source == "yahoo"
    assert results[0].region == "US"


@pytest.mark.asyncio
async def test_search_tolerates_failing_provider(provider_order):
    service = MarketDataService({
        "yahoo": FakeProvider("yahoo", error=ProviderRateLimited("429")),
        "alpha_vantage": FakeProvider("alpha_vantage", matches=[SymbolMatch(symbol="MSFT", source="alpha_vantage")]),
    })

    results = await service.search_symbols("micro")

    assert [match.symbol for match in results] == ["MSFT"]


@pytest.mark.asyncio
async def test_search_falls_back_to_quote_for_ticker_like_query(provider_order):
    service = MarketDataService({
        "alpha_vantage": FakeProvider("alpha_vantage", quote=_quote("BRK-B", source="alpha_vantage")),
        "yahoo": FakeProvider("yahoo", matches=[]),
    })

    results = await service.search_symbols("brk-b")

    assert [match.symbol for match in results] == ["BRK-B"]
    assert service.get_market_health()["telemetry"]["quote_fallback_search"] == 1


@pytest.mark.asyncio
async def test_blank_search_returns_nothing(provider_order):
    provider = FakeProvider("yahoo")
    service = MarketDataService({"yahoo": provider})

    assert await service.search_symbols("   ") == []
    assert provider.calls == []


@pytest.mark.asyncio
async def test_unexpected_search_error_moves_to_next_provider(provider_order):
    broken = FakeProvider("yahoo", error=RuntimeError("bad payload"))
    backup = FakeProvider("alpha_vantage", matches=[SymbolMatch(symbol="IBM", name="IBM", source="alpha_vantage")])
    service = MarketDataService({"yahoo": broken, "alpha_vantage": backup})

    results = await service.search_symbols("international", limit=5)

    assert [match.symbol for match in results] == ["IBM"]
    assert service.get_market_health()["telemetry"]["provider_errors"] == 1
