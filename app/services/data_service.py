"""
Market data service: multi-provider orchestration with fallback and caching
"""
import asyncio
import logging
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import or_

from app.core.clock import utc_now
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import ProviderError, ProviderUnavailable
from app.models.stock import Stock
from app.services.market_types import HistoricalBar, MarketDataProvider, Quote, SymbolMatch

logger = logging.getLogger(__name__)

SINGLE_SYMBOL_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.\-=^]{0,14}$")


class MarketDataService:
    """Service for fetching market data from an ordered list of providers"""

    def __init__(self, providers: Dict[str, MarketDataProvider], session_factory=None):
        self.providers = providers
        self._session_factory = session_factory or SessionLocal
        self.cache: Dict[Any, Any] = {}
        self.cache_expiry: Dict[Any, Any] = {}
        self._telemetry = {
            "cache_hit": 0,
            "fallbacks": 0,
            "timeouts": 0,
            "provider_errors": 0,
            "quote_fallback_search": 0,
        }
        logger.info(f"Market data service initialized with providers: {', '.join(providers) or 'none'}")

    def _ordered(self, kind: str, order: Optional[Sequence[str]] = None) -> List[MarketDataProvider]:
        names = list(order) if order else settings.get_provider_order(kind)
        return [self.providers[name] for name in names if name in self.providers]

    async def _call_provider(self, provider: MarketDataProvider, operation: str, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                getattr(provider, operation)(*args, **kwargs),
                timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            self._telemetry["timeouts"] += 1
            raise ProviderUnavailable(f"{provider.name} {operation} timed out", provider=provider.name) from e

    async def get_quote(
        self,
        symbol: str,
        user_id: Optional[int] = None,
        use_cache: bool = True,
        order: Optional[Sequence[str]] = None,
    ) -> Optional[Quote]:
        """
        Get a quote from the first provider that can serve it

        Args:
            symbol: Ticker symbol
            user_id: Lets key-based providers prefer the user's own credential
            use_cache: Serve from the quote cache when fresh
            order: Provider names overriding QUOTE_PROVIDER_ORDER

        Returns:
            Normalized quote, or None when every provider failed or had no data
        """
        symbol = symbol.strip().upper()
        cache_key = ("quote", symbol)
        if use_cache and self._is_cache_valid(cache_key):
            self._telemetry["cache_hit"] += 1
            return self.cache[cache_key]

        for index, provider in enumerate(self._ordered("quote", order)):
            if index:
                self._telemetry["fallbacks"] += 1
            try:
                quote = await self._call_provider(provider, "get_quote", symbol, user_id=user_id)
            except ProviderError as e:
                self._telemetry["provider_errors"] += 1
                logger.warning(f"{provider.name} quote for {symbol} failed ({type(e).__name__}): {e}")
                continue
            except Exception as e:
                self._telemetry["provider_errors"] += 1
                logger.error(f"Unexpected error from {provider.name} quote for {symbol}: {e}")
                continue
            if quote is not None:
                self._cache_data(cache_key, quote, settings.QUOTE_CACHE_SECONDS)
                return quote
            logger.info(f"{provider.name} returned no quote for {symbol}")

        return None

    async def get_historical_data(
        self,
        symbol: str,
        period: str = "1mo",
        interval: str = "1d",
        user_id: Optional[int] = None,
        order: Optional[Sequence[str]] = None,
    ) -> List[HistoricalBar]:
        symbol = symbol.strip().upper()
        cache_key = ("historical", symbol, period, interval)
        if self._is_cache_valid(cache_key):
            self._telemetry["cache_hit"] += 1
            return self.cache[cache_key]

        for index, provider in enumerate(self._ordered("historical", order)):
            if index:
                self._telemetry["fallbacks"] += 1
            try:
                bars = await self._call_provider(
                    provider, "get_historical_data", symbol, period=period, interval=interval, user_id=user_id
                )
            except ValueError as e:
                logger.info(f"{provider.name} cannot serve {symbol} history: {e}")
                continue
            except ProviderError as e:
                self._telemetry["provider_errors"] += 1
                logger.warning(f"{provider.name} history for {symbol} failed ({type(e).__name__}): {e}")
                continue
            except Exception as e:
                self._telemetry["provider_errors"] += 1
                logger.error(f"Unexpected error from {provider.name} history for {symbol}: {e}")
                continue
            if bars:
                self._cache_data(cache_key, bars, settings.HISTORICAL_CACHE_SECONDS)
                return bars

        return []

    async def search_symbols(
        self,
        query: str,
        limit: int = 10,
        user_id: Optional[int] = None,
        order: Optional[Sequence[str]] = None,
    ) -> List[SymbolMatch]:
        """
        Search local stocks first, then providers in order.

        Results are deduplicated by symbol; when two sources describe the same
        symbol the more complete entry is kept in the earlier position. A query
        that looks like a single ticker and finds nothing falls back to an
        exact quote lookup.
        """
        query = (query or "").strip()
        if not query:
            return []

        cache_key = ("search", query.lower(), limit)
        if self._is_cache_valid(cache_key):
            self._telemetry["cache_hit"] += 1
            return self.cache[cache_key]

        merged: Dict[str, SymbolMatch] = {}
        self._merge_matches(merged, self._search_local(query, limit))

        for provider in self._ordered("search", order):
            if len(merged) >= limit:
                break
            try:
                matches = await self._call_provider(provider, "search_symbols", query, limit=limit, user_id=user_id)
            except ProviderError as e:
                self._telemetry["provider_errors"] += 1
                logger.warning(f"{provider.name} search for '{query}' failed ({type(e).__name__}): {e}")
                continue
            except Exception as e:
                self._telemetry["provider_errors"] += 1
                logger.error(f"Unexpected error from {provider.name} search for '{query}': {e}")
                continue
            self._merge_matches(merged, matches)

        if not merged and SINGLE_SYMBOL_PATTERN.match(query):
            self._telemetry["quote_fallback_search"] += 1
            quote = await self.get_quote(query, user_id=user_id)
            if quote is not None:
                merged[quote.symbol] = SymbolMatch(symbol=quote.symbol, source=quote.source)

        results = list(merged.values())[:limit]
        if results:
            self._cache_data(cache_key, results, settings.SEARCH_CACHE_SECONDS)
        return results

    @staticmethod
    def _merge_matches(merged: Dict[str, SymbolMatch], matches: Sequence[SymbolMatch]):
        for match in matches or []:
            existing = merged.get(match.symbol)
            if existing is None or match.richness() > existing.richness():
                merged[match.symbol] = match

    def _search_local(self, query: str, limit: int) -> List[SymbolMatch]:
        db = self._session_factory()
        try:
            pattern = f"%{query}%"
            rows = (
                db.query(Stock)
                .filter(Stock.is_active.is_(True))
                .filter(or_(Stock.symbol.ilike(f"{query}%"), Stock.name.ilike(pattern)))
                .order_by(Stock.symbol)
                .limit(limit)
                .all()
            )
            return [
                SymbolMatch(
                    symbol=row.symbol.upper(),
                    name=row.name,
                    exchange=row.exchange,
                    currency=row.currency,
                    source="local",
                )
                for row in rows
            ]
        finally:
            db.close()

    def _is_cache_valid(self, key) -> bool:
        """Check if cached data is still valid"""
        if key not in self.cache:
            return False

        expiry_time = self.cache_expiry.get(key)
        if not expiry_time:
            return False

        return utc_now() < expiry_time

    def _cache_data(self, key, data, ttl_seconds: int):
        """Cache data with expiry"""
        if ttl_seconds <= 0:
            return
        self.cache[key] = data
        self.cache_expiry[key] = utc_now() + timedelta(seconds=ttl_seconds)

    def clear_cache(self):
        self.cache.clear()
        self.cache_expiry.clear()

    def get_market_health(self) -> Dict[str, Any]:
        return {
            "providers": {
                name: provider.get_metrics() if hasattr(provider, "get_metrics") else {}
                for name, provider in self.providers.items()
            },
            "telemetry": dict(self._telemetry),
            "cache_entries": len(self.cache),
            "timestamp": utc_now().isoformat(),
        }


def build_market_data_service(credential_pool) -> MarketDataService:
    """Wire the configured provider adapters into a MarketDataService."""
    from app.services.alpha_vantage_client import AlphaVantageClient
    from app.services.yahoo_finance_client import YahooFinanceClient

    providers: Dict[str, MarketDataProvider] = {
        AlphaVantageClient.name: AlphaVantageClient(credential_pool),
    }
    if settings.YAHOO_ENABLED:
        providers[YahooFinanceClient.name] = YahooFinanceClient()
    return MarketDataService(providers)
