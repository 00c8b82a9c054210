"""
Yahoo Finance adapter backed by yfinance. No API key required.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import pandas as pd
import yfinance as yf
from yfinance.exceptions import YFRateLimitError

from app.core.exceptions import InvalidSymbol, ProviderRateLimited, ProviderUnavailable
from app.services.market_types import HistoricalBar, Quote, SymbolMatch, to_float

logger = logging.getLogger(__name__)

VALID_INTERVALS = {"1m", "5m", "15m", "30m", "60m", "1h", "1d", "5d", "1wk", "1mo", "3mo"}


class YahooFinanceClient:
    """Normalizes yfinance fast_info, history and search results."""

    name = "yahoo"

    def __init__(self):
        self._metrics = {
            "requests": 0,
            "rate_limited": 0,
            "errors": 0,
        }

    async def get_quote(self, symbol: str, user_id: Optional[int] = None) -> Optional[Quote]:
        symbol = symbol.strip().upper()
        try:
            return await self._run(self._fetch_quote_sync, symbol)
        except InvalidSymbol as e:
            logger.info(f"Yahoo has no quote for {symbol}: {e}")
            return None

    async def get_historical_data(
        self, symbol: str, period: str = "1mo", interval: str = "1d", user_id: Optional[int] = None
    ) -> List[HistoricalBar]:
        symbol = symbol.strip().upper()
        if interval not in VALID_INTERVALS:
            raise ValueError(f"Yahoo does not support interval {interval}")
        try:
            df = await self._run(lambda: yf.Ticker(symbol).history(period=period, interval=interval))
        except InvalidSymbol:
            return []
        return self._normalize_history(df)

    async def search_symbols(self, query: str, limit: int = 10, user_id: Optional[int] = None) -> List[SymbolMatch]:
        quotes = await self._run(lambda: yf.Search(query.strip(), max_results=limit).quotes)
        results = []
        for item in quotes or []:
            symbol = item.get("symbol")
            if not symbol or not item.get("quoteType"):
                continue
            results.append(SymbolMatch(
                symbol=str(symbol).upper(),
                name=item.get("longname") or item.get("shortname"),
                exchange=item.get("exchDisp") or item.get("exchange"),
                type=item.get("quoteType"),
                region=item.get("region"),
                currency=item.get("currency"),
                source=self.name,
            ))
        return results[:limit]

    async def _run(self, func, *args) -> Any:
        self._metrics["requests"] += 1
        try:
            return await asyncio.to_thread(func, *args)
        except (InvalidSymbol, ProviderRateLimited, ProviderUnavailable):
            raise
        except YFRateLimitError as e:
            self._metrics["rate_limited"] += 1
            raise ProviderRateLimited("Yahoo Finance rate limited the request", provider=self.name) from e
        except Exception as e:
            self._metrics["errors"] += 1
            raise ProviderUnavailable(f"Yahoo Finance request failed: {e}", provider=self.name) from e

    def _fetch_quote_sync(self, symbol: str) -> Quote:
        """Fetch a single quote synchronously (run in thread)."""
        ticker = yf.Ticker(symbol)
        try:
            info = ticker.fast_info
            price = to_float(info.get("lastPrice"))
        except KeyError as e:
            raise InvalidSymbol(f"No price data for {symbol}", provider=self.name) from e
        if price is None:
            raise InvalidSymbol(f"No price data for {symbol}", provider=self.name)

        return Quote.build(
            symbol=symbol,
            price=price,
            source=self.name,
            previous_close=to_float(info.get("previousClose")),
            volume=to_float(info.get("lastVolume")),
            market_cap=to_float(info.get("marketCap")),
            fifty_two_week_low=to_float(info.get("yearLow")),
            fifty_two_week_high=to_float(info.get("yearHigh")),
            day_high=to_float(info.get("dayHigh")),
            day_low=to_float(info.get("dayLow")),
        )

    @staticmethod
    def _normalize_history(df: Optional[pd.DataFrame]) -> List[HistoricalBar]:
        if df is None or df.empty:
            return []
        bars = []
        for ts, row in df.iterrows():
            if pd.isna(row.get("Close")):
                continue
            stamp = pd.Timestamp(ts)
            intraday = stamp.hour or stamp.minute
            bars.append(HistoricalBar(
                date=stamp.isoformat() if intraday else stamp.strftime("%Y-%m-%d"),
                open=to_float(row.get("Open")),
                high=to_float(row.get("High")),
                low=to_float(row.get("Low")),
                close=to_float(row.get("Close")),
                volume=to_float(row.get("Volume")),
            ))
        bars.reverse()
        return bars

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)
