"""
Alpha Vantage adapter. Every call spends one unit of quota from the credential pool.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pandas as pd
import requests
from alpha_vantage.timeseries import TimeSeries

from app.core.clock import utc_now
from app.core.config import settings
from app.core.exceptions import (
    InvalidSymbol,
    NoCapacity,
    PersistenceFailure,
    ProviderRateLimited,
    ProviderUnavailable,
)
from app.services.credential_pool import KEY_INVALID, KEY_THROTTLED, KEY_VALID, CredentialPool
from app.services.market_types import HistoricalBar, Quote, SymbolMatch, period_to_days, to_float

logger = logging.getLogger(__name__)

THROTTLE_MARKERS = (
    "call frequency",
    "rate limit",
    "requests per day",
    "requests per minute",
    "thank you for using alpha vantage",
)
INVALID_KEY_MARKERS = (
    "apikey is invalid",
    "invalid api key",
    "the parameter apikey",
)
KEY_CHECK_SYMBOL = "IBM"
SERIES_METHODS = {
    "1d": "get_daily",
    "1wk": "get_weekly",
    "1mo": "get_monthly",
}


class StatusCheckedTimeSeries(TimeSeries):
    """
    TimeSeries that checks the HTTP status before parsing.

    The library parses response.json() without looking at the status, so a 429
    or 5xx would read as a JSON error or an empty payload. Here it raises
    requests.HTTPError instead.
    """

    def _handle_api_call(self, url):
        response = requests.get(
            url, proxies=self.proxy, headers=self.headers, timeout=settings.PROVIDER_TIMEOUT_SECONDS
        )
        response.raise_for_status()
        payload = response.json()
        if not payload:
            raise ValueError("Error getting data from the api, no return was given.")
        for field in ("Error Message", "Information", "Note"):
            if field in payload:
                raise ValueError(payload[field])
        return payload


class AlphaVantageClient:
    """Normalizes GLOBAL_QUOTE, TIME_SERIES_* and SYMBOL_SEARCH responses."""

    name = "alpha_vantage"

    def __init__(self, credential_pool: CredentialPool):
        self.credential_pool = credential_pool
        self._metrics = {
            "requests": 0,
            "rate_limited": 0,
            "no_capacity": 0,
            "errors": 0,
        }

    async def get_quote(self, symbol: str, user_id: Optional[int] = None) -> Optional[Quote]:
        symbol = symbol.strip().upper()
        try:
            data = await self._call("get_quote_endpoint", user_id, symbol=symbol)
            return self._normalize_quote(symbol, data)
        except InvalidSymbol as e:
            logger.info(f"Alpha Vantage has no quote for {symbol}: {e}")
            return None

    async def get_historical_data(
        self, symbol: str, period: str = "1mo", interval: str = "1d", user_id: Optional[int] = None
    ) -> List[HistoricalBar]:
        symbol = symbol.strip().upper()
        method = SERIES_METHODS.get(interval)
        if method is None:
            raise ValueError(f"Alpha Vantage does not support interval {interval}")

        days = period_to_days(period)
        kwargs: Dict[str, Any] = {"symbol": symbol}
        if method == "get_daily":
            kwargs["outputsize"] = "compact" if days is not None and days <= 100 else "full"

        try:
            series = await self._call(method, user_id, **kwargs)
        except InvalidSymbol as e:
            logger.info(f"Alpha Vantage has no history for {symbol}: {e}")
            return []
        return self._normalize_series(series, days)

    async def search_symbols(self, query: str, limit: int = 10, user_id: Optional[int] = None) -> List[SymbolMatch]:
        try:
            matches = await self._call("get_symbol_search", user_id, keywords=query.strip())
        except InvalidSymbol:
            return []
        # json output still turns list payloads into a DataFrame
        if isinstance(matches, pd.DataFrame):
            matches = matches.to_dict("records")

        results = []
        for match in matches or []:
            symbol = (match.get("1. symbol") or "").strip()
            if not symbol:
                continue
            results.append(SymbolMatch(
                symbol=symbol.upper(),
                name=match.get("2. name"),
                type=match.get("3. type"),
                region=match.get("4. region"),
                currency=match.get("8. currency"),
                source=self.name,
            ))
        return results[:limit]

    async def _call(self, method: str, user_id: Optional[int], **kwargs) -> Any:
        try:
            lease = self.credential_pool.acquire_key(self.name, user_id)
        except PersistenceFailure as e:
            self._metrics["errors"] += 1
            raise ProviderUnavailable(f"Alpha Vantage key pool unreadable: {e}", provider=self.name) from e
        if not lease:
            self._metrics["no_capacity"] += 1
            raise NoCapacity("Alpha Vantage key pool exhausted", provider=self.name)

        self._metrics["requests"] += 1
        try:
            return await asyncio.to_thread(self._invoke, lease.api_key, method, kwargs)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            self._metrics["errors"] += 1
            if status == 429:
                self._rate_limited(lease.credential_id, f"HTTP 429 from {method}")
            if status in (401, 403):
                self.credential_pool.block(
                    lease.credential_id, settings.ALPHA_VANTAGE_INVALID_KEY_BLOCK_SECONDS, f"HTTP {status}"
                )
            raise ProviderUnavailable(f"Alpha Vantage HTTP {status}", provider=self.name) from e
        except requests.RequestException as e:
            self._metrics["errors"] += 1
            raise ProviderUnavailable(f"Alpha Vantage request failed: {e}", provider=self.name) from e
        except ValueError as e:
            message = str(e)
            lowered = message.lower()
            if any(marker in lowered for marker in INVALID_KEY_MARKERS):
                self._metrics["errors"] += 1
                self.credential_pool.block(
                    lease.credential_id, settings.ALPHA_VANTAGE_INVALID_KEY_BLOCK_SECONDS, "invalid api key"
                )
                raise ProviderUnavailable("Alpha Vantage rejected the API key", provider=self.name) from e
            if any(marker in lowered for marker in THROTTLE_MARKERS):
                self._rate_limited(lease.credential_id, message)
            raise InvalidSymbol(message, provider=self.name) from e
        except KeyError as e:
            raise InvalidSymbol(f"Unexpected Alpha Vantage payload, missing {e}", provider=self.name) from e

    async def check_key(self, api_key: str) -> str:
        """One GLOBAL_QUOTE call with ``api_key``, classified for CredentialPool.validate_keys"""
        self._metrics["requests"] += 1
        try:
            await asyncio.to_thread(self._invoke, api_key, "get_quote_endpoint", {"symbol": KEY_CHECK_SYMBOL})
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 429:
                return KEY_THROTTLED
            if status in (401, 403):
                return KEY_INVALID
            raise ProviderUnavailable(f"Alpha Vantage HTTP {status}", provider=self.name) from e
        except requests.RequestException as e:
            raise ProviderUnavailable(f"Alpha Vantage request failed: {e}", provider=self.name) from e
        except ValueError as e:
            lowered = str(e).lower()
            if any(marker in lowered for marker in INVALID_KEY_MARKERS + ("invalid api call",)):
                return KEY_INVALID
            if any(marker in lowered for marker in THROTTLE_MARKERS):
                return KEY_THROTTLED
            raise ProviderUnavailable(f"Alpha Vantage key check inconclusive: {e}", provider=self.name) from e
        except KeyError as e:
            raise ProviderUnavailable(f"Alpha Vantage key check inconclusive, missing {e}", provider=self.name) from e
        return KEY_VALID

    def _rate_limited(self, credential_id: int, reason: str):
        self._metrics["rate_limited"] += 1
        self.credential_pool.block(credential_id, settings.ALPHA_VANTAGE_RATE_LIMIT_BLOCK_SECONDS, reason)
        raise ProviderRateLimited(reason, provider=self.name, context={"credential_id": credential_id})

    @staticmethod
    def _invoke(api_key: str, method: str, kwargs: Dict[str, Any]) -> Any:
        series = StatusCheckedTimeSeries(key=api_key, output_format="json")
        data, _ = getattr(series, method)(**kwargs)
        return data

    def _normalize_quote(self, symbol: str, data: Optional[Dict[str, Any]]) -> Optional[Quote]:
        if not isinstance(data, dict):
            logger.warning(f"Alpha Vantage returned a malformed quote for {symbol}")
            return None
        price = to_float(data.get("05. price"))
        if price is None:
            logger.info(f"Alpha Vantage returned an empty quote for {symbol}")
            return None
        return Quote.build(
            symbol=data.get("01. symbol") or symbol,
            price=price,
            source=self.name,
            previous_close=to_float(data.get("08. previous close")),
            change=to_float(data.get("09. change")),
            volume=to_float(data.get("06. volume")),
            day_high=to_float(data.get("03. high")),
            day_low=to_float(data.get("04. low")),
        )

    @staticmethod
    def _normalize_series(series: Optional[Dict[str, Dict[str, Any]]], days: Optional[int]) -> List[HistoricalBar]:
        cutoff = None
        if days is not None:
            cutoff = (utc_now() - timedelta(days=days)).strftime("%Y-%m-%d")

        bars = []
        for date in sorted(series or {}, reverse=True):
            if cutoff and date[:10] < cutoff:
                break
            values = series[date]
            bars.append(HistoricalBar(
                date=date[:10],
                open=to_float(values.get("1. open")),
                high=to_float(values.get("2. high")),
                low=to_float(values.get("3. low")),
                close=to_float(values.get("4. close")),
                volume=to_float(values.get("5. volume")),
            ))
        return bars

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)
