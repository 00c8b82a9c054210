"""
Canonical market data shapes shared by every provider adapter.
"""
import math
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from app.core.clock import utc_now


def to_float(value: Any) -> Optional[float]:
    """Parse provider numbers ("12.5", "1.2%", numpy scalars); None for blanks and NaN."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip().rstrip("%").replace(",", "")
        if not value or value.lower() in {"none", "null", "nan", "-"}:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def compute_change_percent(price: Optional[float], previous_close: Optional[float]) -> float:
    if price is None or not previous_close or previous_close <= 0:
        return 0.0
    return (price - previous_close) / previous_close * 100


@dataclass
class Quote:
    symbol: str
    price: float
    source: str
    change: Optional[float] = None
    change_percent: float = 0.0
    volume: Optional[float] = None
    market_cap: Optional[float] = None
    fifty_two_week_low: Optional[float] = None
    fifty_two_week_high: Optional[float] = None
    previous_close: Optional[float] = None
    day_high: Optional[float] = None
    day_low: Optional[float] = None
    timestamp: datetime = field(default_factory=utc_now)

    @classmethod
    def build(cls, symbol: str, price: float, source: str, previous_close: Optional[float] = None, **extra) -> "Quote":
        """Fill change and change_percent from previous_close when the provider does not."""
        change = extra.pop("change", None)
        if change is None and previous_close:
            change = price - previous_close
        return cls(
            symbol=symbol.upper(),
            price=price,
            source=source,
            previous_close=previous_close,
            change=change,
            change_percent=compute_change_percent(price, previous_close),
            **extra,
        )

    def to_price_fields(self) -> Dict[str, Any]:
        """Columns for a stock_prices row."""
        data = asdict(self)
        data.pop("symbol")
        return data

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class HistoricalBar:
    date: str
    open: Optional[float]
    high: Optional[float]
    low: Optional[float]
    close: Optional[float]
    volume: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SymbolMatch:
    symbol: str
    name: Optional[str] = None
    exchange: Optional[str] = None
    type: Optional[str] = None
    region: Optional[str] = None
    currency: Optional[str] = None
    source: Optional[str] = None

    def richness(self) -> int:
        return sum(1 for f in fields(self) if getattr(self, f.name) not in (None, ""))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MarketDataProvider(Protocol):
    """Common surface of every provider adapter.

    Adapters return None for unknown symbols and raise ProviderError subclasses
    for everything else.
    """

    name: str

    async def get_quote(self, symbol: str, user_id: Optional[int] = None) -> Optional[Quote]:
        ...

    async def get_historical_data(
        self, symbol: str, period: str = "1mo", interval: str = "1d", user_id: Optional[int] = None
    ) -> List[HistoricalBar]:
        ...

    async def search_symbols(self, query: str, limit: int = 10, user_id: Optional[int] = None) -> List[SymbolMatch]:
        ...


PERIOD_DAYS = {
    "1d": 1,
    "5d": 5,
    "1mo": 31,
    "3mo": 92,
    "6mo": 183,
    "1y": 366,
    "2y": 731,
    "5y": 1827,
    "10y": 3653,
}


def period_to_days(period: str) -> Optional[int]:
    """Calendar days covered by a Yahoo style period string; None means unbounded."""
    normalized = (period or "").strip().lower()
    if normalized in {"max", ""}:
        return None
    if normalized == "ytd":
        now = utc_now()
        return (now - now.replace(month=1, day=1)).days + 1
    if normalized not in PERIOD_DAYS:
        raise ValueError(f"Unsupported period: {period}")
    return PERIOD_DAYS[normalized]
