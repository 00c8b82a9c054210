"""
API routes for market data, stored prices, alerts and provider keys
"""
from fastapi import APIRouter, HTTPException, Query
from pydantic import ValidationError
from typing import Any, Dict, Optional
from datetime import datetime, timezone
import logging

from app.api.schemas import (
    CredentialCreate,
    HistoricalQuery,
    KeyRegistration,
    MarketErrorDetail,
    SearchQuery,
    validate_provider_name,
)
from app.core.config import settings
from app.core.exceptions import PersistenceFailure
from app.services.alert_evaluator import AlertEvaluator
from app.services.credential_pool import ALPHA_VANTAGE, CredentialPool
from app.services.data_service import MarketDataService
from app.services.notification_service import NotificationService
from app.services.price_store import PriceStore

logger = logging.getLogger(__name__)

# Create router
api_router = APIRouter()

# Global services (will be injected)
data_service: Optional[MarketDataService] = None
price_store: Optional[PriceStore] = None
alert_evaluator: Optional[AlertEvaluator] = None
credential_pool: Optional[CredentialPool] = None
notification_service: Optional[NotificationService] = None


def set_services(ds: MarketDataService, ps: PriceStore, ae: AlertEvaluator,
                 cp: CredentialPool, ns: NotificationService):
    """Set global services"""
    global data_service, price_store, alert_evaluator, credential_pool, notification_service
    data_service = ds
    price_store = ps
    alert_evaluator = ae
    credential_pool = cp
    notification_service = ns


def _invalid_query(error: ValidationError) -> HTTPException:
    detail = MarketErrorDetail(
        error_code="market.invalid_query",
        message="Invalid query parameters",
        errors=[{"loc": list(item["loc"]), "msg": item["msg"]} for item in error.errors()],
    )
    return HTTPException(status_code=422, detail=detail.model_dump())


def _require(service: Any, name: str):
    if not service:
        raise HTTPException(status_code=503, detail=f"{name} not available")


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# Market Data Routes
@api_router.get("/market/quote/{symbol}")
async def get_quote(symbol: str, user_id: Optional[int] = Query(default=None, ge=1)):
    """Get the current quote for a symbol"""
    _require(data_service, "Data service")

    quote = await data_service.get_quote(symbol, user_id=user_id)
    if quote is None:
        raise HTTPException(status_code=404, detail=f"Quote not found for symbol {symbol.upper()}")

    return {
        "symbol": quote.symbol,
        "data": quote.to_dict(),
        "timestamp": datetime.utcnow().isoformat()
    }


@api_router.get("/market/historical/{symbol}")
async def get_historical_data(symbol: str, period: str = "1mo", interval: str = "1d",
                              user_id: Optional[int] = Query(default=None, ge=1)):
    """Get historical bars for a symbol, newest first"""
    _require(data_service, "Data service")
    try:
        query = HistoricalQuery(period=period, interval=interval)
    except ValidationError as e:
        raise _invalid_query(e)

    bars = await data_service.get_historical_data(
        symbol, period=query.period, interval=query.interval, user_id=user_id
    )
    if not bars:
        raise HTTPException(status_code=404, detail=f"Historical data not found for symbol {symbol.upper()}")

    return {
        "symbol": symbol.upper(),
        "period": query.period,
        "interval": query.interval,
        "data": [bar.to_dict() for bar in bars],
        "timestamp": datetime.utcnow().isoformat()
    }


@api_router.get("/market/search")
async def search_symbols(q: str = "", limit: int = 10, user_id: Optional[int] = Query(default=None, ge=1)):
    """Search symbols across local stocks and providers"""
    _require(data_service, "Data service")
    try:
        query = SearchQuery(q=q, limit=limit)
    except ValidationError as e:
        raise _invalid_query(e)

    results = await data_service.search_symbols(query.q, limit=query.limit, user_id=user_id)
    return {
        "query": query.q,
        "results": [match.to_dict() for match in results],
        "count": len(results),
        "timestamp": datetime.utcnow().isoformat()
    }


@api_router.get("/market/health")
async def get_market_health():
    """Provider and cache telemetry"""
    _require(data_service, "Data service")
    return data_service.get_market_health()


# Stored Price Routes
@api_router.get("/stocks/{stock_id}/price")
async def get_latest_price(stock_id: int):
    """Get the latest stored price for a stock"""
    _require(price_store, "Price store")
    latest = price_store.get_latest_price(stock_id)
    if latest is None:
        raise HTTPException(status_code=404, detail=f"No price stored for stock {stock_id}")
    return latest


@api_router.get("/stocks/{stock_id}/prices")
async def get_price_history(stock_id: int, days: int = Query(default=30, ge=1, le=3650)):
    """Get stored price snapshots for a stock"""
    _require(price_store, "Price store")
    prices = price_store.get_historical_prices(stock_id, days=days)
    return {
        "stock_id": stock_id,
        "days": days,
        "prices": prices,
        "count": len(prices),
    }


# Alert Routes
@api_router.post("/alerts/check")
async def check_user_alerts(user_id: int = Query(..., ge=1)):
    """Evaluate a user's active alerts against the latest stored prices"""
    _require(alert_evaluator, "Alert evaluator")
    try:
        triggers = await alert_evaluator.check_user_alerts(user_id)
    except Exception as e:
        logger.error(f"Error checking alerts for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "user_id": user_id,
        "triggered": [trigger.to_dict() for trigger in triggers],
        "count": len(triggers),
        "timestamp": datetime.utcnow().isoformat()
    }


@api_router.post("/alerts/check-all")
async def check_all_alerts():
    """Evaluate every active alert against the latest stored prices, without fetching quotes"""
    _require(alert_evaluator, "Alert evaluator")
    try:
        triggers = await alert_evaluator.check_all_alerts()
    except Exception as e:
        logger.error(f"Error checking all alerts: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "triggered": [trigger.to_dict() for trigger in triggers],
        "count": len(triggers),
        "timestamp": datetime.utcnow().isoformat()
    }


@api_router.get("/alerts/stats")
async def get_alert_stats(user_id: int = Query(..., ge=1)):
    """Alert counts for a user"""
    _require(alert_evaluator, "Alert evaluator")
    return alert_evaluator.get_alert_stats(user_id)


# Provider Key Routes
@api_router.get("/providers/{provider}/keys/stats")
async def get_key_pool_stats(provider: str):
    """Usage and capacity of a provider's key pool"""
    _require(credential_pool, "Credential pool")
    try:
        provider = validate_provider_name(provider)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return credential_pool.get_pool_stats(provider)


@api_router.post("/providers/{provider}/keys")
async def add_provider_key(provider: str, payload: CredentialCreate) -> Dict[str, Any]:
    """Add a key to the shared pool, or to one user's keys when user_id is given"""
    _require(credential_pool, "Credential pool")
    try:
        provider = validate_provider_name(provider)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    try:
        credential_id = credential_pool.add_credential(
            provider,
            payload.api_key,
            user_id=payload.user_id,
            key_name=payload.key_name,
            request_limit=payload.request_limit,
            daily_request_limit=payload.daily_request_limit,
            expires_at=_naive_utc(payload.expires_at),
        )
    except PersistenceFailure as e:
        logger.error(f"Error storing {provider} key: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return {"credential_id": credential_id, "provider": provider}


@api_router.post("/providers/{provider}/keys/validate")
async def validate_provider_keys(provider: str) -> Dict[str, Any]:
    """Check every active key once; invalid keys are deactivated and throttled ones blocked"""
    _require(credential_pool, "Credential pool")
    _require(data_service, "Data service")
    try:
        provider = validate_provider_name(provider)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    adapter = data_service.providers.get(provider)
    if adapter is None or not hasattr(adapter, "check_key"):
        raise HTTPException(status_code=400, detail=f"{provider} has no API keys to validate")

    try:
        validation = await credential_pool.validate_keys(provider, adapter.check_key)
    except PersistenceFailure as e:
        logger.error(f"Error validating {provider} keys: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "provider": provider,
        "validation": validation,
        "timestamp": datetime.utcnow().isoformat()
    }


@api_router.post("/providers/alpha_vantage/register")
async def register_alpha_vantage_key(payload: KeyRegistration) -> Dict[str, Any]:
    """Sign up for a free Alpha Vantage key and add it to the shared pool"""
    _require(credential_pool, "Credential pool")
    if not settings.ALPHA_VANTAGE_AUTO_REGISTER:
        raise HTTPException(status_code=403, detail="Alpha Vantage auto registration is disabled")

    try:
        credential_id = await credential_pool.auto_register(payload.email)
    except PersistenceFailure as e:
        logger.error(f"Error storing registered Alpha Vantage key: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if credential_id is None:
        raise HTTPException(status_code=422, detail="Registration skipped or did not yield a key")
    return {"credential_id": credential_id, "provider": ALPHA_VANTAGE}


# Notification Routes
@api_router.post("/notifications/test")
async def test_notification():
    """Send a test notification"""
    _require(notification_service, "Notification service")
    sent = await notification_service.test_notification()
    return {"sent": sent}
