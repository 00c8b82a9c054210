"""
API security helpers.
"""
import hmac
from typing import Optional
from fastapi import Header, HTTPException, status

from app.core.config import settings


async def require_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")):
    """Require an API key when API auth is enabled."""
    if not settings.API_AUTH_ENABLED:
        return

    if not settings.API_AUTH_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API auth is enabled but API_AUTH_TOKEN is not configured"
        )

    if x_api_key != settings.API_AUTH_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )


def is_cron_request_authorized(header_secret: Optional[str], query_secret: Optional[str]) -> bool:
    """Jobs endpoints are open when no cron secret is configured."""
    expected = settings.get_cron_secret()
    if not expected:
        return True
    for provided in (header_secret, query_secret):
        if provided and hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            return True
    return False
