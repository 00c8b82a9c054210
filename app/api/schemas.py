"""
Pydantic schemas for API request/response contracts.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.core.config import KNOWN_PROVIDERS
from app.services.market_types import PERIOD_DAYS

VALID_PERIODS = set(PERIOD_DAYS) | {"ytd", "max"}
VALID_INTERVALS = {"1d", "1wk", "1mo"}


class MarketErrorDetail(BaseModel):
    error_code: str
    message: str
    errors: Optional[List[Dict[str, Any]]] = None


class HistoricalQuery(BaseModel):
    period: str = Field(default="1mo")
    interval: str = Field(default="1d")

    @field_validator("period")
    @classmethod
    def validate_period(cls, value: str) -> str:
        normalized = str(value or "1mo").strip().lower()
        if normalized not in VALID_PERIODS:
            raise ValueError(f"period must be one of: {', '.join(sorted(VALID_PERIODS))}")
        return normalized

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, value: str) -> str:
        normalized = str(value or "1d").strip().lower()
        if normalized not in VALID_INTERVALS:
            raise ValueError(f"interval must be one of: {', '.join(sorted(VALID_INTERVALS))}")
        return normalized


class SearchQuery(BaseModel):
    q: str = Field(min_length=1, max_length=64)
    limit: int = Field(default=10, ge=1, le=50)

    @field_validator("q")
    @classmethod
    def validate_query(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("q cannot be blank")
        return stripped


class CredentialCreate(BaseModel):
    api_key: str = Field(min_length=8, max_length=128)
    user_id: Optional[int] = Field(default=None, ge=1)
    key_name: Optional[str] = Field(default=None, max_length=100)
    request_limit: Optional[int] = Field(default=None, ge=1)
    daily_request_limit: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None


def validate_provider_name(provider: str) -> str:
    normalized = (provider or "").strip().lower()
    if normalized not in KNOWN_PROVIDERS:
        raise ValueError(f"provider must be one of: {', '.join(KNOWN_PROVIDERS)}")
    return normalized


class KeyRegistration(BaseModel):
    email: str = Field(min_length=3, max_length=254)
