import pytest
from fastapi import HTTPException

from app.api.security import is_cron_request_authorized, require_api_key
from app.core.config import settings


@pytest.mark.asyncio
async def test_require_api_key_disabled_allows_request(monkeypatch):
    monkeypatch.setattr(settings, "API_AUTH_ENABLED", False)
    await require_api_key(None)


@pytest.mark.asyncio
async def test_require_api_key_rejects_missing_or_invalid_key(monkeypatch):
    monkeypatch.setattr(settings, "API_AUTH_ENABLED", True)
    monkeypatch.setattr(settings, "API_AUTH_TOKEN", "secret-token")

    with pytest.raises(HTTPException) as missing_exc:
        await require_api_key(None)
    assert missing_exc.value.status_code == 401

    with pytest.raises(HTTPException) as invalid_exc:
        await require_api_key("wrong")
    assert invalid_exc.value.status_code == 401


@pytest.mark.asyncio
async def test_require_api_key_accepts_valid_key(monkeypatch):
    monkeypatch.setattr(settings, "API_AUTH_ENABLED", True)
    monkeypatch.setattr(settings, "API_AUTH_TOKEN", "secret-token")
    await require_api_key("secret-token")


def test_cron_requests_open_without_configured_secret(monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "")
    monkeypatch.setattr(settings, "JOBS_CRON_SECRET", "")

    assert is_cron_request_authorized(None, None)


def test_cron_secret_accepted_from_header_or_query(monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "tick-secret")

    assert is_cron_request_authorized("tick-secret", None)
    assert is_cron_request_authorized(None, "tick-secret")
    assert is_cron_request_authorized("wrong", "tick-secret")
    assert not is_cron_request_authorized("wrong", None)
    assert not is_cron_request_authorized(None, None)


def test_jobs_cron_secret_is_used_as_fallback(monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "")
    monkeypatch.setattr(settings, "JOBS_CRON_SECRET", "legacy")

    assert is_cron_request_authorized("legacy", None)
    assert not is_cron_request_authorized(None, None)
