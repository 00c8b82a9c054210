"""
Alpha Vantage free-key signup flow.
"""
import logging
import re
from typing import Optional

import requests

from app.core.config import settings

logger = logging.getLogger(__name__)

CSRF_PATTERN = re.compile(r'name=["\']csrfmiddlewaretoken["\']\s+value=["\']([^"\']+)["\']')
KEY_PATTERNS = (
    re.compile(r"api\s*key\s*is[:\s]*([A-Z0-9]{16})", re.IGNORECASE),
    re.compile(r"your\s+(?:free\s+)?api\s+key[^A-Z0-9]*([A-Z0-9]{16})", re.IGNORECASE),
    re.compile(r"\b([A-Z0-9]{16})\b"),
)


class AlphaVantageRegistrationClient:
    """Requests a free API key the same way the public support page does."""

    def __init__(self, base_url: Optional[str] = None, timeout_seconds: Optional[int] = None, session=None):
        self.base_url = (base_url or settings.ALPHA_VANTAGE_SUPPORT_URL).rstrip("/")
        self.timeout = timeout_seconds or settings.ALPHA_VANTAGE_REGISTRATION_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def register(self, email: str) -> Optional[str]:
        """Returns the new 16 character key, or None when the flow fails."""
        try:
            page = self.session.get(f"{self.base_url}/support/", timeout=self.timeout)
            page.raise_for_status()
            match = CSRF_PATTERN.search(page.text)
            token = match.group(1) if match else self.session.cookies.get("csrftoken")
            if not token:
                logger.error("Alpha Vantage signup page did not provide a CSRF token")
                return None

            response = self.session.post(
                f"{self.base_url}/create_post/",
                data={
                    "first_text": "deprecated",
                    "last_text": "deprecated",
                    "occupation_text": "Investor",
                    "organization_text": settings.ALPHA_VANTAGE_COMPANY_NAME,
                    "email_text": email,
                    "csrfmiddlewaretoken": token,
                },
                headers={
                    "Referer": f"{self.base_url}/support/",
                    "X-CSRFToken": token,
                    "X-Requested-With": "XMLHttpRequest",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Alpha Vantage registration request failed: {e}")
            return None

        key = self.extract_key(response.text)
        if key is None:
            logger.warning("Alpha Vantage registration response did not contain a key")
        return key

    @staticmethod
    def extract_key(body: str) -> Optional[str]:
        for pattern in KEY_PATTERNS:
            match = pattern.search(body or "")
            if match:
                return match.group(1).upper()
        return None
