"""
Token Service — Login with Amazon access tokens for the Amazon Ads API.
Each provider owns its own cache; the Ads client asks it for auth headers
before every request and it refreshes shortly before expiry.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
import httpx

from app.config import Settings
from app.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://api.amazon.com/auth/o2/token"

# Refresh 5 minutes before actual expiry to avoid race conditions
REFRESH_BUFFER = timedelta(minutes=5)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LwaTokenProvider:
    """
    Refresh-token grant against Login with Amazon.
    A 3600s token is reused for 55 minutes, then refreshed on next use.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = _now,
    ):
        self.client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._http_client = http_client
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> "LwaTokenProvider":
        return cls(
            client_id=settings.ads_api_client_id,
            client_secret=settings.ads_api_client_secret,
            refresh_token=settings.ads_api_refresh_token,
            http_client=http_client,
        )

    def _is_expired(self) -> bool:
        if not self._token or not self._expires_at:
            return True
        return self._clock() >= self._expires_at

    async def get_access_token(self) -> str:
        if not self._is_expired():
            return self._token
        return await self.refresh()

    async def refresh(self) -> str:
        """Exchange the refresh token for a new access token and cache it."""
        if not self.client_id or not self._client_secret or not self._refresh_token:
            raise ConfigurationError(
                "Missing Amazon Ads API credentials (ADS_API_CLIENT_ID, ADS_API_CLIENT_SECRET, ADS_API_REFRESH_TOKEN)."
            )

        logger.info("Requesting a new Amazon Ads API access token")
        try:
            token_data = await self._post_token_request()
        except httpx.HTTPStatusError as e:
            self._token, self._expires_at = None, None
            logger.error(f"Token refresh failed: {e.response.status_code} — {e.response.text}")
            raise
        except httpx.HTTPError as e:
            self._token, self._expires_at = None, None
            logger.error(f"Token refresh failed: {e}")
            raise

        access_token = (token_data.get("access_token") or "").strip()
        if not access_token:
            self._token, self._expires_at = None, None
            raise ConfigurationError("Login with Amazon returned no access_token; check the credentials.")

        expires_in = int(token_data.get("expires_in", 3600))
        self._token = access_token
        self._expires_at = self._clock() + timedelta(seconds=expires_in) - REFRESH_BUFFER
        logger.info(f"Access token refreshed, expires in {expires_in}s")
        return self._token

    async def _post_token_request(self) -> dict:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": self._refresh_token,
            "client_id": self.client_id,
            "client_secret": self._client_secret,
        }
        headers = {"Content-Type": "application/x-www-form-urlencoded;charset=UTF-8"}
        if self._http_client is not None:
            response = await self._http_client.post(TOKEN_URL, data=data, headers=headers, timeout=30)
            response.raise_for_status()
            return response.json()
        async with httpx.AsyncClient() as client:
            response = await client.post(TOKEN_URL, data=data, headers=headers, timeout=30)
            response.raise_for_status()
            return response.json()

    async def auth_headers(self) -> dict[str, str]:
        token = await self.get_access_token()
        return {
            "Amazon-Advertising-API-ClientId": self.client_id,
            "Authorization": f"Bearer {token}",
        }
