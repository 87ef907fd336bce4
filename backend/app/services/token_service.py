"""
Token Service — Login with Amazon access tokens for the Ads API.
Caches the access token and refreshes it shortly before expiry.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
import httpx

from app.errors import ConfigurationError, ExternalApiError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://api.amazon.com/auth/o2/token"
TOKEN_TIMEOUT = 15.0

# Refresh 5 minutes before actual expiry to avoid race conditions
REFRESH_BUFFER = timedelta(minutes=5)


async def refresh_access_token(
    http: httpx.AsyncClient,
    client_id: str,
    client_secret: str,
    refresh_token: str,
) -> dict:
    """
    Exchange a refresh token for a new access token via Amazon LwA.
    Returns dict with access_token, expires_in, token_type.
    """
    try:
        response = await http.post(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=TOKEN_TIMEOUT,
        )
    except httpx.TransportError as e:
        raise ExternalApiError(
            f"Network error during POST {TOKEN_URL}: {e}", method="POST", url=TOKEN_URL,
        ) from e
    if response.status_code != 200:
        raise ExternalApiError(
            f"Token refresh failed: {response.status_code} — {response.text[:500]}",
            status_code=response.status_code,
            method="POST",
            url=TOKEN_URL,
        )
    return response.json()


class TokenService:
    """Holds the LwA credentials and hands out a fresh access token."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        http: httpx.AsyncClient,
    ):
        self.client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._http = http
        self._access_token: Optional[str] = None
        self._expires_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    def _token_is_expired(self) -> bool:
        if not self._access_token or not self._expires_at:
            return True
        return datetime.now(timezone.utc) >= (self._expires_at - REFRESH_BUFFER)

    async def get_access_token(self) -> str:
        if not self.client_id or not self._client_secret or not self._refresh_token:
            raise ConfigurationError(
                "Amazon Ads credentials are not configured "
                "(ADS_API_CLIENT_ID, ADS_API_CLIENT_SECRET, ADS_API_REFRESH_TOKEN)."
            )
        async with self._lock:
            if not self._token_is_expired():
                return self._access_token

            logger.info("Access token expired or missing, refreshing...")
            token_data = await refresh_access_token(
                self._http, self.client_id, self._client_secret, self._refresh_token,
            )
            self._access_token = token_data["access_token"]
            expires_in = token_data.get("expires_in", 3600)
            self._expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

            # Amazon may rotate the refresh token
            if token_data.get("refresh_token"):
                self._refresh_token = token_data["refresh_token"]

            logger.info(f"Access token refreshed, expires in {expires_in}s")
            return self._access_token

    def invalidate(self) -> None:
        """Force a refresh on the next call (e.g. after a 401)."""
        self._access_token = None
        self._expires_at = None
