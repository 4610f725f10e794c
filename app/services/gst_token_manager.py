"""
GST Invoice Admin - IRP Auth Token Manager

Acquires and caches the IRP bearer token (POST /eivital/v1.04/auth).

- A valid cached token is returned without locking
- Concurrent misses collapse into one outbound auth call
- Tokens are treated as expired 60 seconds early
- A token is bound to the account it was issued for; rotating the
  credentials in GST settings forces a fresh exchange
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import BaseModel

from app.config import settings as app_settings
from app.schemas.einvoice import GSTSettings
from app.utils.error_handling import GSTAuthenticationException, TransientNetworkException

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthToken(BaseModel):
    """IRP session token. In-process only."""
    value: str
    expires_at: datetime
    fingerprint: str

    def is_valid(self, now: datetime, skew_seconds: int = 60) -> bool:
        return now + timedelta(seconds=skew_seconds) < self.expires_at


class GSTTokenManager:
    """Owns the IRP auth token for this process."""

    AUTH_ENDPOINT = "/eivital/v1.04/auth"
    EXPIRY_SKEW_SECONDS = 60

    def __init__(
        self,
        token_ttl_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.token_ttl_minutes = token_ttl_minutes or app_settings.gst_token_ttl_minutes
        self._clock = clock
        self._token: Optional[AuthToken] = None
        self._lock = asyncio.Lock()
        self.exchange_count = 0

    @property
    def current(self) -> Optional[AuthToken]:
        return self._token

    def _usable(self, token: Optional[AuthToken], gst: GSTSettings) -> bool:
        return (
            token is not None
            and token.fingerprint == gst.credential_fingerprint
            and token.is_valid(self._clock(), self.EXPIRY_SKEW_SECONDS)
        )

    async def acquire(self, gst: GSTSettings, force_refresh: bool = False) -> AuthToken:
        """
        Return a valid token, exchanging credentials if needed.

        Raises:
            GSTAuthenticationException: credentials rejected by the IRP
            TransientNetworkException: IRP unreachable
        """
        token = self._token
        if not force_refresh and self._usable(token, gst):
            return token

        async with self._lock:
            # Another caller may have refreshed while we waited
            token = self._token
            if not force_refresh and self._usable(token, gst):
                return token

            # Never hand out a token that is past its time
            self._token = None
            token = await self._exchange(gst, force_refresh)
            self._token = token
            return token

    def invalidate(self, token: Optional[AuthToken] = None) -> None:
        """
        Drop the cached token.

        When `token` is given, only drop it if it is still the cached one, so
        a caller holding a stale rejected token cannot evict a fresh one.
        """
        if token is None or self._token is None or self._token.value == token.value:
            if self._token is not None:
                logger.info("GST auth token invalidated")
            self._token = None

    def _parse_expiry(self, data: Dict[str, Any]) -> datetime:
        now = self._clock()
        fallback = now + timedelta(minutes=self.token_ttl_minutes)
        raw = data.get("TokenExpiry")
        if not raw:
            return fallback
        for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%d/%m/%Y %H:%M:%S"):
            try:
                # IRP reports IST wall-clock time
                parsed = datetime.strptime(str(raw), fmt).replace(tzinfo=timezone(timedelta(hours=5, minutes=30)))
                return parsed.astimezone(timezone.utc)
            except ValueError:
                continue
        logger.warning(f"Unrecognised TokenExpiry {raw!r}, using {self.token_ttl_minutes} minute TTL")
        return fallback

    async def _exchange(self, gst: GSTSettings, force_refresh: bool) -> AuthToken:
        url = f"{gst.api_base_url}{self.AUTH_ENDPOINT}"
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "client_id": gst.client_id,
            "client_secret": gst.client_secret,
        }
        body = {
            "UserName": gst.api_username,
            "Password": gst.api_password,
            "AppKey": gst.client_id,
            "ForceRefreshAccessToken": force_refresh,
        }

        self.exchange_count += 1
        logger.info(f"Authenticating with GST IRP as {gst.api_username} ({gst.environment.value})")

        try:
            async with httpx.AsyncClient(timeout=gst.request_timeout) as client:
                response = await client.post(url, headers=headers, json=body)
        except httpx.TimeoutException as e:
            raise TransientNetworkException("authentication request timed out", original_error=e)
        except httpx.RequestError as e:
            raise TransientNetworkException(f"authentication request failed: {e}", original_error=e)

        if response.status_code >= 500:
            raise TransientNetworkException(
                f"authentication returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise GSTAuthenticationException(f"HTTP {response.status_code} - {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise TransientNetworkException("invalid JSON from auth endpoint", original_error=e)

        payload = data.get("Data") or {}
        if data.get("Status") == 1 and payload.get("AuthToken"):
            token = AuthToken(
                value=payload["AuthToken"],
                expires_at=self._parse_expiry(payload),
                fingerprint=gst.credential_fingerprint,
            )
            logger.info(f"GST auth token acquired, valid until {token.expires_at.isoformat()}")
            return token

        errors = [
            {"error_code": str(e.get("ErrorCode", "")), "error_message": str(e.get("ErrorMessage", ""))}
            for e in (data.get("ErrorDetails") or [])
        ]
        message = "; ".join(f"{e['error_code']}: {e['error_message']}" for e in errors) or "Authentication failed"
        logger.warning(f"GST authentication rejected: {message}")
        raise GSTAuthenticationException(message, error_details=errors)
