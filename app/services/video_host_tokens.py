import asyncio
import time
from typing import Any, Dict, Optional

import aiohttp
from loguru import logger

from app.core.config import settings
from app.core.exceptions import AuthExpiredError


class ConnectionStatus:
    CONNECTED = "CONNECTED"
    REAUTH_REQUIRED = "REAUTH_REQUIRED"
    DISCONNECTED = "DISCONNECTED"


class VideoHostTokenProvider:
    """Keeps a platform access token for the video host fresh"""

    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 refresh_token: Optional[str] = None, access_token: Optional[str] = None,
                 token_url: Optional[str] = None, timeout: float = 30.0):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.token_url = token_url or settings.video_host_token_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

        self._access_token = access_token
        # A statically configured token has no known expiry; treat it as valid until rejected
        self._expires_at: Optional[float] = None if access_token else 0.0
        self._lock = asyncio.Lock()
        self.connection_status = (
            ConnectionStatus.CONNECTED if (access_token or refresh_token) else ConnectionStatus.DISCONNECTED
        )

    @classmethod
    def from_settings(cls) -> "VideoHostTokenProvider":
        return cls(
            client_id=settings.video_host_client_id,
            client_secret=settings.video_host_client_secret,
            refresh_token=settings.video_host_refresh_token,
            access_token=settings.video_host_access_token,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._access_token or self.refresh_token)

    def _expires_soon(self, buffer_seconds: float) -> bool:
        if not self._access_token:
            return True
        if self._expires_at is None:
            return False
        return self._expires_at < time.time() + buffer_seconds

    async def ensure_valid_token(self, force_refresh: bool = False, buffer_seconds: float = 300) -> str:
        """Return a usable access token, refreshing it when forced or close to expiry"""
        if not self.is_configured:
            raise AuthExpiredError(
                "Video host is not configured. Authorize the platform account.",
                code="not_configured",
            )

        async with self._lock:
            if force_refresh or self._expires_soon(buffer_seconds):
                await self._refresh()
            return self._access_token

    async def _refresh(self):
        if not self.refresh_token:
            self.connection_status = ConnectionStatus.REAUTH_REQUIRED
            raise AuthExpiredError("Video host token refresh failed. Admin action required.",
                                   code="refresh_failed")

        form = {
            "client_id": self.client_id or "",
            "client_secret": self.client_secret or "",
            "refresh_token": self.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.token_url, data=form) as response:
                    payload: Dict[str, Any] = await response.json(content_type=None)
                    if response.status != 200 or not payload.get("access_token"):
                        raise AuthExpiredError(
                            f"Token endpoint returned HTTP {response.status}: {payload.get('error')}",
                            code="refresh_failed",
                        )
        except AuthExpiredError:
            self.connection_status = ConnectionStatus.REAUTH_REQUIRED
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.connection_status = ConnectionStatus.REAUTH_REQUIRED
            logger.error(f"Video host token refresh failed: {e}")
            raise AuthExpiredError("Video host token refresh failed. Admin action required.",
                                   code="refresh_failed") from e

        self._access_token = payload["access_token"]
        expires_in = payload.get("expires_in")
        self._expires_at = time.time() + float(expires_in) if expires_in else None
        if payload.get("refresh_token"):
            self.refresh_token = payload["refresh_token"]
        self.connection_status = ConnectionStatus.CONNECTED
        logger.info("Video host access token refreshed")

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self.connection_status == ConnectionStatus.CONNECTED,
            "status": self.connection_status,
            "expires_at": self._expires_at,
        }


# Global token provider instance
video_host_tokens = VideoHostTokenProvider.from_settings()
