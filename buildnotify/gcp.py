"""Access tokens for Google Cloud REST APIs."""

import asyncio
import logging
import time

import httpx

logger = logging.getLogger(__name__)

METADATA_TOKEN_URL = (
    "http://metadata.google.internal/computeMetadata/v1/instance/service-accounts/default/token"
)

# Refresh this long before the reported expiry.
_EXPIRY_SLACK_SECONDS = 60


class MetadataTokenSource:
    """Fetches and caches the runtime service account's access token."""

    def __init__(self, client: httpx.AsyncClient, url: str = METADATA_TOKEN_URL):
        self._client = client
        self._url = url
        self._token = ""
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def token(self) -> str:
        async with self._lock:
            if self._token and time.monotonic() < self._expires_at:
                return self._token

            response = await self._client.get(self._url, headers={"Metadata-Flavor": "Google"})
            response.raise_for_status()
            body = response.json()
            self._token = body["access_token"]
            expires_in = float(body.get("expires_in", 0))
            self._expires_at = time.monotonic() + max(expires_in - _EXPIRY_SLACK_SECONDS, 0)
            logger.debug(f"Refreshed access token, expires in {expires_in:.0f}s")
            return self._token

    async def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self.token()}"}
