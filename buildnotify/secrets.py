"""Secret store clients."""

import asyncio
import base64
import binascii
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable

import httpx

from buildnotify.errors import SecretError
from buildnotify.gcp import MetadataTokenSource

logger = logging.getLogger(__name__)

SECRET_MANAGER_URL = "https://secretmanager.googleapis.com/v1"


class SecretGetter(ABC):
    """Fetches secret values by resource name."""

    @abstractmethod
    async def get_secret(self, name: str) -> str:
        """Return the secret value, raising SecretError on failure."""
        ...


class SecretManagerClient(SecretGetter):
    """Reads secret versions through the Secret Manager REST API.

    `name` is a version resource, e.g.
    `projects/my-project/secrets/my-secret/versions/latest`.
    """

    def __init__(self, client: httpx.AsyncClient, tokens: MetadataTokenSource,
                 base_url: str = SECRET_MANAGER_URL):
        self._client = client
        self._tokens = tokens
        self._base_url = base_url.rstrip("/")

    async def get_secret(self, name: str) -> str:
        url = f"{self._base_url}/{name}:access"
        try:
            response = await self._client.get(url, headers=await self._tokens.headers())
            response.raise_for_status()
            data = response.json()["payload"]["data"]
            return base64.b64decode(data).decode("utf-8")
        except (httpx.HTTPError, KeyError, ValueError, binascii.Error) as e:
            raise SecretError(f"failed to get secret named {name!r}: {e}") from e


class CachingSecretGetter(SecretGetter):
    """Caches values from another SecretGetter, optionally for a limited time.

    Concurrent misses for the same name may both fetch; the last write wins
    and every writer stores a complete value.
    """

    def __init__(self, inner: SecretGetter, ttl: float | None = None,
                 clock: Callable[[], float] = time.monotonic):
        self._inner = inner
        self._ttl = ttl
        self._clock = clock
        self._values: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def get_secret(self, name: str) -> str:
        async with self._lock:
            cached = self._values.get(name)
        if cached is not None and (self._ttl is None or self._clock() < cached[1]):
            return cached[0]

        value = await self._inner.get_secret(name)
        expires_at = self._clock() + self._ttl if self._ttl is not None else 0.0
        async with self._lock:
            self._values[name] = (value, expires_at)
        return value

    async def clear(self) -> None:
        async with self._lock:
            self._values.clear()


class SetupCheckSecretGetter(SecretGetter):
    """Placeholder values used when checking a config without a secret store."""

    async def get_secret(self, name: str) -> str:
        return f'[SECRET VALUE FOR "{name}"]'
