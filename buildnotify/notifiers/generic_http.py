"""Generic HTTP notifier: sends the build as JSON to a configured URL."""

import logging

import httpx

from buildnotify.bindings.resolver import BindingResolver
from buildnotify.errors import ConfigError, DeliveryError
from buildnotify.main import run
from buildnotify.models.build import BuildEvent
from buildnotify.models.config import Config
from buildnotify.notifiers.base import (
    BaseNotifier,
    UTMMedium,
    decorate_log_url,
    require_string,
    substitute,
)
from buildnotify.secrets import SecretGetter

logger = logging.getLogger(__name__)


class HTTPNotifier(BaseNotifier):
    """PUTs the build event JSON to `delivery.url`.

    Optional `delivery.headers` values may reference bindings, e.g.
    `X-Commit: $_COMMIT_SHA`.
    """

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client
        self._url = ""
        self._method = "PUT"
        self._headers: dict[str, str] = {}

    async def set_up(
        self, config: Config, secret_getter: SecretGetter, resolver: BindingResolver
    ) -> None:
        delivery = config.notification.delivery
        self._url = require_string(delivery, "url")
        self._method = str(delivery.get("method", "PUT")).upper()
        if self._method not in ("PUT", "POST"):
            raise ConfigError(f"delivery method must be PUT or POST, got {self._method!r}")

        headers = delivery.get("headers", {})
        if not isinstance(headers, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
        ):
            raise ConfigError("delivery headers must be a mapping of strings")
        self._headers = dict(headers)

        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        logger.info(f"HTTP notifier will {self._method} to {self._url}")

    async def send_notification(self, event: BuildEvent, bindings: dict[str, str]) -> None:
        logger.info(f"Sending HTTP request for build {event.id!r} (status={event.status.value})")
        event = decorate_log_url(event, UTMMedium.HTTP)
        headers = {k: substitute(v, bindings) for k, v in self._headers.items()}

        try:
            response = await self._client.request(
                self._method, self._url, json=event.to_wire(), headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(f"failed to {self._method} build {event.id!r} to {self._url}: {e}") from e

        logger.debug(f"HTTP notification for build {event.id!r} accepted ({response.status_code})")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def main() -> None:
    run(HTTPNotifier())


if __name__ == "__main__":
    main()
