"""Process entry point shared by every notifier binary."""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import IO, AsyncGenerator

import httpx
import uvicorn
import yaml
from fastapi import FastAPI

from buildnotify.bindings.resolver import JSONPathResolver
from buildnotify.cel.predicate import make_predicate
from buildnotify.config import Settings, get_settings
from buildnotify.errors import ConfigError
from buildnotify.gcp import MetadataTokenSource
from buildnotify.notifiers.base import BaseNotifier
from buildnotify.receiver import PushReceiver, ReceiverParams, create_router
from buildnotify.secrets import (
    CachingSecretGetter,
    SecretGetter,
    SecretManagerClient,
    SetupCheckSecretGetter,
)
from buildnotify.storage import decode_config, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(receiver: PushReceiver | None = None, lifespan=None) -> FastAPI:
    """Build the HTTP app. `receiver` may be left unset for the lifespan to fill in."""
    app = FastAPI(
        title="buildnotify",
        description="Relays Cloud Build status events to a delivery channel",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.receiver = receiver
    app.state.started_at = datetime.now(timezone.utc)
    app.include_router(create_router())
    return app


async def set_up_receiver(
    notifier: BaseNotifier,
    settings: Settings,
    client: httpx.AsyncClient,
    tokens: MetadataTokenSource | None = None,
    secret_getter: SecretGetter | None = None,
) -> PushReceiver:
    """Load the config, compile the filter and bindings, and set up the notifier."""
    tokens = tokens or MetadataTokenSource(client)
    config = await get_config(settings.config_path, client, tokens)
    logger.info(
        f"Loaded config {config.metadata.name!r} from {settings.config_path} "
        f"(project={settings.project_id or 'unset'})"
    )

    event_filter = make_predicate(config.notification.filter)
    resolver = JSONPathResolver.from_config(config)
    logger.info(f"Compiled filter and {len(resolver.names)} substitution(s)")

    if secret_getter is None:
        secret_getter = CachingSecretGetter(
            SecretManagerClient(client, tokens), ttl=settings.secret_cache_ttl
        )
    await notifier.set_up(config, secret_getter, resolver)
    logger.info(f"Notifier {notifier.name} set up")

    params = ReceiverParams(
        ignore_bad_messages=settings.ignore_bad_messages,
        delivery_timeout=settings.delivery_timeout,
    )
    return PushReceiver(notifier, event_filter, resolver, secret_getter, params)


def create_service_app(notifier: BaseNotifier, settings: Settings) -> FastAPI:
    """App whose startup sets up the notifier; any setup error aborts startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        async with httpx.AsyncClient(timeout=settings.delivery_timeout) as client:
            tokens = MetadataTokenSource(client)
            secrets = CachingSecretGetter(
                SecretManagerClient(client, tokens), ttl=settings.secret_cache_ttl
            )
            app.state.receiver = await set_up_receiver(notifier, settings, client, tokens, secrets)
            logger.info(f"Notifier {notifier.name} started")

            yield

            app.state.receiver = None
            await notifier.close()
            await secrets.clear()
            logger.info(f"Notifier {notifier.name} stopped")

    return create_app(lifespan=lifespan)


async def setup_check(notifier: BaseNotifier, stream: IO | None = None) -> None:
    """Validate a config read from `stream` (stdin by default) without touching any cloud service."""
    config = decode_config((stream or sys.stdin).read())
    logger.info(
        "Decoded config:\n"
        + yaml.safe_dump(config.model_dump(mode="json", by_alias=True), sort_keys=False)
    )
    make_predicate(config.notification.filter)
    resolver = JSONPathResolver.from_config(config)
    try:
        await notifier.set_up(config, SetupCheckSecretGetter(), resolver)
    finally:
        await notifier.close()
    logger.info(f"Setup check passed for notifier {notifier.name}")


def run(notifier: BaseNotifier) -> None:
    """Run `notifier` according to the process settings."""
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    if settings.smoketest:
        logger.info(f"Notifier smoketest: {notifier.name}")
        return

    if settings.setup_check:
        logger.info("Running setup check, reading config from stdin")
        asyncio.run(setup_check(notifier))
        return

    if not settings.config_path:
        raise ConfigError("expected CONFIG_PATH to be non-empty")

    uvicorn.run(
        create_service_app(notifier, settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
