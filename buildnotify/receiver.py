"""Pub/Sub push receiver.

Each request carries one build event. The receiver decodes it, runs the
filter, resolves bindings and calls the notifier; the response status tells
Pub/Sub whether to redeliver (any non-2xx) or consider the message consumed.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from buildnotify.bindings.resolver import BindingResolver
from buildnotify.cel.predicate import EventFilter
from buildnotify.errors import DecodeError, ResolutionError
from buildnotify.models.build import BuildEvent
from buildnotify.models.push import decode_build, decode_envelope
from buildnotify.notifiers.base import BaseNotifier
from buildnotify.secrets import SecretGetter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceiverParams:
    """Per-process receiver behavior.

    ignore_bad_messages: acknowledge payloads that do not decode as a build
        instead of rejecting them, so Pub/Sub stops redelivering them.
    delivery_timeout: seconds allowed for binding resolution plus the send.
    """

    ignore_bad_messages: bool = False
    delivery_timeout: float = 30.0


class PushReceiver:
    """Drives decode, filter, resolve and deliver for one push request at a time.

    Holds only read-only state, so concurrent requests share one instance.
    """

    def __init__(
        self,
        notifier: BaseNotifier,
        event_filter: EventFilter,
        resolver: BindingResolver,
        secret_getter: SecretGetter,
        params: ReceiverParams | None = None,
    ):
        self.notifier = notifier
        self._filter = event_filter
        self._resolver = resolver
        self._secret_getter = secret_getter
        self._params = params or ReceiverParams()

    async def handle(self, body: bytes) -> JSONResponse:
        try:
            envelope = decode_envelope(body)
        except DecodeError as e:
            logger.error(f"Failed to decode push request {body[:256]!r}: {e}")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Bad pubsub.Message JSON",
            )

        message = envelope.message
        logger.debug(
            f"Got Pub/Sub message id={message.id!r} from subscription {envelope.subscription!r}"
        )

        try:
            event = decode_build(message)
        except DecodeError as e:
            if self._params.ignore_bad_messages:
                logger.warning(
                    f"Not handling undecodable message id={message.id!r} "
                    f"publishTime={message.publish_time!r}: {e}"
                )
                return JSONResponse(
                    status_code=status.HTTP_200_OK,
                    content={"status": "ignored", "message": "Undecodable build payload"},
                )
            logger.error(
                f"Failed to decode message id={message.id!r} "
                f"publishTime={message.publish_time!r} into a build: {e}"
            )
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Bad Cloud Build Pub/Sub data",
            )

        if not self._filter.apply(event):
            logger.debug(f"Build {event.id!r} (status={event.status.value}) did not match filter")
            return JSONResponse(
                status_code=status.HTTP_200_OK,
                content={"status": "discarded", "message": "Build did not match filter"},
            )

        try:
            await asyncio.wait_for(self._deliver(event), timeout=self._params.delivery_timeout)
        except ResolutionError as e:
            logger.error(f"Failed to resolve bindings for build {event.id!r}: {e}")
            return self._nack(event, "failed to resolve substitutions")
        except asyncio.TimeoutError:
            logger.error(
                f"Delivery of build {event.id!r} timed out after {self._params.delivery_timeout}s"
            )
            return self._nack(event, "notification timed out")
        except Exception as e:
            logger.exception(f"Failed to send notification for build {event.id!r}: {e}")
            return self._nack(event, "failed to send notification")

        logger.info(f"Acking message id={message.id!r} for build {event.id!r}")
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ok", "message": "Notification sent", "build": event.id},
        )

    async def _deliver(self, event: BuildEvent) -> None:
        bindings = await self._resolver.resolve(self._secret_getter, event)
        await self.notifier.send_notification(event, bindings)

    def _nack(self, event: BuildEvent, reason: str) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "message": reason, "build": event.id},
        )


def create_router() -> APIRouter:
    """Routes for the push endpoint and the liveness check.

    The receiver is read from `app.state.receiver`, which is set once the
    notifier has been set up.
    """
    router = APIRouter()

    @router.post("/")
    async def push(request: Request) -> JSONResponse:
        """Receive a Pub/Sub push delivery."""
        receiver: PushReceiver | None = getattr(request.app.state, "receiver", None)
        if receiver is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Notifier is not set up",
            )
        return await receiver.handle(await request.body())

    @router.get("/helloz", response_class=PlainTextResponse)
    async def helloz(request: Request) -> PlainTextResponse:
        """Liveness check, independent of Pub/Sub."""
        receiver: PushReceiver | None = getattr(request.app.state, "receiver", None)
        name = receiver.notifier.name if receiver is not None else "(starting)"
        started_at = getattr(request.app.state, "started_at", None) or datetime.now(timezone.utc)
        now = datetime.now(timezone.utc)
        return PlainTextResponse(
            f"Greetings from a Cloud Build notifier: {name}!\n"
            f"Start Time: {format_datetime(started_at, usegmt=True)}\n"
            f"Current Time: {format_datetime(now, usegmt=True)}\n"
        )

    return router
