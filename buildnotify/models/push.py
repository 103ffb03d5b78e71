"""Pub/Sub push envelope models and decoding."""

import base64
import binascii

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from buildnotify.errors import DecodeError
from buildnotify.models.build import BuildEvent


class PushMessage(BaseModel):
    """The message part of a push request; `data` is base64 encoded."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    data: str = ""
    id: str = Field(default="", validation_alias=AliasChoices("id", "messageId", "message_id"))
    publish_time: str = Field(
        default="", validation_alias=AliasChoices("publishTime", "publish_time")
    )
    attributes: dict[str, str] = Field(default_factory=dict)


class PushEnvelope(BaseModel):
    """Outer wrapper of a Pub/Sub push delivery."""

    model_config = ConfigDict(extra="ignore")

    message: PushMessage
    subscription: str = ""


def decode_envelope(body: bytes) -> PushEnvelope:
    """Parse the raw request body into a PushEnvelope."""
    if not body:
        raise DecodeError("empty request body")
    try:
        return PushEnvelope.model_validate_json(body)
    except ValidationError as e:
        raise DecodeError(f"bad push envelope: {e}") from e


def decode_build(message: PushMessage) -> BuildEvent:
    """Decode the base64 JSON payload of a push message into a BuildEvent.

    Unknown fields are dropped; fields of the wrong type fail the decode.
    """
    try:
        raw = base64.b64decode(message.data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"message {message.id!r} data is not valid base64: {e}") from e

    if not raw:
        raise DecodeError(f"message {message.id!r} has no data")

    try:
        return BuildEvent.model_validate_json(raw)
    except ValidationError as e:
        raise DecodeError(f"message {message.id!r} data is not a valid build: {e}") from e
