"""Notification configuration models."""

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from buildnotify.errors import ConfigError

# Set of allowed notifier config `apiVersion` values.
ALLOWED_API_VERSIONS = frozenset({"cloud-build-notifiers/v1"})

# User-defined substitution names, e.g. `_COMMIT_AUTHOR`.
SUBSTITUTION_NAME_PATTERN = re.compile(r"^_[A-Z][0-9A-Z_]*$")

SECRET_REF = "secretRef"


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


class Metadata(_Strict):
    """Object metadata."""

    name: str = ""


class Secret(_Strict):
    """Maps a deployment-local secret name to its secret store resource name."""

    local_name: str = Field(alias="name")
    resource_name: str = Field(alias="value")


class Notification(_Strict):
    """What to match, where to deliver and which values to bind."""

    filter: str = ""
    delivery: dict[str, Any] = Field(default_factory=dict)
    substitutions: dict[str, str] = Field(default_factory=dict)

    @field_validator("substitutions")
    @classmethod
    def check_substitution_names(cls, value: dict[str, str]) -> dict[str, str]:
        for name in value:
            if not SUBSTITUTION_NAME_PATTERN.match(name):
                raise ValueError(
                    f"user-defined substitution {name!r} must match pattern "
                    f"{SUBSTITUTION_NAME_PATTERN.pattern}"
                )
        return value


class Spec(_Strict):
    notification: Notification
    secrets: list[Secret] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_secrets(self) -> "Spec":
        seen: set[str] = set()
        for secret in self.secrets:
            if secret.local_name in seen:
                raise ValueError(f"duplicate secret name {secret.local_name!r}")
            seen.add(secret.local_name)
        return self


class Config(_Strict):
    """A notifier configuration document."""

    api_version: str = Field(alias="apiVersion")
    kind: str = ""
    metadata: Metadata = Field(default_factory=Metadata)
    spec: Spec

    @field_validator("api_version")
    @classmethod
    def check_api_version(cls, value: str) -> str:
        if value not in ALLOWED_API_VERSIONS:
            raise ValueError(
                f"apiVersion {value!r} must be one of {sorted(ALLOWED_API_VERSIONS)}"
            )
        return value

    @property
    def notification(self) -> Notification:
        return self.spec.notification

    @property
    def secrets(self) -> list[Secret]:
        return self.spec.secrets


def get_secret_ref(delivery: dict[str, Any], field_name: str) -> str:
    """Return the local secret name referenced by `delivery[field_name]`.

    The field must have the form `{secretRef: <local-name>}`.
    """
    if field_name not in delivery:
        raise ConfigError(f"field {field_name!r} not present in delivery config")
    field = delivery[field_name]
    if not isinstance(field, dict):
        raise ConfigError(f"expected secret field {field_name!r} to be a mapping")
    if SECRET_REF not in field:
        raise ConfigError(
            f"expected field {field_name!r} to be of the form `{SECRET_REF}: <some-ref>`"
        )
    ref = field[SECRET_REF]
    if not isinstance(ref, str):
        raise ConfigError(
            f"expected field {SECRET_REF!r} of parent {field_name!r} to have a string value"
        )
    return ref


def find_secret_resource_name(secrets: list[Secret], local_name: str) -> str:
    """Return the resource name for the secret with the given local name."""
    for secret in secrets:
        if secret.local_name == local_name:
            return secret.resource_name
    raise ConfigError(f"no secret with local name {local_name!r} in the config")
