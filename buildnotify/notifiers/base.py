"""Base class for notifiers and helpers shared by them."""

from abc import ABC, abstractmethod
from enum import Enum
from string import Template
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from buildnotify.bindings.resolver import BindingResolver
from buildnotify.errors import ConfigError
from buildnotify.models.build import BuildEvent
from buildnotify.models.config import Config
from buildnotify.secrets import SecretGetter


class BaseNotifier(ABC):
    """Abstract base class for delivery adapters.

    One notifier is active per process. `set_up` runs once before the server
    accepts traffic; `send_notification` runs for every event that matched
    the configured filter.
    """

    @property
    def name(self) -> str:
        """Notifier name for logging."""
        return type(self).__name__

    @abstractmethod
    async def set_up(
        self, config: Config, secret_getter: SecretGetter, resolver: BindingResolver
    ) -> None:
        """Validate `config.notification.delivery` and prepare to send.

        Raise ConfigError when required delivery fields are absent or malformed.
        """
        ...

    @abstractmethod
    async def send_notification(self, event: BuildEvent, bindings: dict[str, str]) -> None:
        """Deliver one notification, raising on failure."""
        ...

    async def close(self) -> None:
        """Release any resources held by the notifier."""


def require_string(delivery: dict, field_name: str) -> str:
    """Return a required non-empty string field of the delivery config."""
    value = delivery.get(field_name)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"expected delivery config to have string field {field_name!r}")
    return value


class UTMMedium(str, Enum):
    """Allowed values for the `utm_medium` log URL parameter."""

    EMAIL = "email"
    STORAGE = "storage"
    CHAT = "chat"
    HTTP = "http"
    OTHER = "other"


def add_utm_params(log_url: str, medium: UTMMedium | str) -> str:
    """Add campaign tracking parameters to a build log URL.

    Existing parameters are kept, including existing `utm_*` values.
    """
    try:
        medium = UTMMedium(medium)
    except ValueError as e:
        raise ValueError(f"unknown UTM medium: {medium!r}") from e

    parts = urlsplit(log_url)
    try:
        params = parse_qsl(parts.query, keep_blank_values=True, strict_parsing=bool(parts.query))
    except ValueError as e:
        raise ValueError(f"failed to parse query from {log_url!r}: {e}") from e

    params += [
        ("utm_campaign", "google-cloud-build-notifiers"),
        ("utm_medium", medium.value),
        ("utm_source", "google-cloud-build"),
    ]
    params.sort(key=lambda kv: kv[0])
    return urlunsplit(parts._replace(query=urlencode(params)))


def decorate_log_url(event: BuildEvent, medium: UTMMedium | str) -> BuildEvent:
    """Return a copy of the event whose log URL carries UTM parameters."""
    if not event.log_url:
        return event
    return event.with_log_url(add_utm_params(event.log_url, medium))


def substitute(template: str, bindings: dict[str, str]) -> str:
    """Replace `$_NAME` and `${_NAME}` references with bound values.

    Unknown references are left untouched.
    """
    return Template(template).safe_substitute(bindings)
