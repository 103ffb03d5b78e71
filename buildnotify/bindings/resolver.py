"""Resolution of user-defined substitutions against build events."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from types import MappingProxyType

from buildnotify.bindings.jsonpath import JSONPath, parse_path, render_results
from buildnotify.errors import PathCompileError, ResolutionError, SecretError
from buildnotify.models.build import BuildEvent
from buildnotify.models.config import SUBSTITUTION_NAME_PATTERN, Config, Secret
from buildnotify.secrets import SecretGetter

logger = logging.getLogger(__name__)


class BindingResolver(ABC):
    """Returns every bound substitution for a build event."""

    @abstractmethod
    async def resolve(self, secret_getter: SecretGetter, event: BuildEvent) -> dict[str, str]:
        ...


class JSONPathResolver(BindingResolver):
    """Resolves `$( ... )` path expressions compiled once at setup.

    The compiled table is immutable, so one resolver can serve any number of
    concurrent requests without locking.
    """

    def __init__(self, paths: Mapping[str, JSONPath], secrets: list[Secret]):
        self._paths: Mapping[str, JSONPath] = MappingProxyType(dict(paths))
        self._secrets: Mapping[str, str] = MappingProxyType(
            {s.local_name: s.resource_name for s in secrets}
        )

    @classmethod
    def from_config(cls, config: Config) -> "JSONPathResolver":
        paths: dict[str, JSONPath] = {}
        for name, expression in config.notification.substitutions.items():
            if not SUBSTITUTION_NAME_PATTERN.match(name):
                raise PathCompileError(
                    expression,
                    f"substitution name {name!r} must match {SUBSTITUTION_NAME_PATTERN.pattern}",
                )
            paths[name] = parse_path(expression)
        logger.info(f"Compiled {len(paths)} substitution path(s)")
        return cls(paths, config.secrets)

    @property
    def names(self) -> list[str]:
        return sorted(self._paths)

    def _referenced_secrets(self) -> list[str]:
        names: set[str] = set()
        for path in self._paths.values():
            name = path.secret_name
            if name == "*":
                names.update(self._secrets)
            elif name is not None:
                names.add(name)
        return sorted(names)

    async def _fetch_secrets(self, secret_getter: SecretGetter) -> dict[str, str]:
        values: dict[str, str] = {}
        for local_name in self._referenced_secrets():
            resource_name = self._secrets.get(local_name)
            if resource_name is None:
                raise ResolutionError(f"no secret named {local_name!r} in the config")
            try:
                values[local_name] = await secret_getter.get_secret(resource_name)
            except SecretError as e:
                raise ResolutionError(
                    f"failed to get secret value for resource {resource_name!r}: {e}"
                ) from e
        return values

    async def resolve(self, secret_getter: SecretGetter, event: BuildEvent) -> dict[str, str]:
        payload = {"build": event, "secrets": await self._fetch_secrets(secret_getter)}

        resolved: dict[str, str] = {}
        for name, path in self._paths.items():
            values = path.find(payload)
            if not values:
                raise ResolutionError(f"no results for {name!r} with path {path.expression!r}")
            resolved[name] = render_results(values)
        return resolved
