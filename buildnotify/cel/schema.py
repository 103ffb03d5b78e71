"""Types known to the filter compiler.

Message and enum types are derived from the pydantic build models so the
filter schema can never drift from what the receiver decodes.
"""

import types
import typing
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel

from buildnotify.models.build import BuildEvent, Status

# Namespace users may prefix type names with, e.g.
# `google.devtools.cloudbuild.v1.Build.Status.SUCCESS`.
CONTAINER = "google.devtools.cloudbuild.v1"


@dataclass(frozen=True)
class Type:
    kind: str
    params: tuple["Type", ...] = ()
    name: str = ""

    def __str__(self) -> str:
        if self.kind == "list":
            return f"list({self.params[0]})"
        if self.kind == "map":
            return f"map({self.params[0]}, {self.params[1]})"
        if self.kind in ("message", "enum"):
            return self.name
        return self.kind

    @property
    def nullable(self) -> bool:
        return self.kind in ("message", "timestamp", "duration", "dyn", "null_type")


BOOL = Type("bool")
INT = Type("int")
DOUBLE = Type("double")
STRING = Type("string")
TIMESTAMP = Type("timestamp")
DURATION = Type("duration")
NULL = Type("null_type")
DYN = Type("dyn")


def list_of(elem: Type) -> Type:
    return Type("list", (elem,))


def map_of(key: Type, value: Type) -> Type:
    return Type("map", (key, value))


def message(name: str) -> Type:
    return Type("message", name=name)


def enum(name: str) -> Type:
    return Type("enum", name=name)


class Registry:
    """Message fields and enum values addressable from a filter."""

    def __init__(self) -> None:
        self.messages: dict[str, dict[str, Type]] = {}
        self.enums: dict[str, type[Enum]] = {}
        self._names: dict[type, str] = {}

    def add_message(self, model: type[BaseModel], name: str | None = None) -> Type:
        type_name = name or self._names.get(model) or model.__name__
        self._names[model] = type_name
        if type_name in self.messages:
            return message(type_name)
        fields: dict[str, Type] = {}
        self.messages[type_name] = fields
        for field_name, info in model.model_fields.items():
            fields[field_name] = self._from_annotation(info.annotation, type_name)
        return message(type_name)

    def add_enum(self, enum_cls: type[Enum], name: str) -> Type:
        self._names[enum_cls] = name
        self.enums[name] = enum_cls
        return enum(name)

    def field_type(self, message_name: str, field: str) -> Type | None:
        return self.messages.get(message_name, {}).get(field)

    def enum_constant(self, qualified: str) -> tuple[Type, Enum] | None:
        """Resolve `Build.Status.SUCCESS` (optionally container-prefixed)."""
        if qualified.startswith(CONTAINER + "."):
            qualified = qualified[len(CONTAINER) + 1:]
        enum_name, _, member = qualified.rpartition(".")
        enum_cls = self.enums.get(enum_name)
        if enum_cls is None or member not in enum_cls.__members__:
            return None
        return enum(enum_name), enum_cls[member]

    def _from_annotation(self, annotation: Any, owner: str) -> Type:
        origin = typing.get_origin(annotation)
        args = typing.get_args(annotation)
        if origin is typing.Annotated:
            return self._from_annotation(args[0], owner)
        if origin in (typing.Union, types.UnionType):
            real = [a for a in args if a is not type(None)]
            if len(real) == 1:
                return self._from_annotation(real[0], owner)
            return DYN
        if origin in (list, tuple):
            return list_of(self._from_annotation(args[0], owner) if args else DYN)
        if origin is dict:
            return map_of(self._from_annotation(args[0], owner), self._from_annotation(args[1], owner))
        if annotation is bool:
            return BOOL
        if annotation is int:
            return INT
        if annotation is float:
            return DOUBLE
        if annotation is str:
            return STRING
        if annotation is datetime:
            return TIMESTAMP
        if annotation is timedelta:
            return DURATION
        if isinstance(annotation, type) and issubclass(annotation, Enum):
            name = self._names.get(annotation) or f"{owner}.{annotation.__name__}"
            return self.add_enum(annotation, name)
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            return self.add_message(annotation)
        return DYN


def build_registry() -> Registry:
    registry = Registry()
    registry.add_enum(Status, "Build.Status")
    registry.add_message(BuildEvent, "Build")
    return registry


BUILD_REGISTRY = build_registry()
BUILD = message("Build")
