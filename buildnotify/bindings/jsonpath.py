"""Compiled path expressions for substitution bindings.

A binding path is written as `$(<path>)`, where `<path>` is a restricted
JSONPath expression rooted at `build` or `secrets`:

    build.status
    build.substitutions.BRANCH_NAME
    build.substitutions['_COMMIT_AUTHOR']
    build.steps[0].name
    build.steps[-1].name
    build.steps[*].name
    build.tags[1:3]
    secrets.some-password

Paths are parsed once into a chain of step functions; evaluation walks the
chain over the payload and never re-parses the text.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel

from buildnotify.errors import PathCompileError, ResolutionError
from buildnotify.models.build import format_duration, format_timestamp

_NAME = re.compile(r"[^.\[\]\s'\"()]+")
_INDEX = re.compile(r"-?\d+")
_SLICE = re.compile(r"(-?\d*):(-?\d*)(?::(-?\d+))?")

Step = Callable[[Any], list[Any]]


@dataclass(frozen=True)
class _Segment:
    kind: str  # field, index, slice or wildcard
    value: Any = None

    def describe(self) -> str:
        if self.kind == "field":
            return f".{self.value}"
        if self.kind == "index":
            return f"[{self.value}]"
        if self.kind == "slice":
            return "[{}:{}]".format(*(("" if v is None else v) for v in self.value[:2]))
        return "[*]"


class JSONPath:
    """A compiled binding path."""

    def __init__(self, expression: str, segments: list[_Segment]):
        self.expression = expression
        self._segments = tuple(segments)
        self._steps: tuple[Step, ...] = tuple(_make_step(s) for s in segments)

    @property
    def root(self) -> str:
        return self._segments[0].value

    @property
    def secret_name(self) -> str | None:
        """Local secret name for `secrets.<name>` paths, `*` for wildcards."""
        if self.root != "secrets" or len(self._segments) < 2:
            return None
        second = self._segments[1]
        if second.kind == "field":
            return second.value
        return "*"

    def find(self, payload: Any) -> list[Any]:
        """Evaluate the path, raising ResolutionError on missing data."""
        current = [payload]
        for segment, step in zip(self._segments, self._steps):
            found: list[Any] = []
            for value in current:
                try:
                    found.extend(step(value))
                except ResolutionError as e:
                    raise ResolutionError(
                        f"path {self.expression!r} failed at {segment.describe()}: {e}"
                    ) from e
            current = found
        return current


def parse_path(expression: str) -> JSONPath:
    """Compile a `$( ... )` wrapped path expression."""
    if not expression.startswith("$(") or not expression.endswith(")"):
        raise PathCompileError(
            expression, "expected path to start with `$(` and end with `)`"
        )
    body = expression[2:-1].strip()
    if not body:
        raise PathCompileError(expression, "empty path expression")
    segments = _parse_segments(expression, body)
    if segments[0].kind != "field":
        raise PathCompileError(expression, "path must start with a field name")
    if segments[0].value == "secrets" and (
        len(segments) < 2 or segments[1].kind not in ("field", "wildcard")
    ):
        raise PathCompileError(expression, "secrets path must name a secret or use `*`")
    return JSONPath(expression, segments)


def _parse_segments(expression: str, body: str) -> list[_Segment]:
    segments: list[_Segment] = []
    i = 0
    if body.startswith("."):
        i = 1
    expect_name = True
    while i < len(body):
        ch = body[i]
        if ch == "[":
            close = body.find("]", i)
            if close == -1:
                raise PathCompileError(expression, f"unclosed `[` at position {i}")
            segments.append(_parse_bracket(expression, body[i + 1:close].strip()))
            i = close + 1
            expect_name = False
            continue
        if ch == "." and not expect_name:
            i += 1
            expect_name = True
            continue
        if expect_name:
            if ch == "*":
                segments.append(_Segment("wildcard"))
                i += 1
                expect_name = False
                continue
            m = _NAME.match(body, i)
            if m:
                segments.append(_Segment("field", m.group()))
                i = m.end()
                expect_name = False
                continue
        raise PathCompileError(expression, f"unexpected {ch!r} at position {i}")
    if expect_name:
        raise PathCompileError(expression, "path ends with `.`")
    return segments


def _parse_bracket(expression: str, inner: str) -> _Segment:
    if inner == "*":
        return _Segment("wildcard")
    if len(inner) >= 2 and inner[0] == inner[-1] and inner[0] in "'\"":
        return _Segment("field", inner[1:-1])
    if _INDEX.fullmatch(inner):
        return _Segment("index", int(inner))
    m = _SLICE.fullmatch(inner)
    if m:
        start, stop, step = (int(v) if v else None for v in m.groups())
        if step == 0:
            raise PathCompileError(expression, "slice step cannot be zero")
        return _Segment("slice", (start, stop, step))
    raise PathCompileError(expression, f"invalid subscript [{inner}]")


def _make_step(segment: _Segment) -> Step:
    if segment.kind == "field":
        name = segment.value
        return lambda value: [_field(value, name)]
    if segment.kind == "index":
        position = segment.value
        return lambda value: [_index(value, position)]
    if segment.kind == "slice":
        start, stop, step = segment.value
        return lambda value: list(_sequence(value)[start:stop:step])
    return _wildcard


def _field(value: Any, name: str) -> Any:
    if isinstance(value, BaseModel):
        fields = type(value).model_fields
        attr = name if name in fields else _by_alias(fields, name)
        if attr is None:
            raise ResolutionError(f"{type(value).__name__} has no field {name!r}")
        result = getattr(value, attr)
        if result is None:
            raise ResolutionError(f"field {name!r} is not set")
        return result
    if isinstance(value, dict):
        if name not in value:
            raise ResolutionError(f"key {name!r} not found")
        return value[name]
    raise ResolutionError(f"cannot look up {name!r} in a {type(value).__name__}")


def _by_alias(fields: dict[str, Any], alias: str) -> str | None:
    for attr, info in fields.items():
        if info.alias == alias:
            return attr
    return None


def _sequence(value: Any) -> list[Any] | tuple[Any, ...]:
    if not isinstance(value, (list, tuple)):
        raise ResolutionError(f"cannot index a {type(value).__name__}")
    return value


def _index(value: Any, position: int) -> Any:
    items = _sequence(value)
    if not -len(items) <= position < len(items):
        raise ResolutionError(f"index {position} out of range for length {len(items)}")
    return items[position]


def _wildcard(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, dict):
        return [value[k] for k in sorted(value)]
    if isinstance(value, BaseModel):
        return [v for v in (getattr(value, f) for f in type(value).model_fields) if v is not None]
    raise ResolutionError(f"cannot expand a {type(value).__name__}")


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, timedelta):
        return format_duration(value)
    return value


def render(value: Any) -> str:
    """Render one result as text; composite values become compact JSON."""
    if value is None:
        return "null"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, timedelta):
        return format_duration(value)
    if isinstance(value, (BaseModel, list, tuple, dict)):
        return json.dumps(_jsonable(value), separators=(",", ":"))
    return str(value)


def render_results(values: list[Any]) -> str:
    return " ".join(render(v) for v in values)
