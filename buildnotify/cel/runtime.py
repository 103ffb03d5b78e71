"""Value semantics used by compiled filters at evaluation time.

Every failure is raised as EvaluationError; FilterPredicate turns those into a
non-match.
"""

import math
import operator
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel

from buildnotify.errors import EvaluationError
from buildnotify.models.build import format_duration, format_timestamp

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_RFC3339 = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt ](\d{2}):(\d{2}):(\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$"
)
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_OFFSET = re.compile(r"^([+-])(\d{2}):(\d{2})$")


def require(value: Any, what: str) -> Any:
    if value is None:
        raise EvaluationError(f"{what} is not set")
    return value


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def check_int(value: int) -> int:
    if not INT64_MIN <= value <= INT64_MAX:
        raise EvaluationError("integer overflow")
    return value


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# Equality and ordering

def equals(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    a, b = _plain(a), _plain(b)
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(equals(x, y) for x, y in zip(a, b))
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(equals(a[k], b[k]) for k in a)
    if isinstance(a, BaseModel) or isinstance(b, BaseModel):
        return type(a) is type(b) and a == b
    return a == b


_ORDERING: dict[str, Callable[[Any, Any], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def compare(op: str, a: Any, b: Any) -> bool:
    a = _plain(require(a, "left operand"))
    b = _plain(require(b, "right operand"))
    try:
        return _ORDERING[op](a, b)
    except TypeError as e:
        raise EvaluationError(f"cannot compare {type(a).__name__} and {type(b).__name__}") from e


def contained_in(elem: Any, container: Any) -> bool:
    require(container, "right operand of 'in'")
    if isinstance(container, dict):
        return _plain(elem) in container
    return any(equals(elem, item) for item in container)


# Arithmetic

def add(a: Any, b: Any) -> Any:
    require(a, "left operand")
    require(b, "right operand")
    if _is_int(a) and _is_int(b):
        return check_int(a + b)
    if isinstance(a, (list, tuple)):
        return list(a) + list(b)
    try:
        return a + b
    except OverflowError as e:
        raise EvaluationError("timestamp out of range") from e


def subtract(a: Any, b: Any) -> Any:
    require(a, "left operand")
    require(b, "right operand")
    if _is_int(a) and _is_int(b):
        return check_int(a - b)
    try:
        return a - b
    except OverflowError as e:
        raise EvaluationError("timestamp out of range") from e


def multiply(a: Any, b: Any) -> Any:
    require(a, "left operand")
    require(b, "right operand")
    if _is_int(a) and _is_int(b):
        return check_int(a * b)
    return a * b


def divide(a: Any, b: Any) -> Any:
    require(a, "left operand")
    require(b, "right operand")
    if _is_int(a) and _is_int(b):
        if b == 0:
            raise EvaluationError("division by zero")
        quotient = abs(a) // abs(b)
        return check_int(-quotient if (a < 0) != (b < 0) else quotient)
    if b == 0:
        if a == 0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * math.copysign(1.0, b)
    return a / b


def modulo(a: Any, b: Any) -> int:
    require(a, "left operand")
    require(b, "right operand")
    if b == 0:
        raise EvaluationError("modulus by zero")
    remainder = abs(a) % abs(b)
    return -remainder if a < 0 else remainder


def negate(a: Any) -> Any:
    require(a, "operand")
    if _is_int(a):
        return check_int(-a)
    return -a


# Functions

def size(value: Any) -> int:
    return len(require(value, "argument of size()"))


def contains(s: str, sub: str) -> bool:
    return sub in require(s, "receiver of contains()")


def starts_with(s: str, prefix: str) -> bool:
    return require(s, "receiver of startsWith()").startswith(prefix)


def ends_with(s: str, suffix: str) -> bool:
    return require(s, "receiver of endsWith()").endswith(suffix)


def matches(s: str, pattern: str | re.Pattern) -> bool:
    require(s, "receiver of matches()")
    try:
        return re.search(pattern, s) is not None
    except re.error as e:
        raise EvaluationError(f"invalid regular expression {pattern!r}: {e}") from e


def parse_timestamp(text: str) -> datetime:
    m = _RFC3339.match(text)
    if not m:
        raise EvaluationError(f"invalid RFC3339 timestamp {text!r}")
    year, month, day, hour, minute, second, fraction, zone = m.groups()
    micros = int((fraction[1:] + "000000")[:6]) if fraction else 0
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    try:
        return datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), micros, tzinfo=tz
        )
    except ValueError as e:
        raise EvaluationError(f"invalid RFC3339 timestamp {text!r}: {e}") from e


def parse_duration(text: str) -> timedelta:
    body = text
    sign = 1
    if body[:1] in "+-" and body:
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if body == "0":
        return timedelta(0)
    seconds = 0.0
    pos = 0
    for m in _DURATION_PART.finditer(body):
        if m.start() != pos:
            break
        seconds += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos == 0 or pos != len(body):
        raise EvaluationError(f"invalid duration {text!r}")
    return timedelta(seconds=sign * seconds)


def to_int(value: Any) -> int:
    require(value, "argument of int()")
    if isinstance(value, datetime):
        return math.floor(value.timestamp())
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise EvaluationError("cannot convert non-finite double to int")
        return check_int(int(value))
    if isinstance(value, str):
        try:
            return check_int(int(value, 10))
        except ValueError as e:
            raise EvaluationError(f"cannot convert {value!r} to int") from e
    return check_int(value)


def to_double(value: Any) -> float:
    require(value, "argument of double()")
    try:
        return float(value)
    except ValueError as e:
        raise EvaluationError(f"cannot convert {value!r} to double") from e


def to_string(value: Any) -> str:
    require(value, "argument of string()")
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, timedelta):
        return format_duration(value)
    return str(value)


def _zone(tz: str | None) -> Any:
    if tz is None:
        return timezone.utc
    m = _OFFSET.match(tz)
    if m:
        sign = -1 if m.group(1) == "-" else 1
        return timezone(sign * timedelta(hours=int(m.group(2)), minutes=int(m.group(3))))
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise EvaluationError(f"unknown time zone {tz!r}") from e


def _local(ts: datetime, tz: str | None) -> datetime:
    return require(ts, "timestamp").astimezone(_zone(tz))


TIMESTAMP_ACCESSORS: dict[str, Callable[[datetime], int]] = {
    "getFullYear": lambda d: d.year,
    "getMonth": lambda d: d.month - 1,
    "getDate": lambda d: d.day,
    "getDayOfMonth": lambda d: d.day - 1,
    "getDayOfWeek": lambda d: d.isoweekday() % 7,
    "getDayOfYear": lambda d: d.timetuple().tm_yday - 1,
    "getHours": lambda d: d.hour,
    "getMinutes": lambda d: d.minute,
    "getSeconds": lambda d: d.second,
    "getMilliseconds": lambda d: d.microsecond // 1000,
}


def timestamp_accessor(name: str) -> Callable[..., int]:
    get = TIMESTAMP_ACCESSORS[name]

    def accessor(ts: datetime, tz: str | None = None) -> int:
        return get(_local(ts, tz))

    return accessor


def _truncate(value: float) -> int:
    return int(value)


DURATION_ACCESSORS: dict[str, Callable[[timedelta], int]] = {
    "getHours": lambda d: _truncate(d.total_seconds() / 3600),
    "getMinutes": lambda d: _truncate(d.total_seconds() / 60),
    "getSeconds": lambda d: _truncate(d.total_seconds()),
    "getMilliseconds": lambda d: _truncate(d.total_seconds() * 1000),
}


def duration_accessor(name: str) -> Callable[[timedelta], int]:
    get = DURATION_ACCESSORS[name]

    def accessor(d: timedelta) -> int:
        return get(require(d, "duration"))

    return accessor


# Field access

def select(value: Any, field: str) -> Any:
    """Read a message field or map entry; unset optional fields read as None."""
    require(value, f"receiver of .{field}")
    if isinstance(value, dict):
        if field not in value:
            raise EvaluationError(f"no such key {field!r}")
        return value[field]
    return getattr(value, field)


def index(value: Any, key: Any) -> Any:
    require(value, "indexed value")
    if isinstance(value, dict):
        key = _plain(key)
        if key not in value:
            raise EvaluationError(f"no such key {key!r}")
        return value[key]
    if not _is_int(key):
        raise EvaluationError(f"list index must be an int, got {type(key).__name__}")
    if not 0 <= key < len(value):
        raise EvaluationError(f"index {key} out of range")
    return value[key]


def present(value: Any, field: str) -> bool:
    """has(): true when a field is set to a non-default value."""
    require(value, f"receiver of has(.{field})")
    if isinstance(value, dict):
        return field in value
    attr = getattr(value, field)
    if attr is None or attr is False:
        return False
    if isinstance(attr, Enum):
        return attr is not next(iter(type(attr)))
    if isinstance(attr, (str, list, tuple, dict)):
        return len(attr) > 0
    if _is_int(attr) or isinstance(attr, float):
        return attr != 0
    return True
