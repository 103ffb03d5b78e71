"""Build event models.

A BuildEvent is the decoded payload of one Cloud Build Pub/Sub message. The
models accept both the camelCase wire names and the snake_case field names,
and silently drop fields they do not know about so that newer payloads keep
decoding.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel


class Status(str, Enum):
    """Build and step status, compared by canonical name."""

    STATUS_UNKNOWN = "STATUS_UNKNOWN"
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    WORKING = "WORKING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        Status.SUCCESS,
        Status.FAILURE,
        Status.INTERNAL_ERROR,
        Status.TIMEOUT,
        Status.CANCELLED,
        Status.EXPIRED,
    }
)

# Wire numbers of the proto enum; JSON payloads may carry either form.
STATUS_NUMBERS: dict[int, Status] = {
    0: Status.STATUS_UNKNOWN,
    10: Status.PENDING,
    1: Status.QUEUED,
    2: Status.WORKING,
    3: Status.SUCCESS,
    4: Status.FAILURE,
    5: Status.INTERNAL_ERROR,
    6: Status.TIMEOUT,
    7: Status.CANCELLED,
    9: Status.EXPIRED,
}


def _coerce_status(value: Any) -> Any:
    if value is None:
        return Status.STATUS_UNKNOWN
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return STATUS_NUMBERS.get(value, Status.STATUS_UNKNOWN)
    if isinstance(value, str) and value not in Status.__members__:
        return Status.STATUS_UNKNOWN
    return value


def _coerce_duration(value: Any) -> Any:
    # Durations travel as "<seconds>s", e.g. "600s" or "3.500s".
    if isinstance(value, str) and value.endswith("s"):
        try:
            return timedelta(seconds=float(value[:-1]))
        except ValueError:
            return value
    return value


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as RFC3339 in UTC, e.g. `2020-01-01T10:00:00.5Z`."""
    value = _as_utc(value).astimezone(timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    return text + "Z"


def format_duration(value: timedelta) -> str:
    """Render a duration the way the wire format does, e.g. `600s`."""
    seconds = value.total_seconds()
    if seconds == int(seconds):
        return f"{int(seconds)}s"
    return f"{seconds:.6f}".rstrip("0") + "s"


StatusValue = Annotated[Status, BeforeValidator(_coerce_status)]
Duration = Annotated[
    timedelta,
    BeforeValidator(_coerce_duration),
    PlainSerializer(format_duration, return_type=str, when_used="json"),
]
Timestamp = Annotated[
    datetime,
    AfterValidator(_as_utc),
    PlainSerializer(format_timestamp, return_type=str, when_used="json"),
]


class _Message(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class TimeSpan(_Message):
    """Start and end times of an operation."""

    start_time: Timestamp | None = None
    end_time: Timestamp | None = None


class BuildStep(_Message):
    """A single step of a build."""

    name: str = ""
    id: str = ""
    args: tuple[str, ...] = ()
    env: tuple[str, ...] = ()
    dir: str = ""
    entrypoint: str = ""
    wait_for: tuple[str, ...] = ()
    secret_env: tuple[str, ...] = ()
    status: StatusValue = Status.STATUS_UNKNOWN
    timeout: Duration | None = None
    timing: TimeSpan | None = None
    pull_timing: TimeSpan | None = None


class BuiltImage(_Message):
    """An image pushed by the build."""

    name: str = ""
    digest: str = ""
    push_timing: TimeSpan | None = None


class Results(_Message):
    """Artifacts produced by the build."""

    images: tuple[BuiltImage, ...] = ()
    build_step_images: tuple[str, ...] = ()
    num_artifacts: int = 0


class RepoSource(_Message):
    project_id: str = ""
    repo_name: str = ""
    branch_name: str = ""
    tag_name: str = ""
    commit_sha: str = ""
    dir: str = ""


class StorageSource(_Message):
    bucket: str = ""
    object: str = ""
    generation: int = 0


class Source(_Message):
    repo_source: RepoSource | None = None
    storage_source: StorageSource | None = None


class FailureInfo(_Message):
    type: str = ""
    detail: str = ""


class BuildWarning(_Message):
    text: str = ""
    priority: str = ""


class BuildEvent(_Message):
    """Immutable snapshot of one build's lifecycle state.

    Optional sub-messages and timestamps are None when the payload did not
    carry them; scalars fall back to their zero value.
    """

    id: str = ""
    name: str = ""
    project_id: str = ""
    build_trigger_id: str = ""
    status: StatusValue = Status.STATUS_UNKNOWN
    status_detail: str = ""
    source: Source | None = None
    steps: tuple[BuildStep, ...] = ()
    results: Results | None = None
    create_time: Timestamp | None = None
    start_time: Timestamp | None = None
    finish_time: Timestamp | None = None
    timeout: Duration | None = None
    queue_ttl: Duration | None = None
    images: tuple[str, ...] = ()
    logs_bucket: str = ""
    log_url: str = ""
    substitutions: dict[str, str] = Field(default_factory=dict)
    tags: tuple[str, ...] = ()
    timing: dict[str, TimeSpan] = Field(default_factory=dict)
    service_account: str = ""
    failure_info: FailureInfo | None = None
    warnings: tuple[BuildWarning, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def with_log_url(self, log_url: str) -> "BuildEvent":
        """Return a copy of this event carrying a different log URL."""
        return self.model_copy(update={"log_url": log_url})

    def to_wire(self) -> dict[str, Any]:
        """Serialize using the camelCase wire names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
