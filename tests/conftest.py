"""Shared fixtures for notifier tests."""

import asyncio
import base64
import json
from typing import Any

import pytest

from buildnotify.bindings.resolver import BindingResolver
from buildnotify.errors import SecretError
from buildnotify.models.build import BuildEvent
from buildnotify.models.config import Config
from buildnotify.notifiers.base import BaseNotifier
from buildnotify.secrets import SecretGetter


BUILD_PAYLOAD: dict[str, Any] = {
    "id": "some-build-id",
    "projectId": "my-project-id",
    "buildTriggerId": "some-trigger-id",
    "status": "SUCCESS",
    "createTime": "2021-03-08T18:00:00Z",
    "startTime": "2021-03-08T18:00:05Z",
    "finishTime": "2021-03-08T18:05:05.5Z",
    "timeout": "600s",
    "logUrl": "https://console.cloud.google.com/cloud-build/builds/some-build-id?project=12345",
    "substitutions": {
        "BRANCH_NAME": "main",
        "COMMIT_SHA": "abc123",
        "_COMMIT_AUTHOR": "alice",
    },
    "steps": [
        {"name": "gcr.io/cloud-builders/docker", "args": ["build", "."], "status": "SUCCESS"},
        {"name": "gcr.io/cloud-builders/gcloud", "args": ["deploy"], "status": "SUCCESS"},
    ],
    "tags": ["foo", "bar", "baz"],
    "images": ["gcr.io/my-project-id/app"],
    "someFieldFromTheFuture": {"nested": True},
}


def make_event(**overrides: Any) -> BuildEvent:
    """Build an event from the sample payload with wire-named overrides."""
    payload = dict(BUILD_PAYLOAD)
    payload.update(overrides)
    return BuildEvent.model_validate(payload)


def push_body(payload: Any, message_id: str = "msg-1") -> bytes:
    """Wrap a build payload into a Pub/Sub push request body."""
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return json.dumps(
        {
            "message": {
                "data": base64.b64encode(raw).decode(),
                "messageId": message_id,
                "publishTime": "2021-03-08T18:05:06Z",
            },
            "subscription": "projects/my-project-id/subscriptions/notifier",
        }
    ).encode()


class FakeSecretGetter(SecretGetter):
    """In-memory secret store that records every lookup."""

    def __init__(self, values: dict[str, str] | None = None):
        self.values = values or {}
        self.calls: list[str] = []

    async def get_secret(self, name: str) -> str:
        self.calls.append(name)
        if name not in self.values:
            raise SecretError(f"secret {name!r} not found")
        return self.values[name]


class RecordingNotifier(BaseNotifier):
    """Notifier that remembers what it was asked to send."""

    def __init__(self, error: Exception | None = None, delay: float = 0.0):
        self.sent: list[tuple[BuildEvent, dict[str, str]]] = []
        self.config: Config | None = None
        self.closed = False
        self._error = error
        self._delay = delay

    async def set_up(
        self, config: Config, secret_getter: SecretGetter, resolver: BindingResolver
    ) -> None:
        self.config = config

    async def send_notification(self, event: BuildEvent, bindings: dict[str, str]) -> None:
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        self.sent.append((event, bindings))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def event() -> BuildEvent:
    return make_event()


@pytest.fixture
def secret_getter() -> FakeSecretGetter:
    return FakeSecretGetter(
        {"projects/my-project-id/secrets/db-password/versions/latest": "s3cr3t"}
    )


@pytest.fixture
def config_yaml() -> str:
    return """\
apiVersion: cloud-build-notifiers/v1
kind: HTTPNotifier
metadata:
  name: example-http-notifier
spec:
  notification:
    filter: build.status == Build.Status.SUCCESS
    delivery:
      url: https://example.com/hook
    substitutions:
      _BRANCH: $(build.substitutions.BRANCH_NAME)
      _STATUS: $(build.status)
  secrets:
  - name: db
    value: projects/my-project-id/secrets/db-password/versions/latest
"""
