"""Feishu (Lark) webhook notifier."""

import base64
import hashlib
import hmac
import logging
import os
import time
from typing import Any
from zoneinfo import ZoneInfo

import httpx

from buildnotify.bindings.resolver import BindingResolver
from buildnotify.errors import ConfigError, DeliveryError
from buildnotify.main import run
from buildnotify.models.build import BuildEvent, Status
from buildnotify.models.config import Config, find_secret_resource_name, get_secret_ref
from buildnotify.notifiers.base import BaseNotifier, UTMMedium, decorate_log_url, substitute
from buildnotify.secrets import SecretGetter

logger = logging.getLogger(__name__)

_HEADER_COLORS = {
    Status.SUCCESS: "green",
    Status.FAILURE: "red",
    Status.INTERNAL_ERROR: "red",
    Status.TIMEOUT: "orange",
    Status.CANCELLED: "grey",
    Status.EXPIRED: "grey",
}

_STATUS_EMOJI = {
    Status.SUCCESS: "✅",
    Status.FAILURE: "❌",
    Status.INTERNAL_ERROR: "❌",
    Status.TIMEOUT: "⏰",
}


class FeishuNotifier(BaseNotifier):
    """Posts an interactive card for each matching build to a Feishu bot.

    Delivery config:

        webhookUrl: {secretRef: feishu-webhook}
        signingSecret: {secretRef: feishu-signing}   # optional
        title: "$_REPO build"                         # optional, may use bindings
    """

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client
        self._webhook_url = ""
        self._secret = ""
        self._title = ""

    async def set_up(
        self, config: Config, secret_getter: SecretGetter, resolver: BindingResolver
    ) -> None:
        delivery = config.notification.delivery
        url_ref = get_secret_ref(delivery, "webhookUrl")
        self._webhook_url = await secret_getter.get_secret(
            find_secret_resource_name(config.secrets, url_ref)
        )
        if "signingSecret" in delivery:
            secret_ref = get_secret_ref(delivery, "signingSecret")
            self._secret = await secret_getter.get_secret(
                find_secret_resource_name(config.secrets, secret_ref)
            )

        title = delivery.get("title", "")
        if not isinstance(title, str):
            raise ConfigError("delivery field 'title' must be a string")
        self._title = title

        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)

    def _generate_signature(self, timestamp: str) -> str:
        string_to_sign = f"{timestamp}\n{self._secret}"
        hmac_code = hmac.new(
            string_to_sign.encode("utf-8"),
            digestmod=hashlib.sha256,
        ).digest()
        return base64.b64encode(hmac_code).decode("utf-8")

    def _div(self, content: str) -> dict[str, Any]:
        return {"tag": "div", "text": {"tag": "lark_md", "content": content}}

    def build_card(self, event: BuildEvent, bindings: dict[str, str]) -> dict[str, Any]:
        status = event.status
        emoji = _STATUS_EMOJI.get(status, "ℹ️")
        title = substitute(self._title, bindings) if self._title else "Cloud Build"

        elements: list[dict[str, Any]] = [
            self._div(f"**Status:** {status.value}"),
            self._div(f"**Project:** {event.project_id}"),
            self._div(f"**Build:** {event.id}"),
        ]
        if event.build_trigger_id:
            elements.append(self._div(f"**Trigger:** {event.build_trigger_id}"))

        if event.start_time:
            local_tz = ZoneInfo(os.environ.get("TZ", "UTC"))
            started = event.start_time.astimezone(local_tz).strftime("%Y-%m-%d %H:%M:%S")
            if event.is_terminal and event.finish_time:
                seconds = int((event.finish_time - event.start_time).total_seconds())
                started += f" ({seconds}s)"
            elements.append(self._div(f"**Started:** {started}"))

        if bindings:
            shown = " | ".join(f"`{k}={v}`" for k, v in sorted(bindings.items()))
            elements.append(self._div(f"**Substitutions:** {shown}"))

        if event.log_url:
            elements.append({"tag": "hr"})
            elements.append(self._div(f"[View build log]({event.log_url})"))

        return {
            "msg_type": "interactive",
            "card": {
                "header": {
                    "title": {"tag": "plain_text", "content": f"{emoji} {title}: {status.value}"},
                    "template": _HEADER_COLORS.get(status, "blue"),
                },
                "elements": elements,
            },
        }

    async def send_notification(self, event: BuildEvent, bindings: dict[str, str]) -> None:
        event = decorate_log_url(event, UTMMedium.CHAT)
        message = self.build_card(event, bindings)

        if self._secret:
            timestamp = str(int(time.time()))
            message["timestamp"] = timestamp
            message["sign"] = self._generate_signature(timestamp)

        try:
            response = await self._client.post(self._webhook_url, json=message)
            response.raise_for_status()
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DeliveryError(f"failed to post build {event.id!r} to Feishu: {e}") from e

        if result.get("code") != 0:
            raise DeliveryError(f"Feishu API error: {result}")

        logger.info(f"Build {event.id!r} sent to Feishu")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def main() -> None:
    run(FeishuNotifier())


if __name__ == "__main__":
    main()
