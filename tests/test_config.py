"""Tests for config decoding and loading."""

import httpx
import pytest

from buildnotify.errors import ConfigError
from buildnotify.models.config import find_secret_resource_name, get_secret_ref
from buildnotify.storage import (
    decode_config,
    fetch_gcs_config,
    get_config,
    load_config,
    split_gcs_path,
)


class FixedTokens:
    async def headers(self) -> dict[str, str]:
        return {"Authorization": "Bearer test-token"}


class TestDecodeConfig:
    """Strict decoding of the YAML document."""

    def test_valid(self, config_yaml):
        config = decode_config(config_yaml)
        assert config.api_version == "cloud-build-notifiers/v1"
        assert config.metadata.name == "example-http-notifier"
        assert config.notification.filter == "build.status == Build.Status.SUCCESS"
        assert config.notification.delivery == {"url": "https://example.com/hook"}
        assert config.notification.substitutions["_BRANCH"] == "$(build.substitutions.BRANCH_NAME)"
        assert config.secrets[0].local_name == "db"
        assert config.secrets[0].resource_name.endswith("/db-password/versions/latest")

    @pytest.mark.parametrize(
        "old, new",
        [
            ("cloud-build-notifiers/v1", "cloud-build-notifiers/v2"),
            ("  notification:", "  notifications:"),
            ("      _BRANCH:", "      BRANCH:"),
            ("      _STATUS:", "      _status:"),
            ("kind: HTTPNotifier", "kind: HTTPNotifier\nsurprise: true"),
            ("      _STATUS:", "      _BRANCH:"),
            ("  - name: db", "  - name: db\n    value: again\n  - name: db"),
        ],
    )
    def test_rejected(self, config_yaml, old, new):
        assert old in config_yaml
        with pytest.raises(ConfigError):
            decode_config(config_yaml.replace(old, new, 1))

    def test_duplicate_secret_names(self, config_yaml):
        doubled = config_yaml + "  - name: db\n    value: projects/other\n"
        with pytest.raises(ConfigError, match="duplicate secret name"):
            decode_config(doubled)

    def test_missing_notification(self):
        with pytest.raises(ConfigError):
            decode_config("apiVersion: cloud-build-notifiers/v1\nspec: {}\n")

    @pytest.mark.parametrize("source", ["", "- a\n- b\n", "just a string", "key: [unclosed"])
    def test_not_a_mapping(self, source):
        with pytest.raises(ConfigError):
            decode_config(source)

    def test_substitutions_are_optional(self):
        config = decode_config(
            "apiVersion: cloud-build-notifiers/v1\n"
            "spec:\n  notification:\n    filter: build.id != ''\n"
        )
        assert config.notification.substitutions == {}
        assert config.secrets == []


class TestSecretRefs:
    """Delivery fields of the form {secretRef: name}."""

    def test_get_secret_ref(self):
        assert get_secret_ref({"webhookUrl": {"secretRef": "hook"}}, "webhookUrl") == "hook"

    @pytest.mark.parametrize(
        "delivery",
        [
            {},
            {"webhookUrl": "https://example.com"},
            {"webhookUrl": {"other": "hook"}},
            {"webhookUrl": {"secretRef": 42}},
        ],
    )
    def test_get_secret_ref_rejects(self, delivery):
        with pytest.raises(ConfigError):
            get_secret_ref(delivery, "webhookUrl")

    def test_find_secret_resource_name(self, config_yaml):
        secrets = decode_config(config_yaml).secrets
        assert find_secret_resource_name(secrets, "db").startswith("projects/my-project-id/")
        with pytest.raises(ConfigError):
            find_secret_resource_name(secrets, "nope")


class TestConfigSources:
    """Loading from disk and from Cloud Storage."""

    def test_load_config(self, tmp_path, config_yaml):
        path = tmp_path / "notifier.yaml"
        path.write_text(config_yaml)
        assert load_config(path).metadata.name == "example-http-notifier"

    def test_load_missing_config(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("gs://bucket/notifier.yaml", ("bucket", "notifier.yaml")),
            ("gs://bucket/path/to/notifier.yaml", ("bucket", "path/to/notifier.yaml")),
        ],
    )
    def test_split_gcs_path(self, path, expected):
        assert split_gcs_path(path) == expected

    @pytest.mark.parametrize("path", ["bucket/object", "gs://bucket", "gs://bucket/", "gs:///object"])
    def test_split_gcs_path_rejects(self, path):
        with pytest.raises(ConfigError):
            split_gcs_path(path)

    @pytest.mark.asyncio
    async def test_fetch_gcs_config(self, config_yaml):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text=config_yaml)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            config = await fetch_gcs_config(
                "gs://my-bucket/dir/notifier.yaml", client, FixedTokens(), base_url="https://gcs.test"
            )

        assert config.metadata.name == "example-http-notifier"
        assert seen[0].url.raw_path.split(b"?")[0] == b"/b/my-bucket/o/dir%2Fnotifier.yaml"
        assert seen[0].url.params["alt"] == "media"
        assert seen[0].headers["Authorization"] == "Bearer test-token"

    @pytest.mark.asyncio
    async def test_fetch_gcs_config_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        async with client:
            with pytest.raises(ConfigError, match="failed to read config"):
                await fetch_gcs_config("gs://b/o.yaml", client, FixedTokens(), base_url="https://gcs.test")

    @pytest.mark.asyncio
    async def test_get_config_from_disk(self, tmp_path, config_yaml):
        path = tmp_path / "notifier.yaml"
        path.write_text(config_yaml)
        async with httpx.AsyncClient() as client:
            config = await get_config(str(path), client, FixedTokens())
        assert config.kind == "HTTPNotifier"
