"""Tests for secret store clients and access tokens."""

import base64

import httpx
import pytest

from buildnotify.errors import SecretError
from buildnotify.gcp import MetadataTokenSource
from buildnotify.secrets import CachingSecretGetter, SecretManagerClient, SetupCheckSecretGetter

from conftest import FakeSecretGetter

NAME = "projects/my-project-id/secrets/db-password/versions/latest"


def metadata_and_secrets(request: httpx.Request) -> httpx.Response:
    if request.url.host == "metadata.test":
        assert request.headers["Metadata-Flavor"] == "Google"
        return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
    if request.headers.get("Authorization") != "Bearer tok":
        return httpx.Response(401)
    if request.url.path.endswith("db-password/versions/latest:access"):
        data = base64.b64encode(b"s3cr3t").decode()
        return httpx.Response(200, json={"name": NAME, "payload": {"data": data}})
    return httpx.Response(404, json={"error": {"code": 404}})


class TestSecretManagerClient:
    @pytest.mark.asyncio
    async def test_get_secret(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(metadata_and_secrets)) as client:
            tokens = MetadataTokenSource(client, url="http://metadata.test/token")
            secrets = SecretManagerClient(client, tokens, base_url="https://sm.test/v1")
            assert await secrets.get_secret(NAME) == "s3cr3t"

    @pytest.mark.asyncio
    async def test_missing_secret(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(metadata_and_secrets)) as client:
            tokens = MetadataTokenSource(client, url="http://metadata.test/token")
            secrets = SecretManagerClient(client, tokens, base_url="https://sm.test/v1")
            with pytest.raises(SecretError, match="other"):
                await secrets.get_secret("projects/p/secrets/other/versions/1")


class TestMetadataTokenSource:
    @pytest.mark.asyncio
    async def test_token_is_cached(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"access_token": f"tok-{len(calls)}", "expires_in": 3600})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            tokens = MetadataTokenSource(client, url="http://metadata.test/token")
            assert await tokens.token() == "tok-1"
            assert await tokens.headers() == {"Authorization": "Bearer tok-1"}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_short_lived_token_is_refreshed(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"access_token": f"tok-{len(calls)}", "expires_in": 30})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            tokens = MetadataTokenSource(client, url="http://metadata.test/token")
            assert await tokens.token() == "tok-1"
            assert await tokens.token() == "tok-2"


class TestCachingSecretGetter:
    @pytest.mark.asyncio
    async def test_caches_values(self):
        inner = FakeSecretGetter({NAME: "s3cr3t"})
        cache = CachingSecretGetter(inner)
        assert await cache.get_secret(NAME) == "s3cr3t"
        assert await cache.get_secret(NAME) == "s3cr3t"
        assert inner.calls == [NAME]

    @pytest.mark.asyncio
    async def test_expired_values_are_refetched(self):
        inner = FakeSecretGetter({NAME: "s3cr3t"})
        now = [1000.0]
        cache = CachingSecretGetter(inner, ttl=10, clock=lambda: now[0])

        await cache.get_secret(NAME)
        now[0] += 5
        await cache.get_secret(NAME)
        assert len(inner.calls) == 1
        now[0] += 10
        await cache.get_secret(NAME)
        assert len(inner.calls) == 2

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self):
        inner = FakeSecretGetter()
        cache = CachingSecretGetter(inner)
        for _ in range(2):
            with pytest.raises(SecretError):
                await cache.get_secret(NAME)
        assert inner.calls == [NAME, NAME]

    @pytest.mark.asyncio
    async def test_clear(self):
        inner = FakeSecretGetter({NAME: "s3cr3t"})
        cache = CachingSecretGetter(inner)
        await cache.get_secret(NAME)
        await cache.clear()
        await cache.get_secret(NAME)
        assert len(inner.calls) == 2


class TestSetupCheckSecretGetter:
    @pytest.mark.asyncio
    async def test_placeholder(self):
        assert await SetupCheckSecretGetter().get_secret(NAME) == f'[SECRET VALUE FOR "{NAME}"]'
