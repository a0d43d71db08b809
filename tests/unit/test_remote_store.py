"""
Unit tests for the HTTP remote store client.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio
from httpx import Request
from httpx import Response as HTTPResponse

from quizsync.errors import RemoteStoreError, WriteError
from quizsync.remote_store import HttpRemoteStore, StaticIdentityProvider


@pytest_asyncio.fixture
async def store():
    """Remote store client instance."""
    store = HttpRemoteStore(
        base_url="http://store.test",
        api_key="secret",
        timeout_seconds=5.0,
        poll_interval_seconds=0.01,
    )
    yield store
    await store.close()


class TestInitialization:
    @pytest.mark.asyncio
    async def test_headers(self, store):
        assert store.client.headers["X-API-Key"] == "secret"
        assert store.client.headers["Content-Type"] == "application/json"
        assert str(store.client.base_url) == "http://store.test"

    @pytest.mark.asyncio
    async def test_no_api_key_header_without_key(self):
        async with HttpRemoteStore(base_url="http://store.test") as store:
            assert "X-API-Key" not in store.client.headers


class TestWriteResponse:
    @pytest.mark.asyncio
    async def test_write_success(self, store, sample_response, monkeypatch):
        """Posts the camelCase wire form."""
        captured = {}

        async def mock_post(url, **kwargs):
            captured["url"] = url
            captured["json"] = kwargs["json"]
            return HTTPResponse(201, json={"ok": True}, request=Request("POST", url))

        monkeypatch.setattr(store.client, "post", mock_post)

        assert await store.write_response(sample_response) is True
        assert captured["url"] == "/api/v1/responses"
        assert captured["json"]["questionId"] == "Q1"
        assert captured["json"]["timestamp"] == 100

    @pytest.mark.asyncio
    async def test_write_rejected(self, store, sample_response, monkeypatch):
        async def mock_post(url, **kwargs):
            return HTTPResponse(500, json={"error": "boom"}, request=Request("POST", url))

        monkeypatch.setattr(store.client, "post", mock_post)

        assert await store.write_response(sample_response) is False

    @pytest.mark.asyncio
    async def test_write_unreachable(self, store, sample_response, monkeypatch):
        async def mock_post(url, **kwargs):
            raise httpx.ConnectError("Connection refused")

        monkeypatch.setattr(store.client, "post", mock_post)

        with pytest.raises(WriteError):
            await store.write_response(sample_response)


class TestQueryResponses:
    @pytest.mark.asyncio
    async def test_query_parses_responses(self, store, sample_response, monkeypatch):
        async def mock_get(url, **kwargs):
            assert kwargs["params"] == {"questionId": "Q1"}
            return HTTPResponse(200, json={"responses": [sample_response.to_wire()]}, request=Request("GET", url))

        monkeypatch.setattr(store.client, "get", mock_get)

        assert await store.query_responses("Q1") == [sample_response]

    @pytest.mark.asyncio
    async def test_query_http_error(self, store, monkeypatch):
        async def mock_get(url, **kwargs):
            return HTTPResponse(503, request=Request("GET", url))

        monkeypatch.setattr(store.client, "get", mock_get)

        with pytest.raises(RemoteStoreError):
            await store.query_responses("Q1")


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_poll_delivers_changes_once(self, store, sample_response, monkeypatch, wait_until):
        async def mock_get(url, **kwargs):
            return HTTPResponse(200, json={"responses": [sample_response.to_wire()]}, request=Request("GET", url))

        monkeypatch.setattr(store.client, "get", mock_get)
        seen = []

        unsubscribe = store.subscribe("Q1", seen.append)
        await wait_until(lambda: len(seen) == 1)
        await asyncio.sleep(0.05)
        unsubscribe()

        # unchanged results are not redelivered
        assert seen == [[sample_response]]

    @pytest.mark.asyncio
    async def test_poll_survives_errors(self, store, sample_response, monkeypatch, wait_until):
        calls = 0

        async def mock_get(url, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ConnectError("Connection refused")
            return HTTPResponse(200, json={"responses": [sample_response.to_wire()]}, request=Request("GET", url))

        monkeypatch.setattr(store.client, "get", mock_get)
        seen = []

        unsubscribe = store.subscribe("Q1", seen.append)
        await wait_until(lambda: len(seen) == 1)
        unsubscribe()

        assert calls >= 2


def test_static_identity_provider(identity):
    identities = StaticIdentityProvider()
    assert identities.is_signed_in() is False

    identities.sign_in(identity)
    assert identities.current_identity() == identity
    assert identities.is_signed_in() is True

    identities.sign_out()
    assert identities.current_identity() is None
