"""Tests for the resilient HTTP client."""

import json
from datetime import datetime

import httpx
import pytest

from worklens.exceptions import RequestTimeoutError, TransportError
from worklens.http_client import HttpxTransport, ResilientHttpClient, TransportResponse


class ScriptedTransport:
    """Secondary transport returning scripted responses or raising scripted errors."""

    name = "scripted"

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []
        self.closed = False

    async def send(self, method, url, *, body, headers, timeout):
        self.calls.append((method, url, body, headers))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self):
        self.closed = True


def mock_primary(handler):
    return HttpxTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestEnvelope:
    """Responses become ApiResponse envelopes."""

    @pytest.mark.asyncio
    async def test_success_parses_json(self, recording_sleep):
        def handler(request):
            assert request.headers["content-type"] == "application/json"
            assert json.loads(request.content) == {"hello": "world"}
            return httpx.Response(200, json={"storage_url": "https://cdn/x.png"})

        client = ResilientHttpClient(primary=mock_primary(handler), secondary=None, sleep=recording_sleep)
        response = await client.execute("POST", "https://api.test/upload", {"hello": "world"})

        assert response.success
        assert response.status == 200
        assert response.data == {"storage_url": "https://cdn/x.png"}
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_http_error_is_not_retried(self, recording_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, json={"error": {"message": "maintenance"}})

        client = ResilientHttpClient(primary=mock_primary(handler), secondary=None, sleep=recording_sleep)
        response = await client.execute("GET", "https://api.test/status")

        assert not response.success
        assert response.error.code == "HTTP_503"
        assert response.error.message == "maintenance"
        assert len(calls) == 1
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_non_json_body_is_wrapped(self, recording_sleep):
        client = ResilientHttpClient(
            primary=mock_primary(lambda request: httpx.Response(200, text="plain ok")),
            secondary=None,
            sleep=recording_sleep,
        )
        response = await client.execute("GET", "https://api.test/")
        assert response.data == {"message": "plain ok"}

    @pytest.mark.asyncio
    async def test_bearer_token_from_provider(self, recording_sleep):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={})

        client = ResilientHttpClient(
            primary=mock_primary(handler),
            secondary=None,
            token_provider=lambda: "abc123",
            sleep=recording_sleep,
        )
        await client.execute("GET", "https://api.test/")
        assert seen["auth"] == "Bearer abc123"

    @pytest.mark.asyncio
    async def test_unencodable_body_is_a_failed_envelope(self, recording_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        secondary = ScriptedTransport([])
        client = ResilientHttpClient(primary=mock_primary(handler), secondary=secondary, sleep=recording_sleep)
        response = await client.execute("POST", "https://api.test/screenshots", {"at": datetime(2024, 5, 1)})

        assert not response.success
        assert response.error.code == "REQUEST_ERROR"
        assert calls == []
        assert secondary.calls == []
        assert not client.using_fallback
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_unexpected_send_error_is_not_retried(self, recording_sleep):
        primary = ScriptedTransport([OverflowError("connect(): port must be 0-65535")])
        client = ResilientHttpClient(primary=primary, secondary=None, sleep=recording_sleep)

        response = await client.execute("POST", "http://localhost:99999/screenshots/upload", {"x": 1})

        assert not response.success
        assert response.error.code == "REQUEST_ERROR"
        assert "port must be 0-65535" in response.error.message
        assert len(primary.calls) == 1
        assert recording_sleep.calls == []


class TestRetryAndFallback:
    """Transport failures retry with backoff and switch transports."""

    @pytest.mark.asyncio
    async def test_retries_with_exponential_backoff(self, recording_sleep):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        client = ResilientHttpClient(
            primary=mock_primary(handler),
            secondary=None,
            max_retries=2,
            retry_base_seconds=1.0,
            sleep=recording_sleep,
        )
        response = await client.execute("GET", "https://api.test/")

        assert not response.success
        assert response.error.code == "TRANSPORT_ERROR"
        assert recording_sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_timeout_code_after_exhaustion(self, recording_sleep):
        def handler(request):
            raise httpx.ReadTimeout("too slow")

        client = ResilientHttpClient(primary=mock_primary(handler), secondary=None, max_retries=1, sleep=recording_sleep)
        response = await client.execute("GET", "https://api.test/")

        assert response.error.code == "TIMEOUT"
        assert recording_sleep.calls == [1.0]

    @pytest.mark.asyncio
    async def test_switches_to_secondary_permanently(self, recording_sleep):
        primary_calls = []

        def handler(request):
            primary_calls.append(request)
            raise httpx.ConnectError("no route")

        secondary = ScriptedTransport(
            [TransportResponse(200, '{"ok": true}'), TransportResponse(200, '{"ok": true}')]
        )
        client = ResilientHttpClient(primary=mock_primary(handler), secondary=secondary, sleep=recording_sleep)

        first = await client.execute("GET", "https://api.test/a")
        second = await client.execute("GET", "https://api.test/b")

        assert first.success and second.success
        assert len(primary_calls) == 1
        assert [call[1] for call in secondary.calls] == ["https://api.test/a", "https://api.test/b"]
        assert client.using_fallback
        assert client.active_transport == "scripted"
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_secondary_failures_are_retried(self, recording_sleep):
        def handler(request):
            raise httpx.ConnectError("down")

        secondary = ScriptedTransport(
            [TransportError("reset"), RequestTimeoutError("slow", 30), TransportResponse(201, '{"id": 7}')]
        )
        client = ResilientHttpClient(primary=mock_primary(handler), secondary=secondary, sleep=recording_sleep)
        response = await client.execute("POST", "https://api.test/", {"x": 1})

        assert response.success
        assert response.data == {"id": 7}
        assert recording_sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_close_releases_transports(self, recording_sleep):
        secondary = ScriptedTransport([])
        client = ResilientHttpClient(
            primary=mock_primary(lambda request: httpx.Response(200)),
            secondary=secondary,
            sleep=recording_sleep,
        )
        await client.close()
        assert secondary.closed
