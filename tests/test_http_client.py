"""Tests for status-aware fetching."""

from unittest.mock import AsyncMock

import httpx
import pytest

from src.vetting import http_client
from src.vetting.http_client import (
    BlockedError,
    ClientRequestError,
    PermanentURLError,
    RateLimitedError,
    SitePolicy,
    TransientFetchError,
    fetch_with_policy,
)

URL = "https://example.com/page"


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_success_returns_response():
    async with _client(lambda request: httpx.Response(200, text="ok")) as client:
        resp = await fetch_with_policy(client, URL, SitePolicy(name="test"))

    assert resp.text == "ok"


@pytest.mark.asyncio
async def test_rate_limit_is_raised_immediately():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(429, headers={"Retry-After": "30"}, json={"error": {"message": "slow down"}})

    async with _client(handler) as client:
        with pytest.raises(RateLimitedError) as exc_info:
            await fetch_with_policy(client, URL, SitePolicy(name="test", max_attempts=3))

    assert exc_info.value.retry_after == 30
    assert exc_info.value.status_code == 429
    assert exc_info.value.detail == "slow down"
    assert len(calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,error",
    [(404, PermanentURLError), (403, BlockedError), (400, ClientRequestError)],
)
async def test_client_errors_are_not_retried(status, error):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(status)

    async with _client(handler) as client:
        with pytest.raises(error):
            await fetch_with_policy(client, URL, SitePolicy(name="test", max_attempts=3))

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_404_can_be_treated_as_client_error():
    async with _client(lambda request: httpx.Response(404)) as client:
        with pytest.raises(ClientRequestError):
            await fetch_with_policy(
                client, URL, SitePolicy(name="test", treat_404_as_permanent=False)
            )


@pytest.mark.asyncio
async def test_server_errors_are_retried(monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr(http_client.asyncio, "sleep", sleep)
    responses = iter([httpx.Response(502), httpx.Response(200, text="recovered")])

    async with _client(lambda request: next(responses)) as client:
        resp = await fetch_with_policy(client, URL, SitePolicy(name="test", max_attempts=2))

    assert resp.text == "recovered"
    sleep.assert_awaited_once()


@pytest.mark.asyncio
async def test_transport_errors_exhaust_to_transient(monkeypatch):
    monkeypatch.setattr(http_client.asyncio, "sleep", AsyncMock())

    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    async with _client(handler) as client:
        with pytest.raises(TransientFetchError) as exc_info:
            await fetch_with_policy(client, URL, SitePolicy(name="test", max_attempts=2))

    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_non_retryable_transport_errors_become_transient(monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr(http_client.asyncio, "sleep", sleep)
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadError("connection reset", request=request)

    async with _client(handler) as client:
        with pytest.raises(TransientFetchError) as exc_info:
            await fetch_with_policy(client, URL, SitePolicy(name="test", max_attempts=3))

    assert isinstance(exc_info.value.__cause__, httpx.ReadError)
    assert exc_info.value.status_code is None
    assert len(calls) == 1
    sleep.assert_not_awaited()
