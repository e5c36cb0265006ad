import asyncio

import httpx
import pytest

from relaycron import http_utils
from relaycron.http_utils import describe_http_error, flood_protect, request_with_retry_async


class DummyResponse:
    def __init__(self, ok=True):
        self.ok = ok

    def raise_for_status(self):
        if not self.ok:
            raise httpx.HTTPError("bad")


@pytest.mark.asyncio
async def test_request_with_retry_async_success(monkeypatch):
    class FakeClient:
        def __init__(self):
            self.calls = 0

        async def request(self, method, url, timeout=0, **kwargs):
            self.calls += 1
            assert timeout == 1.0
            if self.calls < 3:
                raise httpx.HTTPError("boom")
            return DummyResponse()

    sleeps: list[float] = []

    async def fake_sleep(s):
        sleeps.append(s)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    client = FakeClient()
    resp = await request_with_retry_async(
        "GET",
        "http://x",
        timeout=1.0,
        retries=3,
        backoff_factor=0.1,
        client=client,
    )
    assert isinstance(resp, DummyResponse)
    assert client.calls == 3
    assert sleeps == [0.1, 0.2]


@pytest.mark.asyncio
async def test_request_with_retry_async_timeout(monkeypatch):
    class FakeClient:
        def __init__(self):
            self.calls = 0

        async def request(self, method, url, timeout=0, **kwargs):
            self.calls += 1
            assert timeout == 0.5
            raise httpx.TimeoutException("nope")

    async def fake_sleep(_):
        pass

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    client = FakeClient()
    with pytest.raises(httpx.TimeoutException):
        await request_with_retry_async(
            "GET", "http://x", timeout=0.5, retries=2, backoff_factor=0, client=client
        )
    assert client.calls == 2


@pytest.mark.asyncio
async def test_flood_protect_sleeps_within_bounds(monkeypatch):
    sleeps: list[float] = []

    async def fake_sleep(s):
        sleeps.append(s)

    monkeypatch.setattr(http_utils.asyncio, "sleep", fake_sleep)
    for _ in range(20):
        await flood_protect(200, 400)
    assert len(sleeps) == 20
    assert all(0.2 <= s <= 0.4 for s in sleeps)


def test_describe_http_error_prefers_response_body():
    request = httpx.Request("POST", "https://api.example.test/claim")
    response = httpx.Response(400, content=b'{"message": "too early"}', request=request)
    error = httpx.HTTPStatusError("400 Bad Request", request=request, response=response)
    assert describe_http_error(error) == '{"message": "too early"}'


def test_describe_http_error_without_body():
    request = httpx.Request("GET", "https://api.example.test/")
    error = httpx.ConnectError("connection refused", request=request)
    assert describe_http_error(error) == "connection refused"
