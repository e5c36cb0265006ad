import asyncio
from typing import Any, Optional

import httpx

from .recurrence import random_int


async def request_with_retry_async(
    method: str,
    url: str,
    *,
    timeout: float,
    retries: int = 3,
    backoff_factor: float = 0.5,
    client: Optional[httpx.AsyncClient] = None,
    **kwargs: Any,
) -> httpx.Response:
    """Asynchronously perform an HTTP request with simple retry logic."""
    for attempt in range(1, retries + 1):
        try:
            if client is None:
                async with httpx.AsyncClient() as c:
                    response = await c.request(method, url, timeout=timeout, **kwargs)
            else:
                response = await client.request(method, url, timeout=timeout, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPError:
            if attempt == retries:
                raise
            await asyncio.sleep(backoff_factor * 2 ** (attempt - 1))
    raise RuntimeError("unreachable")


async def flood_protect(min_ms: int = 1000, max_ms: int = 3000) -> None:
    """Pause a random amount of time between two calls to the same service."""
    await asyncio.sleep(random_int(min_ms, max_ms) / 1000)


def describe_http_error(error: httpx.HTTPError) -> str:
    """Return the remote response body when there is one, else the message."""
    if isinstance(error, httpx.HTTPStatusError):
        try:
            body = error.response.text
        except httpx.ResponseNotRead:
            body = ""
        if body:
            return body
    return str(error) or error.__class__.__name__
