"""Shared outbound HTTP helper with bounded retries."""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import httpx

from concierge.errors import VendorError
from concierge.logging_config import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    vendor: str,
    max_retries: int = 2,
    backoff: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs,
) -> Any:
    """
    Send a request and decode the JSON body.

    Network errors, 429 and 5xx are retried up to `max_retries` times with a
    linear backoff. Any other 4xx is terminal. Raises VendorError when the
    request finally fails.
    """
    attempt = 0
    while True:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            error: VendorError = VendorError(f"{vendor} request failed: {e}", transient=True)
        else:
            if response.is_success:
                if not response.content:
                    return {}
                try:
                    return response.json()
                except ValueError as e:
                    raise VendorError(f"{vendor} returned invalid JSON: {e}", response.status_code) from e

            transient = response.status_code in RETRYABLE_STATUS_CODES
            error = VendorError(
                f"{vendor} API error {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
                transient=transient,
            )

        if not error.transient or attempt >= max_retries:
            raise error

        attempt += 1
        logger.warning(
            "vendor_request_retry",
            vendor=vendor,
            method=method,
            url=url,
            attempt=attempt,
            status_code=error.status_code,
            error=str(error),
        )
        await sleep(backoff * attempt)


def build_async_client(timeout: float, base_url: str = "", headers: Optional[dict] = None, **kwargs) -> httpx.AsyncClient:
    """Create an AsyncClient with an explicit timeout on every request."""
    return httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(timeout), headers=headers or {}, **kwargs)
