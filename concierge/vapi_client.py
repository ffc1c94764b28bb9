"""
VAPI REST client.

Thin transport over the vendor's call-create and call-get endpoints. All
interpretation of the returned payloads lives in `concierge.call_results`.
"""

import asyncio
from typing import Any, Awaitable, Callable

import httpx

from concierge.http import request_json
from concierge.logging_config import get_logger

logger = get_logger(__name__)


def extract_call(response: Any) -> dict:
    """Pull the call object out of the vendor response (plain, wrapped or batch)."""
    if isinstance(response, dict) and isinstance(response.get("id"), str):
        return response
    if isinstance(response, dict) and isinstance(response.get("data"), dict) and isinstance(response["data"].get("id"), str):
        return response["data"]
    if isinstance(response, list) and response and isinstance(response[0], dict):
        return response[0]
    raise ValueError("Unexpected response format from VAPI")


class VapiApiClient:
    """Bearer-authenticated client for api.vapi.ai."""

    def __init__(
        self,
        api_key: str,
        http_client: httpx.AsyncClient,
        base_url: str = "https://api.vapi.ai",
        max_retries: int = 2,
        backoff: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = http_client
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._max_retries = max_retries
        self._backoff = backoff
        self._sleep = sleep

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        return await request_json(
            self._http,
            method,
            f"{self.base_url}{path}",
            vendor="VAPI",
            headers=self._headers,
            max_retries=self._max_retries,
            backoff=self._backoff,
            sleep=self._sleep,
            **kwargs,
        )

    async def create_call(self, payload: dict) -> dict:
        """Create an outbound phone call. Returns the vendor call object."""
        response = await self._request("POST", "/call", json=payload)
        call = extract_call(response)
        logger.debug("vapi_call_created", call_id=call.get("id"), status=call.get("status"))
        return call

    async def get_call(self, call_id: str) -> dict:
        """Fetch the current state of a call."""
        response = await self._request("GET", f"/call/{call_id}")
        call = extract_call(response)
        logger.debug(
            "vapi_call_fetched",
            call_id=call_id,
            status=call.get("status"),
            has_analysis=bool(call.get("analysis")),
        )
        return call
