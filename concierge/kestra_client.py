"""
Kestra workflow-engine client.

Optional delegation path: research, provider calls and booking calls can run
as Kestra flows instead of in-process. Results come back in the same shapes
the in-process path produces, so callers do not care which path ran.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, List, Optional

import httpx
from pydantic import BaseModel

from concierge.call_results import parse_workflow_output
from concierge.errors import VendorError, WorkflowEngineUnavailableError
from concierge.http import request_json
from concierge.logging_config import get_logger
from concierge.models import (
    CallMethod,
    CallRequest,
    CallResult,
    CallResultStatus,
    ProviderCandidate,
    ResearchResult,
    error_result,
)
from concierge.polling import Decision, poll_until

logger = get_logger(__name__)

TERMINAL_STATES = {"SUCCESS", "FAILED", "KILLED"}

CONTACT_FLOW = "contact_providers"
RESEARCH_FLOW = "research_providers"
SCHEDULE_FLOW = "schedule_service"


class WorkflowTimeoutError(VendorError):
    """An execution did not reach a terminal state within the poll timeout."""


class HealthStatus(BaseModel):
    healthy: bool
    reason: Optional[str] = None


def execution_state(execution: dict) -> str:
    state = execution.get("state")
    if isinstance(state, dict):
        return state.get("current", "")
    return state or ""


class WorkflowEngineClient:
    """Triggers Kestra executions and waits for them to finish."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        namespace: str = "ai_concierge",
        auth: Optional[tuple[str, str]] = None,
        api_token: str = "",
        health_timeout: float = 3,
        poll_interval: float = 5,
        poll_timeout: float = 360,
        max_retries: int = 2,
        backoff: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.namespace = namespace
        self._http = http_client
        self._auth = auth
        self._headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self.health_timeout = health_timeout
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._max_retries = max_retries
        self._backoff = backoff
        self._sleep = sleep
        self._clock = clock

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        if self._auth:
            kwargs.setdefault("auth", self._auth)
        return await request_json(
            self._http,
            method,
            f"{self.base_url}{path}",
            vendor="Kestra",
            headers=self._headers,
            max_retries=self._max_retries,
            backoff=self._backoff,
            sleep=self._sleep,
            **kwargs,
        )

    async def health_check(self) -> HealthStatus:
        """Probe the engine. Never raises; the reason says what went wrong."""
        try:
            response = await self._http.get(
                f"{self.base_url}/api/v1/health",
                headers=self._headers,
                auth=self._auth or httpx.USE_CLIENT_DEFAULT,
                timeout=self.health_timeout,
            )
        except httpx.HTTPError as e:
            logger.warning("kestra_health_check_failed", url=self.base_url, error=str(e))
            return HealthStatus(healthy=False, reason=f"Kestra unreachable: {e}")

        if response.status_code != 200:
            logger.warning("kestra_health_check_failed", url=self.base_url, status_code=response.status_code)
            return HealthStatus(healthy=False, reason=f"Kestra health endpoint returned {response.status_code}")
        return HealthStatus(healthy=True)

    async def ensure_available(self, strict: bool) -> bool:
        """
        Decide whether delegation can go ahead.

        Strict mode raises WorkflowEngineUnavailableError when the engine is
        unhealthy; lenient mode returns False so the caller runs in-process.
        """
        health = await self.health_check()
        if health.healthy:
            return True
        if strict:
            logger.error("kestra_unavailable_strict", reason=health.reason)
            raise WorkflowEngineUnavailableError(health.reason or "Kestra is unavailable")
        logger.warning("kestra_unavailable_fallback", reason=health.reason)
        return False

    async def run_flow(self, flow_id: str, inputs: dict) -> dict:
        """
        Trigger a flow and poll the execution until it is terminal.

        Raises VendorError if the execution cannot be triggered or does not
        finish within the poll timeout.
        """
        execution = await self._request(
            "POST", f"/api/v1/executions/{self.namespace}/{flow_id}", json=inputs
        )
        execution_id = execution.get("id")
        if not execution_id:
            raise VendorError(f"Kestra did not return an execution id for {flow_id}")
        logger.info("kestra_execution_triggered", flow_id=flow_id, execution_id=execution_id)

        async def fetch() -> dict:
            return await self._request("GET", f"/api/v1/executions/{execution_id}")

        outcome = await poll_until(
            fetch,
            lambda ex: Decision.DONE if execution_state(ex) in TERMINAL_STATES else Decision.CONTINUE,
            interval=self.poll_interval,
            timeout=self.poll_timeout,
            label=f"kestra:{execution_id}",
            sleep=self._sleep,
            clock=self._clock,
        )
        if not outcome.done:
            raise WorkflowTimeoutError(f"Kestra execution {execution_id} timed out after {self.poll_timeout:g}s")

        final = outcome.value
        logger.info(
            "kestra_execution_finished",
            flow_id=flow_id,
            execution_id=execution_id,
            state=execution_state(final),
        )
        return final

    async def _run_call_flow(self, flow_id: str, request: CallRequest, inputs: dict) -> CallResult:
        try:
            final = await self.run_flow(flow_id, inputs)
        except (VendorError, ValueError) as e:
            logger.error("kestra_call_flow_failed", flow_id=flow_id, provider=request.provider_name, error=str(e))
            status = CallResultStatus.TIMEOUT if isinstance(e, WorkflowTimeoutError) else CallResultStatus.ERROR
            return error_result(e, request, status=status, call_method=CallMethod.KESTRA, ended_reason="kestra_error")

        state = execution_state(final)
        raw = (final.get("outputs") or {}).get("call_result")
        if state != "SUCCESS" or not raw:
            message = f"Kestra execution {state.lower()}" if state != "SUCCESS" else "No output from Kestra execution"
            return error_result(
                message,
                request,
                call_method=CallMethod.KESTRA,
                ended_reason=state.lower() if state != "SUCCESS" else "no_output",
            )

        try:
            return parse_workflow_output(raw, request)
        except (ValueError, TypeError) as e:
            logger.error("kestra_output_invalid", flow_id=flow_id, error=str(e))
            return error_result(f"Invalid Kestra output: {e}", request, call_method=CallMethod.KESTRA)

    async def call_provider(self, request: CallRequest) -> CallResult:
        inputs = {
            "provider_name": request.provider_name,
            "provider_phone": request.provider_phone,
            "service_needed": request.service_needed,
            "user_criteria": request.user_criteria,
            "location": request.location,
            "urgency": request.urgency.value,
            "service_request_id": request.service_request_id or "",
            "provider_id": request.provider_id or "",
        }
        return await self._run_call_flow(CONTACT_FLOW, request, inputs)

    async def call_providers_concurrent(self, requests: List[CallRequest]) -> List[CallResult]:
        """One contact flow per provider, all running at once; results keep request order."""
        logger.info("kestra_batch_started", total=len(requests))
        return list(await asyncio.gather(*(self.call_provider(r) for r in requests)))

    async def schedule_service(self, request: CallRequest) -> CallResult:
        inputs = {
            "provider_name": request.provider_name,
            "provider_phone": request.provider_phone,
            "service_needed": request.service_needed,
            "preferred_datetime": request.preferred_datetime or "",
            "customer_name": request.client_name or "",
            "location": request.client_address or request.location,
            "service_request_id": request.service_request_id or "",
            "provider_id": request.provider_id or "",
        }
        return await self._run_call_flow(SCHEDULE_FLOW, request, inputs)

    async def research(self, service: str, location: str, min_rating: float = 4.0, max_results: int = 10) -> ResearchResult:
        inputs = {"service": service, "location": location, "min_rating": min_rating, "max_results": max_results}
        try:
            final = await self.run_flow(RESEARCH_FLOW, inputs)
        except VendorError as e:
            return ResearchResult(status="error", method="kestra", error=str(e))

        state = execution_state(final)
        raw = (final.get("outputs") or {}).get("json")
        if state != "SUCCESS" or not raw:
            return ResearchResult(
                status="error",
                method="kestra",
                error=f"Kestra execution {state.lower()}" if state != "SUCCESS" else "No output from Kestra execution",
            )

        try:
            parsed = json.loads(raw) if isinstance(raw, str) else raw
            providers = [
                ProviderCandidate(
                    name=p["name"],
                    phone=p.get("phone"),
                    rating=p.get("rating"),
                    review_count=p.get("reviewCount", p.get("review_count")),
                    address=p.get("address"),
                    source_id=p.get("placeId", p.get("id")),
                )
                for p in parsed.get("providers", [])
            ]
        except (ValueError, KeyError, TypeError) as e:
            logger.error("kestra_research_output_invalid", error=str(e))
            return ResearchResult(status="error", method="kestra", error=f"Invalid Kestra output: {e}")

        return ResearchResult(status="success", method="kestra", providers=providers[:max_results])
