"""
Batch dispatcher: calls many providers in bounded concurrent groups.

Group N+1 starts only after every call in group N has settled. A failing call
becomes an error result and never aborts the batch.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import BaseModel, Field

from concierge.call_client import OutboundCallClient
from concierge.logging_config import get_logger
from concierge.models import CallRequest, CallResult, CallResultStatus, error_result

logger = get_logger(__name__)

OnResult = Callable[[CallRequest, CallResult], Awaitable[Any]]
OnCreated = Callable[[CallRequest, str], Awaitable[Any]]


class BatchStats(BaseModel):
    """
    `successful` counts calls that settled normally on the vendor side
    (completed or voicemail), so successful + failed + timed_out == total.
    """
    total: int = 0
    successful: int = 0
    failed: int = 0
    timed_out: int = 0
    completed: int = 0
    voicemail: int = 0
    duration_ms: int = 0
    average_call_minutes: float = 0.0


class BatchError(BaseModel):
    provider: str
    phone: str
    error: str


class BatchResult(BaseModel):
    results: List[CallResult] = Field(default_factory=list)
    stats: BatchStats = Field(default_factory=BatchStats)
    errors: List[BatchError] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.stats.failed < self.stats.total


def compute_stats(results: List[CallResult], duration_ms: int) -> BatchStats:
    counts = {status: 0 for status in CallResultStatus}
    for result in results:
        counts[result.status] += 1
    total_minutes = sum(r.duration for r in results)
    return BatchStats(
        total=len(results),
        successful=counts[CallResultStatus.COMPLETED] + counts[CallResultStatus.VOICEMAIL],
        failed=counts[CallResultStatus.ERROR],
        timed_out=counts[CallResultStatus.TIMEOUT],
        completed=counts[CallResultStatus.COMPLETED],
        voicemail=counts[CallResultStatus.VOICEMAIL],
        duration_ms=duration_ms,
        average_call_minutes=round(total_minutes / len(results), 2) if results else 0.0,
    )


class BatchDispatcher:
    """Fans call requests out to the outbound call client."""

    def __init__(
        self,
        call_client: OutboundCallClient,
        max_concurrent: int = 5,
        group_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.call_client = call_client
        self.max_concurrent = max_concurrent
        self.group_delay = group_delay
        self._sleep = sleep

    async def call_all_providers(
        self,
        requests: List[CallRequest],
        max_concurrent: Optional[int] = None,
        on_result: Optional[OnResult] = None,
        on_created: Optional[OnCreated] = None,
    ) -> BatchResult:
        """
        Call every request, `max_concurrent` at a time.

        `on_result` is awaited as each call finishes so callers can persist
        progressively; `on_created` receives each vendor call id as soon as the
        call exists. Errors raised by either hook are logged and do not affect
        the batch. Results keep the order of `requests`.
        """
        size = max(1, max_concurrent or self.max_concurrent)
        started = time.monotonic()
        groups = [requests[i:i + size] for i in range(0, len(requests), size)]
        results: List[CallResult] = []

        logger.info("batch_started", total=len(requests), max_concurrent=size, groups=len(groups))

        for number, group in enumerate(groups, start=1):
            logger.info("batch_group_started", group=number, groups=len(groups), size=len(group))
            settled = await asyncio.gather(
                *(self._call_one(request, on_result, on_created) for request in group),
                return_exceptions=True,
            )
            for request, outcome in zip(group, settled):
                if isinstance(outcome, BaseException):
                    logger.error("batch_call_crashed", provider=request.provider_name, error=str(outcome))
                    outcome = error_result(outcome, request)
                results.append(outcome)

            if number < len(groups):
                await self._sleep(self.group_delay)

        stats = compute_stats(results, int((time.monotonic() - started) * 1000))
        errors = [
            BatchError(provider=r.provider.name, phone=r.provider.phone, error=r.error or r.ended_reason)
            for r in results
            if r.status == CallResultStatus.ERROR
        ]
        logger.info("batch_completed", **stats.model_dump(), error_count=len(errors))
        return BatchResult(results=results, stats=stats, errors=errors)

    async def _call_one(
        self,
        request: CallRequest,
        on_result: Optional[OnResult],
        on_created: Optional[OnCreated],
    ) -> CallResult:
        created_hook = None
        if on_created is not None:
            async def created_hook(call_id: str) -> None:
                await on_created(request, call_id)

        result = await self.call_client.initiate_call(request, on_created=created_hook)

        if on_result is not None:
            try:
                await on_result(request, result)
            except Exception as e:
                logger.error(
                    "batch_result_hook_failed",
                    provider=request.provider_name,
                    call_id=result.call_id,
                    error=str(e),
                )
        return result
