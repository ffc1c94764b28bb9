"""
Outbound call client.

Places one call through the voice vendor and waits for its outcome. With a
webhook URL configured the client first watches the webhook cache (fast path)
and falls back to polling the vendor; without one it polls the vendor directly.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

from concierge.assistant import build_call_payload
from concierge.call_results import (
    MIN_TRANSCRIPT_CHARS,
    has_analysis,
    is_call_active,
    transform_vendor_call,
)
from concierge.config import Config
from concierge.logging_config import get_logger
from concierge.metrics import calls_initiated
from concierge.models import CallRequest, CallResult, CallResultStatus, DataStatus, error_result
from concierge.phone import DialPolicy
from concierge.polling import Decision, poll_until
from concierge.vapi_client import VapiApiClient
from concierge.webhook_cache import WebhookCache

logger = get_logger(__name__)

OnCreated = Callable[[str], Awaitable[None]]


class WebhookWatch:
    """
    Predicate state for the webhook-cache wait.

    Gives up early when the entry has been `fetching` for too many polls, when
    enrichment failed, or when the entry was never seen after `max_not_found`
    consecutive misses (the webhook is probably not reachable).
    """

    def __init__(self, max_not_found: int, max_fetching: int):
        self.max_not_found = max_not_found
        self.max_fetching = max_fetching
        self.not_found = 0
        self.fetching = 0
        self.seen = False

    def __call__(self, cached: Optional[CallResult]) -> Decision:
        if cached is None:
            self.not_found += 1
            if not self.seen and self.not_found >= self.max_not_found:
                return Decision.GIVE_UP
            return Decision.CONTINUE

        self.not_found = 0
        self.seen = True

        if cached.data_status == DataStatus.COMPLETE:
            return Decision.DONE
        if cached.data_status == DataStatus.FETCH_FAILED:
            return Decision.GIVE_UP
        if cached.data_status == DataStatus.FETCHING:
            self.fetching += 1
            if self.fetching > self.max_fetching:
                return Decision.GIVE_UP
        return Decision.CONTINUE


def _has_full_data(call: dict) -> bool:
    transcript = call.get("transcript") or (call.get("artifact") or {}).get("transcript") or ""
    return has_analysis(call) and len(str(transcript)) > MIN_TRANSCRIPT_CHARS


class OutboundCallClient:
    """Places one call and always resolves to a CallResult."""

    def __init__(
        self,
        config: Config,
        vapi: VapiApiClient,
        cache: Optional[WebhookCache] = None,
        dial_policy: Optional[DialPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.vapi = vapi
        self.cache = cache
        self.dial_policy = dial_policy or DialPolicy(config.LIVE_CALLS_ENABLED, config.TEST_PHONE_NUMBERS)
        self._sleep = sleep
        self._clock = clock

    @property
    def hybrid(self) -> bool:
        return bool(self.config.VAPI_WEBHOOK_URL) and self.cache is not None

    async def initiate_call(
        self,
        request: CallRequest,
        on_created: Optional[OnCreated] = None,
        assistant: Optional[dict] = None,
    ) -> CallResult:
        """
        Place a call and wait for its result.

        `on_created` is awaited with the vendor call id as soon as the call
        exists, so the caller can mark the provider in progress. `assistant`
        overrides the assistant built from the request.

        Never raises: failures resolve to an `error` result and an exhausted
        watch budget to a `timeout` result.
        """
        call_id = ""
        try:
            dial_number = self.dial_policy.resolve(request.provider_phone)
            if dial_number is None:
                return error_result(
                    f"Cannot dial {request.provider_phone!r}: invalid number or live calls disabled",
                    request,
                )

            payload = build_call_payload(
                request,
                phone_number_id=self.config.VAPI_PHONE_NUMBER_ID,
                dial_number=dial_number,
                webhook_url=self.config.VAPI_WEBHOOK_URL or None,
                assistant=assistant,
            )
            logger.info(
                "call_initiating",
                provider=request.provider_name,
                phone=dial_number,
                call_kind=request.call_kind.value,
                hybrid=self.hybrid,
            )
            call = await self.vapi.create_call(payload)
            call_id = call["id"]
            calls_initiated.labels(kind=request.call_kind.value).inc()
            logger.info("call_created", call_id=call_id, provider=request.provider_name, status=call.get("status"))

            if on_created is not None:
                try:
                    await on_created(call_id)
                except Exception as e:
                    # The call is live; keep watching it even if the bookkeeping write failed
                    logger.warning("call_created_hook_failed", call_id=call_id, error=str(e))

            if self.hybrid:
                cached = await self._wait_for_webhook(call_id)
                if cached is not None:
                    logger.info("call_result_from_webhook", call_id=call_id)
                    return cached.model_copy(update={"call_kind": request.call_kind})
                logger.info("webhook_fallback_to_polling", call_id=call_id)

            return await self._poll_vendor(call_id, request)

        except Exception as e:
            logger.error(
                "call_failed",
                provider=request.provider_name,
                call_id=call_id or None,
                error=str(e),
                exc_info=True,
            )
            return error_result(e, request, call_id=call_id)

    async def _wait_for_webhook(self, call_id: str) -> Optional[CallResult]:
        async def fetch() -> Optional[CallResult]:
            return self.cache.get(call_id)

        watch = WebhookWatch(self.config.WEBHOOK_MAX_NOT_FOUND, self.config.WEBHOOK_MAX_FETCHING_POLLS)
        outcome = await poll_until(
            fetch,
            watch,
            interval=self.config.WEBHOOK_POLL_INTERVAL_SECONDS,
            timeout=self.config.WEBHOOK_WAIT_TIMEOUT_SECONDS,
            label=f"webhook:{call_id}",
            sleep=self._sleep,
            clock=self._clock,
        )
        return outcome.value if outcome.done else None

    async def _poll_vendor(self, call_id: str, request: CallRequest) -> CallResult:
        async def fetch() -> dict:
            return await self.vapi.get_call(call_id)

        outcome = await poll_until(
            fetch,
            lambda call: Decision.CONTINUE if is_call_active(call) else Decision.DONE,
            interval=self.config.VAPI_POLL_INTERVAL_SECONDS,
            timeout=self.config.VAPI_POLL_TIMEOUT_SECONDS,
            label=f"vapi:{call_id}",
            sleep=self._sleep,
            clock=self._clock,
        )
        if not outcome.done:
            return error_result(
                f"Call {call_id} still {outcome.value.get('status') if outcome.value else 'unknown'} "
                f"after {self.config.VAPI_POLL_TIMEOUT_SECONDS:g}s",
                request,
                status=CallResultStatus.TIMEOUT,
                call_id=call_id,
            )

        call = await self._enrich(call_id, outcome.value)
        result = transform_vendor_call(call, request)
        logger.info(
            "call_result_from_polling",
            call_id=call_id,
            status=result.status.value,
            ended_reason=result.ended_reason,
        )
        return result

    async def _enrich(self, call_id: str, call: dict) -> dict:
        """The vendor finishes transcript and analysis after the call ends; re-fetch a few times."""
        for attempt, delay in enumerate(self.config.VAPI_ENRICHMENT_DELAYS, start=1):
            if _has_full_data(call):
                return call
            logger.info("call_awaiting_analysis", call_id=call_id, attempt=attempt, delay=delay)
            await self._sleep(delay)
            call = await self.vapi.get_call(call_id)

        if not _has_full_data(call):
            logger.warning("call_analysis_incomplete", call_id=call_id, has_analysis=has_analysis(call))
        return call
