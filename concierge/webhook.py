"""
Webhook receiver for voice-vendor callbacks.

Acknowledges quickly, caches the partial end-of-call data for any in-process
waiter, then enriches and persists in the background so results are recorded
even when nothing is waiting for them (workflow-engine batches).
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from concierge.call_results import (
    is_data_complete,
    merge_call_data,
    metadata_of,
    transform_vendor_call,
    utcnow_iso,
)
from concierge.db_models import InteractionStatus
from concierge.errors import ConciergeError, PersistenceError, VendorError
from concierge.logging_config import get_logger
from concierge.metrics import webhooks_received
from concierge.models import CallKind, CallResult, DataStatus
from concierge.reconciler import ResultReconciler
from concierge.vapi_client import VapiApiClient
from concierge.webhook_cache import WebhookCache

logger = get_logger(__name__)

END_OF_CALL_TYPES = {"end-of-call-report", "call-end"}

# Message-level fields of an end-of-call report that belong on the call object
_REPORT_FIELDS = (
    "analysis",
    "artifact",
    "endedReason",
    "transcript",
    "summary",
    "messages",
    "startedAt",
    "endedAt",
    "durationMinutes",
    "cost",
    "costBreakdown",
)

OnSettled = Callable[[CallResult, str, Optional[str]], Awaitable[Any]]


def call_from_message(message: dict) -> dict:
    """Flatten an end-of-call report into one vendor call object."""
    call = dict(message.get("call") or {})
    for field in _REPORT_FIELDS:
        if message.get(field) is not None and not call.get(field):
            call[field] = message[field]
    call["status"] = "ended"
    return call


class WebhookReceiver:
    """Handles POST /api/v1/vapi/webhook bodies."""

    def __init__(
        self,
        cache: WebhookCache,
        reconciler: ResultReconciler,
        vapi: Optional[VapiApiClient] = None,
        enrichment_delays: Optional[list[float]] = None,
        persist_retries: int = 2,
        on_settled: Optional[OnSettled] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.cache = cache
        self.reconciler = reconciler
        self.vapi = vapi
        self.enrichment_delays = enrichment_delays if enrichment_delays is not None else [3, 5, 8]
        self.persist_retries = persist_retries
        self.on_settled = on_settled
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    async def handle_webhook(self, payload: Any) -> dict:
        """
        Process one webhook body and return the acknowledgment.

        Never raises: malformed payloads are logged and dropped so the vendor
        does not retry them forever.
        """
        message = payload.get("message") if isinstance(payload, dict) else None
        if not isinstance(message, dict):
            logger.warning("webhook_malformed", reason="missing message")
            return {"success": False, "message": "Malformed payload dropped"}

        message_type = message.get("type")
        call_id = (message.get("call") or {}).get("id") if isinstance(message.get("call"), dict) else None
        logger.info("webhook_received", type=message_type, call_id=call_id)
        webhooks_received.labels(type=message_type or "unknown").inc()

        if not call_id:
            logger.warning("webhook_missing_call_id", type=message_type)
            return {"success": False, "message": "Missing call id, payload dropped"}

        if message_type not in END_OF_CALL_TYPES:
            return {
                "success": True,
                "message": "Webhook received but not processed (not an end-of-call event)",
                "callId": call_id,
            }

        try:
            call = call_from_message(message)
            result = transform_vendor_call(call).model_copy(update={
                "data_status": DataStatus.PARTIAL,
                "webhook_received_at": utcnow_iso(),
            })
        except (ValueError, TypeError) as e:
            logger.error("webhook_transform_failed", call_id=call_id, error=str(e))
            return {"success": False, "message": "Webhook received but processing failed", "callId": call_id}

        self.cache.set(call_id, result)
        logger.info(
            "webhook_cached",
            call_id=call_id,
            status=result.status.value,
            duration=result.duration,
            kind=result.call_kind.value,
        )

        task = asyncio.create_task(self._enrich_and_persist(call_id, metadata_of(call)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        return {
            "success": True,
            "message": "Webhook processed and cached, background enrichment triggered",
            "callId": call_id,
        }

    async def drain(self) -> None:
        """Wait for every background enrichment task (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _enrich_and_persist(self, call_id: str, metadata: dict) -> None:
        try:
            result = await self._enrich(call_id)
            if result is not None:
                await self._persist(result, metadata)
        except Exception as e:
            logger.error("webhook_background_failed", call_id=call_id, error=str(e), exc_info=True)

    async def _enrich(self, call_id: str) -> Optional[CallResult]:
        if self.vapi is None:
            logger.warning("webhook_enrichment_skipped", call_id=call_id, reason="no vendor client")
            self.cache.update_fetch_status(call_id, DataStatus.COMPLETE)
            return self.cache.get(call_id)

        last_error = None
        for attempt, delay in enumerate(self.enrichment_delays, start=1):
            await self._sleep(delay)
            if not self.cache.update_fetch_status(call_id, DataStatus.FETCHING):
                return None

            try:
                call = await self.vapi.get_call(call_id)
            except (VendorError, ValueError) as e:
                last_error = str(e)
                logger.warning("webhook_enrichment_fetch_failed", call_id=call_id, attempt=attempt, error=last_error)
                continue

            if is_data_complete(call):
                merged = merge_call_data(self.cache.get(call_id), call)
                self.cache.store_enriched(call_id, merged)
                logger.info("webhook_enrichment_complete", call_id=call_id, attempt=attempt)
                return self.cache.get(call_id)

            logger.debug("webhook_enrichment_not_ready", call_id=call_id, attempt=attempt)

        self.cache.update_fetch_status(
            call_id,
            DataStatus.FETCH_FAILED,
            error=last_error or "Analysis not ready after all attempts",
        )
        logger.warning("webhook_enrichment_exhausted", call_id=call_id, attempts=len(self.enrichment_delays))
        # Record what the webhook delivered; the call happened and must not go unrecorded
        return self.cache.get(call_id)

    async def _persist(self, result: CallResult, metadata: dict) -> None:
        request_id = metadata.get("serviceRequestId") or None
        provider_id = metadata.get("providerId") or None

        if request_id is None:
            logger.info("webhook_result_unlinked", call_id=result.call_id)
            return

        for attempt in range(self.persist_retries + 1):
            try:
                if result.call_kind == CallKind.NOTIFICATION:
                    self.reconciler.log_event(
                        request_id,
                        "User Notification Call",
                        detail=result.analysis.summary or result.ended_reason,
                        status=InteractionStatus.SUCCESS if not result.error else InteractionStatus.ERROR,
                        transcript={"text": result.transcript} if result.transcript else None,
                        call_id=result.call_id,
                    )
                elif provider_id is not None:
                    self.reconciler.save_call_result(provider_id, request_id, result)
                else:
                    logger.info("webhook_result_without_provider", call_id=result.call_id, request_id=request_id)
                    return
                break
            except PersistenceError as e:
                if attempt >= self.persist_retries:
                    logger.error("webhook_persist_gave_up", call_id=result.call_id, error=str(e))
                    return
                await self._sleep(1)
            except ConciergeError as e:
                logger.error("webhook_persist_failed", call_id=result.call_id, error=str(e))
                return

        if self.on_settled is not None:
            await self.on_settled(result, request_id, provider_id)
