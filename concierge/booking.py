"""
Booking calls.

Calls the selected provider back to schedule the appointment, through the
same outbound call path (or the workflow engine's schedule flow), and hands
the outcome to the reconciler. Status changes are the orchestrator's job.
"""

from typing import Callable, Optional

from sqlalchemy.orm import Session

from concierge.call_client import OutboundCallClient
from concierge.db_models import DBProvider, DBServiceRequest
from concierge.errors import ConciergeError, NotFoundError
from concierge.kestra_client import WorkflowEngineClient
from concierge.logging_config import get_logger
from concierge.models import CallKind, CallRequest, CallResult
from concierge.reconciler import ResultReconciler

logger = get_logger(__name__)


class BookingService:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        call_client: OutboundCallClient,
        reconciler: ResultReconciler,
        workflow: Optional[WorkflowEngineClient] = None,
        kestra_strict: bool = True,
    ):
        self.session_factory = session_factory
        self.call_client = call_client
        self.reconciler = reconciler
        self.workflow = workflow
        self.kestra_strict = kestra_strict

    def build_request(
        self,
        request_id: str,
        provider_id: str,
        preferred_datetime: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_address: Optional[str] = None,
    ) -> CallRequest:
        with self.session_factory() as db:
            service_request = db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).first()
            provider = db.query(DBProvider).filter(DBProvider.id == provider_id).first()
            if service_request is None or provider is None or provider.request_id != request_id:
                logger.warning("booking_target_missing", request_id=request_id, provider_id=provider_id)
                raise NotFoundError(f"Provider {provider_id} not found for request {request_id}")

            return CallRequest(
                provider_name=provider.name,
                provider_phone=provider.phone or "",
                service_needed=service_request.title,
                user_criteria=service_request.criteria or "",
                location=service_request.location,
                urgency=service_request.urgency,
                problem_description=service_request.description,
                client_name=customer_name or service_request.user_name,
                client_address=customer_address,
                service_request_id=request_id,
                provider_id=provider_id,
                call_kind=CallKind.BOOKING,
                preferred_datetime=preferred_datetime,
            )

    async def place_booking_call(self, call_request: CallRequest) -> CallResult:
        """
        Place the booking call and persist its outcome.

        Any earlier booking attempt on the provider is cleared first. Returns
        the call result; persistence failures are logged, not raised.
        """
        provider_id = call_request.provider_id
        request_id = call_request.service_request_id
        self.reconciler.reset_booking(provider_id)
        logger.info("booking_call_started", request_id=request_id, provider_id=provider_id)

        if self.workflow is not None and await self.workflow.ensure_available(self.kestra_strict):
            result = await self.workflow.schedule_service(call_request)
        else:
            async def on_created(call_id: str) -> None:
                self.reconciler.mark_call_in_progress(provider_id, call_id, CallKind.BOOKING)

            result = await self.call_client.initiate_call(call_request, on_created=on_created)

        result = result.model_copy(update={"call_kind": CallKind.BOOKING})
        try:
            self.reconciler.save_call_result(provider_id, request_id, result)
        except ConciergeError as e:
            logger.error("booking_result_persist_failed", request_id=request_id, provider_id=provider_id, error=str(e))

        logger.info(
            "booking_call_finished",
            request_id=request_id,
            provider_id=provider_id,
            status=result.status.value,
            confirmed=result.structured.booking_confirmed,
        )
        return result
