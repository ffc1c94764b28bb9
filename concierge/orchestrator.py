"""
Status orchestrator.

The only place a service request changes status. Every transition is one
conditional UPDATE filtered on the allowed predecessor statuses, so concurrent
triggers (webhook enrichment, the batch that placed the calls, a user action)
cannot double-advance a request or skip a state.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from concierge.booking import BookingService
from concierge.db_models import (
    DBProvider,
    DBServiceRequest,
    InteractionStatus,
    ProviderCallStatus,
    RequestStatus,
    RequestType,
)
from concierge.dispatcher import BatchDispatcher, BatchResult, compute_stats
from concierge.errors import (
    ConciergeError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    WorkflowEngineUnavailableError,
)
from concierge.kestra_client import WorkflowEngineClient
from concierge.logging_config import get_logger
from concierge.metrics import bookings_completed
from concierge.models import CallKind, CallRequest, CallResult, ProviderCandidate
from concierge.notifications import NotificationDispatcher, NotificationResult
from concierge.reconciler import ResultReconciler
from concierge.recommendations import RecommendationResponse, generate_recommendations, provider_call_from_row
from concierge.research import ResearchService
from concierge.services import InteractionLogService, ProviderService

logger = get_logger(__name__)

TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.RESEARCHING: frozenset({RequestStatus.CALLING, RequestStatus.FAILED}),
    RequestStatus.CALLING: frozenset({RequestStatus.ANALYZING, RequestStatus.FAILED}),
    # Direct tasks have nothing to recommend and finish after analysis
    RequestStatus.ANALYZING: frozenset({RequestStatus.RECOMMENDED, RequestStatus.COMPLETED, RequestStatus.FAILED}),
    RequestStatus.RECOMMENDED: frozenset({RequestStatus.BOOKING}),
    RequestStatus.BOOKING: frozenset({RequestStatus.COMPLETED, RequestStatus.RECOMMENDED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.FAILED: frozenset(),
}

PENDING_CALL_STATUSES = (ProviderCallStatus.QUEUED, ProviderCallStatus.IN_PROGRESS)

NO_PROVIDERS_MESSAGE = "No qualified providers found. Try adjusting your criteria or location."


def allowed_sources(target: RequestStatus) -> List[RequestStatus]:
    return [status for status, targets in TRANSITIONS.items() if target in targets]


class StatusOrchestrator:
    """Advances service requests through their lifecycle."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        reconciler: ResultReconciler,
        dispatcher: BatchDispatcher,
        booking: BookingService,
        notifier: Optional[NotificationDispatcher] = None,
        research: Optional[ResearchService] = None,
        workflow: Optional[WorkflowEngineClient] = None,
        kestra_strict: bool = True,
        persist_retries: int = 2,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.booking = booking
        self.notifier = notifier
        self.research = research
        self.workflow = workflow
        self.kestra_strict = kestra_strict
        self.persist_retries = persist_retries
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(self, request_id: str, target: RequestStatus, log_step: Optional[str] = None, **fields) -> None:
        """
        Move a request to `target` if its current status allows it.

        Extra keyword arguments are written in the same UPDATE. Raises
        NotFoundError, InvalidTransitionError or PersistenceError; in every
        failure case the request keeps its previous status.
        """
        sources = allowed_sources(target)
        values = {getattr(DBServiceRequest, name): value for name, value in fields.items()}
        values[DBServiceRequest.status] = target
        values[DBServiceRequest.updated_at] = datetime.utcnow()

        with self.session_factory() as db:
            try:
                updated = (
                    db.query(DBServiceRequest)
                    .filter(DBServiceRequest.id == request_id)
                    .filter(DBServiceRequest.status.in_(sources))
                    .update(values, synchronize_session=False)
                )
                if updated and log_step:
                    InteractionLogService.add_log(
                        db, request_id, log_step, f"Status changed to {target.value}", InteractionStatus.INFO, commit=False
                    )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("status_transition_failed", request_id=request_id, target=target.value, error=str(e))
                raise PersistenceError(f"Failed to move request {request_id} to {target.value}: {e}") from e

            if not updated:
                current = db.query(DBServiceRequest.status).filter(DBServiceRequest.id == request_id).scalar()
                if current is None:
                    logger.warning("status_transition_request_missing", request_id=request_id, target=target.value)
                    raise NotFoundError(f"Service request {request_id} not found")
                logger.warning(
                    "status_transition_rejected",
                    request_id=request_id,
                    current=current.value,
                    target=target.value,
                )
                raise InvalidTransitionError(request_id, current.value, target.value)

        logger.info("status_transition", request_id=request_id, target=target.value)

    def _try_transition(self, request_id: str, target: RequestStatus, **kwargs) -> bool:
        """Transition for triggers that may race each other; losing the race is not an error."""
        try:
            self.transition(request_id, target, **kwargs)
            return True
        except InvalidTransitionError:
            return False

    def fail(self, request_id: str, reason: str) -> bool:
        return self._try_transition(request_id, RequestStatus.FAILED, log_step="Request Failed", final_outcome=reason)

    # ------------------------------------------------------------------
    # Research
    # ------------------------------------------------------------------

    async def run_research(self, request_id: str, min_rating: float = 4.0, max_results: int = 10) -> List[DBProvider]:
        """Research providers for a request and persist them. A request with none fails."""
        if self.research is None:
            raise ConciergeError("Research is not configured")
        with self.session_factory() as db:
            request = db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).first()
            if request is None:
                logger.warning("research_request_missing", request_id=request_id)
                raise NotFoundError(f"Service request {request_id} not found")
            title, location = request.title, request.location

        result = await self.research.research(title, location, min_rating=min_rating, max_results=max_results)
        if result.status != "success":
            logger.error("research_failed", request_id=request_id, error=result.error)
            self.fail(request_id, f"Research failed: {result.error}")
            return []
        return self.on_research_complete(request_id, result.providers)

    def on_research_complete(self, request_id: str, candidates: List[ProviderCandidate]) -> List[DBProvider]:
        """Persist found providers, then RESEARCHING -> CALLING (or FAILED when none is dialable)."""
        with self.session_factory() as db:
            providers = ProviderService.add_providers(db, request_id, [c.model_dump() for c in candidates])

        if not providers:
            self.fail(request_id, NO_PROVIDERS_MESSAGE)
            return []

        self.transition(request_id, RequestStatus.CALLING, log_step="Research Completed")
        return providers

    # ------------------------------------------------------------------
    # Calling
    # ------------------------------------------------------------------

    def _call_requests(self, request_id: str, provider_ids: Optional[List[str]] = None) -> List[CallRequest]:
        with self.session_factory() as db:
            request = db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).first()
            if request is None:
                logger.warning("calls_request_missing", request_id=request_id)
                raise NotFoundError(f"Service request {request_id} not found")
            providers = ProviderService.list_for_request(db, request_id)
            if provider_ids is not None:
                wanted = set(provider_ids)
                providers = [p for p in providers if p.id in wanted]

            requests = []
            for provider in providers:
                if provider.call_status is not None and provider.call_status.is_terminal:
                    logger.info("provider_already_called", request_id=request_id, provider_id=provider.id)
                    continue
                requests.append(CallRequest(
                    provider_name=provider.name,
                    provider_phone=provider.phone or "",
                    service_needed=request.title,
                    user_criteria=request.criteria or "",
                    location=request.location,
                    urgency=request.urgency,
                    problem_description=request.description,
                    client_name=request.user_name,
                    service_request_id=request_id,
                    provider_id=provider.id,
                ))
            return requests

    def prepare_calls(self, request_id: str, provider_ids: Optional[List[str]] = None) -> List[CallRequest]:
        """Build call requests for every provider not yet called and mark them queued."""
        requests = self._call_requests(request_id, provider_ids)
        self.reconciler.mark_queued([r.provider_id for r in requests])
        return requests

    async def _persist_result(self, request: CallRequest, result: CallResult) -> None:
        """
        Save one call result, retrying database failures. When every attempt
        fails the provider is closed out as an error so the request can still
        leave CALLING.
        """
        for attempt in range(self.persist_retries + 1):
            try:
                self.reconciler.save_call_result(request.provider_id, request.service_request_id, result)
                return
            except PersistenceError as e:
                if attempt < self.persist_retries:
                    logger.warning(
                        "call_result_persist_retry",
                        request_id=request.service_request_id,
                        provider_id=request.provider_id,
                        call_id=result.call_id,
                        attempt=attempt + 1,
                    )
                    await self._sleep(1)
                    continue
                logger.error(
                    "call_result_persist_gave_up",
                    request_id=request.service_request_id,
                    provider_id=request.provider_id,
                    call_id=result.call_id,
                    error=str(e),
                )
                try:
                    self.reconciler.mark_call_failed(
                        request.provider_id, result.call_id or None, f"Result could not be saved: {e}"
                    )
                except PersistenceError:
                    # Logged by the reconciler; the provider stays in progress
                    return
            except ConciergeError as e:
                logger.error(
                    "call_result_persist_failed",
                    request_id=request.service_request_id,
                    provider_id=request.provider_id,
                    call_id=result.call_id,
                    error=str(e),
                )
                return

    async def _mark_in_progress(self, request: CallRequest, call_id: str) -> None:
        self.reconciler.mark_call_in_progress(request.provider_id, call_id, CallKind.PROVIDER)

    async def start_calls(
        self,
        request_id: str,
        requests: Optional[List[CallRequest]] = None,
        max_concurrent: Optional[int] = None,
    ) -> BatchResult:
        """
        Call every pending provider of a request, persisting each result as it
        finishes, then try to advance the request.
        """
        if requests is None:
            requests = self.prepare_calls(request_id)

        delegate = False
        if self.workflow is not None:
            try:
                delegate = await self.workflow.ensure_available(self.kestra_strict)
            except WorkflowEngineUnavailableError:
                self.reconciler.release_queued([r.provider_id for r in requests if r.provider_id])
                raise

        if delegate:
            logger.info("calls_delegated_to_kestra", request_id=request_id, total=len(requests))
            results = await self.workflow.call_providers_concurrent(requests)
            for request, result in zip(requests, results):
                await self._persist_result(request, result)
            batch = BatchResult(results=results, stats=compute_stats(results, 0))
        else:
            batch = await self.dispatcher.call_all_providers(
                requests,
                max_concurrent=max_concurrent,
                on_result=self._persist_result,
                on_created=self._mark_in_progress,
            )

        await self.on_call_settled(request_id)
        return batch

    def _pending_calls(self, db: Session, request_id: str) -> int:
        return (
            db.query(DBProvider.id)
            .filter(DBProvider.request_id == request_id)
            .filter(DBProvider.call_status.in_(PENDING_CALL_STATUSES))
            .count()
        )

    async def on_call_settled(self, request_id: str) -> bool:
        """
        CALLING -> ANALYZING once no dispatched call is still queued or in
        progress; then score, recommend and notify. Returns True if this
        invocation advanced the request.
        """
        with self.session_factory() as db:
            request = db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).first()
            if request is None or request.status != RequestStatus.CALLING:
                return False
            pending = self._pending_calls(db, request_id)
            direct = request.type == RequestType.DIRECT_TASK
        if pending:
            logger.debug("calls_still_pending", request_id=request_id, pending=pending)
            return False

        if not self._try_transition(request_id, RequestStatus.ANALYZING, log_step="All Calls Completed"):
            return False

        if direct:
            self._complete_direct_task(request_id)
            return True

        try:
            response = self.generate_recommendations(request_id)
        except ConciergeError as e:
            logger.error("recommendation_failed", request_id=request_id, attempted="ANALYZING->RECOMMENDED", error=str(e))
            return True

        if response.recommendations:
            await self.notify(request_id)
        return True

    def generate_recommendations(self, request_id: str) -> RecommendationResponse:
        """Score the request's called providers and move ANALYZING -> RECOMMENDED."""
        with self.session_factory() as db:
            providers = [p for p in ProviderService.list_for_request(db, request_id) if p.call_status is not None]
            calls = [provider_call_from_row(p) for p in providers]

        response = generate_recommendations(calls)
        self.transition(
            request_id,
            RequestStatus.RECOMMENDED,
            log_step="Recommendations Ready",
            recommendations=response.to_payload(),
            final_outcome=None if response.recommendations else response.overall_recommendation,
        )
        return response

    def refresh_recommendations(self, request_id: str) -> RecommendationResponse:
        """
        Run the scorer on demand. From ANALYZING this is the normal transition;
        a RECOMMENDED request gets its payload recomputed in place.
        """
        with self.session_factory() as db:
            current = db.query(DBServiceRequest.status).filter(DBServiceRequest.id == request_id).scalar()
            if current is None:
                raise NotFoundError(f"Service request {request_id} not found")
            if current == RequestStatus.ANALYZING:
                pass
            elif current == RequestStatus.RECOMMENDED:
                providers = [p for p in ProviderService.list_for_request(db, request_id) if p.call_status is not None]
                response = generate_recommendations([provider_call_from_row(p) for p in providers])
                db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).update(
                    {
                        DBServiceRequest.recommendations: response.to_payload(),
                        DBServiceRequest.updated_at: datetime.utcnow(),
                    },
                    synchronize_session=False,
                )
                db.commit()
                return response
            else:
                logger.warning("recommendation_refresh_rejected", request_id=request_id, current=current.value)
                raise InvalidTransitionError(request_id, current.value, RequestStatus.RECOMMENDED.value)
        return self.generate_recommendations(request_id)

    def _complete_direct_task(self, request_id: str) -> None:
        with self.session_factory() as db:
            providers = ProviderService.list_for_request(db, request_id)
            summaries = [p.call_summary for p in providers if p.call_summary]
            statuses = [p.call_status for p in providers]
        if summaries:
            self.transition(request_id, RequestStatus.COMPLETED, log_step="Task Completed", final_outcome=" ".join(summaries))
        else:
            reason = ", ".join(s.value for s in statuses if s is not None) or "no call placed"
            self.transition(request_id, RequestStatus.FAILED, log_step="Task Failed", final_outcome=f"Call did not complete ({reason})")

    # ------------------------------------------------------------------
    # Notification and selection
    # ------------------------------------------------------------------

    async def notify(self, request_id: str) -> Optional[NotificationResult]:
        if self.notifier is None:
            return None
        try:
            result = await self.notifier.notify(request_id)
        except ConciergeError as e:
            logger.error("notification_trigger_failed", request_id=request_id, error=str(e))
            return None

        if result.selected_provider is not None:
            logger.info("selection_from_notification_call", request_id=request_id, rank=result.selected_provider)
            try:
                provider_id = self.select_by_rank(request_id, result.selected_provider)
                await self.run_booking(request_id, provider_id)
            except ConciergeError as e:
                logger.error("notification_selection_failed", request_id=request_id, error=str(e))
        return result

    def recommended_provider_id(self, request_id: str, rank: int) -> str:
        with self.session_factory() as db:
            request = db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).first()
            if request is None:
                raise NotFoundError(f"Service request {request_id} not found")
            recommendations = (request.recommendations or {}).get("recommendations") or []
        if not 1 <= rank <= len(recommendations) or not recommendations[rank - 1].get("providerId"):
            logger.warning("selection_rank_invalid", request_id=request_id, rank=rank, available=len(recommendations))
            raise NotFoundError(f"No recommendation #{rank} for request {request_id}")
        return recommendations[rank - 1]["providerId"]

    def select_by_rank(self, request_id: str, rank: int) -> str:
        provider_id = self.recommended_provider_id(request_id, rank)
        self.select_provider(request_id, provider_id)
        return provider_id

    def select_provider(self, request_id: str, provider_id: str) -> None:
        """RECOMMENDED -> BOOKING with the chosen provider."""
        with self.session_factory() as db:
            provider = ProviderService.require_provider(db, provider_id, request_id)
            name = provider.name
        self.transition(
            request_id,
            RequestStatus.BOOKING,
            log_step=f"Provider Selected: {name}",
            selected_provider_id=provider_id,
        )

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(self, request_id: str, provider_id: str, **preferences) -> CallResult:
        """Select a provider and run the booking call to completion."""
        self.select_provider(request_id, provider_id)
        return await self.run_booking(request_id, provider_id, **preferences)

    async def run_booking(self, request_id: str, provider_id: str, **preferences) -> CallResult:
        """
        Place the booking call for an already selected provider and settle the
        request. If the call cannot be placed at all the request goes back to
        RECOMMENDED before the error propagates.
        """
        try:
            call_request = self.booking.build_request(request_id, provider_id, **preferences)
            result = await self.booking.place_booking_call(call_request)
        except ConciergeError as e:
            logger.error(
                "booking_call_failed",
                request_id=request_id,
                provider_id=provider_id,
                attempted="BOOKING->COMPLETED",
                error=str(e),
            )
            self._try_transition(
                request_id,
                RequestStatus.RECOMMENDED,
                log_step="Booking Failed",
                selected_provider_id=None,
            )
            raise
        await self.complete_booking(request_id, provider_id)
        return result

    async def complete_booking(self, request_id: str, provider_id: str) -> Optional[RequestStatus]:
        """
        BOOKING -> COMPLETED for a confirmed booking, otherwise back to
        RECOMMENDED so the user can pick another provider. Returns the new
        status, or None when another trigger already settled the booking.
        """
        with self.session_factory() as db:
            provider = ProviderService.require_provider(db, provider_id, request_id)
            request = db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).first()
            if request.status != RequestStatus.BOOKING or request.selected_provider_id != provider_id:
                return None
            confirmed = bool(provider.booking_confirmed)
            details = {
                "provider_name": provider.name,
                "booking_date": provider.booking_date,
                "booking_time": provider.booking_time,
                "confirmation_number": provider.confirmation_number,
            }
            user = {"user_phone": request.user_phone, "user_name": request.user_name}

        if confirmed:
            when = " ".join(v for v in (details["booking_date"], details["booking_time"]) if v)
            outcome = f"Booked with {details['provider_name']}" + (f" for {when}" if when else "")
            if not self._try_transition(request_id, RequestStatus.COMPLETED, log_step="Booking Completed", final_outcome=outcome):
                return None
            bookings_completed.labels(confirmed="true").inc()
            if self.notifier is not None:
                await self.notifier.send_booking_confirmation(**user, **details)
            return RequestStatus.COMPLETED

        if not self._try_transition(
            request_id,
            RequestStatus.RECOMMENDED,
            log_step=f"Booking Failed: {details['provider_name']}",
            selected_provider_id=None,
        ):
            return None
        bookings_completed.labels(confirmed="false").inc()
        return RequestStatus.RECOMMENDED

    # ------------------------------------------------------------------
    # Webhook hook
    # ------------------------------------------------------------------

    async def handle_settled_call(self, result: CallResult, request_id: str, provider_id: Optional[str]) -> None:
        """Called by the webhook receiver after it persisted a call result."""
        try:
            if result.call_kind == CallKind.BOOKING and provider_id:
                await self.complete_booking(request_id, provider_id)
            elif result.call_kind == CallKind.PROVIDER:
                await self.on_call_settled(request_id)
        except ConciergeError as e:
            logger.error(
                "settled_call_handling_failed",
                request_id=request_id,
                provider_id=provider_id,
                call_id=result.call_id,
                kind=result.call_kind.value,
                error=str(e),
            )
