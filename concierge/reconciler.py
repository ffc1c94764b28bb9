"""
Result reconciler.

Writes one CallResult across the provider row, the request row and the
interaction log. Both the polling path and the webhook-enrichment path end
here, often for the same call, so every write is keyed on the call id.
"""

import enum
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from concierge.db_models import (
    DBProvider,
    DBServiceRequest,
    InteractionStatus,
    ProviderCallStatus,
)
from concierge.errors import NotFoundError, PersistenceError
from concierge.logging_config import get_logger
from concierge.metrics import call_results_total
from concierge.models import CallKind, CallResult, CallResultStatus
from concierge.services import InteractionLogService

logger = get_logger(__name__)


class ReconcileOutcome(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"  # same call already recorded, nothing new written
    STALE = "stale"  # result belongs to a different call than the provider's current one


# Outcomes where the call itself reached the other side; a later timeout or
# error for the same call never replaces them.
_REACHED = {ProviderCallStatus.COMPLETED, ProviderCallStatus.VOICEMAIL}
_WEAK = {CallResultStatus.TIMEOUT, CallResultStatus.ERROR}


def _log_status(result: CallResult) -> InteractionStatus:
    if result.status == CallResultStatus.COMPLETED:
        return InteractionStatus.SUCCESS
    if result.status in (CallResultStatus.VOICEMAIL, CallResultStatus.TIMEOUT):
        return InteractionStatus.WARNING
    return InteractionStatus.ERROR


def _log_transcript(result: CallResult):
    if result.messages:
        return result.messages
    if result.transcript:
        return {"text": result.transcript}
    return None


def _call_result_payload(result: CallResult) -> dict:
    return {
        "status": result.status.value,
        "call_id": result.call_id,
        "ended_reason": result.ended_reason,
        "summary": result.analysis.summary,
        "structured_data": result.structured.model_dump(),
        "success_evaluation": result.analysis.success_evaluation,
        "data_status": result.data_status.value if result.data_status else None,
        "error": result.error,
    }


class ResultReconciler:
    """Persists call outcomes. Owns its sessions through the injected factory."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def mark_queued(self, provider_ids: Iterable[str]) -> int:
        """Pre-mark providers as queued before a batch starts. Terminal providers are left alone."""
        ids = list(provider_ids)
        with self.session_factory() as db:
            count = (
                db.query(DBProvider)
                .filter(DBProvider.id.in_(ids))
                .filter((DBProvider.call_status.is_(None)) | (DBProvider.call_status == ProviderCallStatus.QUEUED))
                .update(
                    {DBProvider.call_status: ProviderCallStatus.QUEUED, DBProvider.updated_at: datetime.utcnow()},
                    synchronize_session=False,
                )
            )
            db.commit()
        logger.info("providers_marked_queued", count=count)
        return count

    def release_queued(self, provider_ids: Iterable[str]) -> int:
        """Undo mark_queued for providers whose calls were never placed."""
        ids = list(provider_ids)
        with self.session_factory() as db:
            count = (
                db.query(DBProvider)
                .filter(DBProvider.id.in_(ids))
                .filter(DBProvider.call_status == ProviderCallStatus.QUEUED)
                .update(
                    {DBProvider.call_status: None, DBProvider.updated_at: datetime.utcnow()},
                    synchronize_session=False,
                )
            )
            db.commit()
        logger.info("providers_released", count=count)
        return count

    def mark_call_failed(self, provider_id: str, call_id: Optional[str], error: str) -> bool:
        """
        Close out a provider whose call result could not be stored.

        Only a queued or in-progress provider is touched, so a result that
        did land in the meantime is kept.
        """
        with self.session_factory() as db:
            try:
                updated = (
                    db.query(DBProvider)
                    .filter(DBProvider.id == provider_id)
                    .filter(DBProvider.call_status.in_((ProviderCallStatus.QUEUED, ProviderCallStatus.IN_PROGRESS)))
                    .update(
                        {
                            DBProvider.call_status: ProviderCallStatus.ERROR,
                            DBProvider.call_result: {"status": "error", "call_id": call_id, "error": error},
                            DBProvider.updated_at: datetime.utcnow(),
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("mark_call_failed_error", provider_id=provider_id, call_id=call_id, error=str(e))
                raise PersistenceError(f"Failed to mark provider {provider_id} failed: {e}") from e
        if updated:
            logger.warning("provider_call_marked_failed", provider_id=provider_id, call_id=call_id, error=error)
        return bool(updated)

    def mark_call_in_progress(self, provider_id: str, call_id: str, kind: CallKind = CallKind.PROVIDER) -> bool:
        """
        Attach a freshly created vendor call id to its provider.

        The call id is set at most once per call attempt; a provider that
        already carries a different id for this kind of call is not touched.
        """
        with self.session_factory() as db:
            provider = db.query(DBProvider).filter(DBProvider.id == provider_id).first()
            if provider is None:
                logger.warning("mark_in_progress_provider_missing", provider_id=provider_id, call_id=call_id)
                return False

            if kind == CallKind.BOOKING:
                if provider.booking_call_id not in (None, call_id):
                    return False
                provider.booking_call_id = call_id
                provider.call_status = ProviderCallStatus.BOOKING_IN_PROGRESS
            else:
                if provider.call_id not in (None, call_id):
                    return False
                if provider.call_status is not None and provider.call_status.is_terminal:
                    return False
                provider.call_id = call_id
                provider.call_status = ProviderCallStatus.IN_PROGRESS
                provider.called_at = datetime.utcnow()
            db.commit()

        logger.info("provider_call_in_progress", provider_id=provider_id, call_id=call_id, kind=kind.value)
        return True

    def reset_booking(self, provider_id: str) -> None:
        """Clear a previous booking attempt so a new booking call can be attached."""
        with self.session_factory() as db:
            updated = (
                db.query(DBProvider)
                .filter(DBProvider.id == provider_id)
                .update(
                    {
                        DBProvider.booking_call_id: None,
                        DBProvider.booking_confirmed: False,
                        DBProvider.booking_date: None,
                        DBProvider.booking_time: None,
                        DBProvider.confirmation_number: None,
                        DBProvider.updated_at: datetime.utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        if not updated:
            logger.warning("reset_booking_provider_missing", provider_id=provider_id)
            raise NotFoundError(f"Provider {provider_id} not found")

    def save_call_result(self, provider_id: str, service_request_id: str, result: CallResult) -> ReconcileOutcome:
        """
        Apply a call result to its provider and append one log entry.

        Idempotent per call id. Raises NotFoundError for unknown rows and
        PersistenceError when the database write fails; both are logged first.
        """
        with self.session_factory() as db:
            try:
                provider = (
                    db.query(DBProvider)
                    .filter(DBProvider.id == provider_id)
                    .with_for_update()
                    .first()
                )
                if provider is None or provider.request_id != service_request_id:
                    logger.error(
                        "reconcile_provider_missing",
                        provider_id=provider_id,
                        request_id=service_request_id,
                        call_id=result.call_id,
                    )
                    raise NotFoundError(f"Provider {provider_id} not found for request {service_request_id}")

                outcome = self._check(provider, result)
                if outcome is not None:
                    return outcome

                if result.call_kind == CallKind.BOOKING:
                    self._apply_booking(provider, result)
                else:
                    self._apply_research(provider, result)

                db.query(DBServiceRequest).filter(DBServiceRequest.id == service_request_id).update(
                    {DBServiceRequest.updated_at: datetime.utcnow()}, synchronize_session=False
                )

                entry = InteractionLogService.add_log(
                    db,
                    service_request_id,
                    step_name=self._step_name(provider, result),
                    detail=result.analysis.summary or result.error or result.ended_reason,
                    status=_log_status(result),
                    transcript=_log_transcript(result),
                    call_id=result.call_id or None,
                    commit=False,
                )
                db.commit()
                outcome = ReconcileOutcome.APPLIED if entry is not None else ReconcileOutcome.DUPLICATE
                if outcome == ReconcileOutcome.APPLIED:
                    call_results_total.labels(kind=result.call_kind.value, status=result.status.value).inc()

            except SQLAlchemyError as e:
                db.rollback()
                logger.error(
                    "reconcile_failed",
                    provider_id=provider_id,
                    request_id=service_request_id,
                    call_id=result.call_id,
                    error=str(e),
                )
                raise PersistenceError(f"Failed to persist result for call {result.call_id}: {e}") from e

        logger.info(
            "call_result_persisted",
            provider_id=provider_id,
            request_id=service_request_id,
            call_id=result.call_id,
            status=result.status.value,
            kind=result.call_kind.value,
            outcome=outcome.value,
        )
        return outcome

    def _check(self, provider: DBProvider, result: CallResult) -> Optional[ReconcileOutcome]:
        booking = result.call_kind == CallKind.BOOKING
        current_id = provider.booking_call_id if booking else provider.call_id
        status = provider.call_status

        if result.call_id:
            if current_id is not None and current_id != result.call_id:
                logger.warning(
                    "reconcile_stale_call",
                    provider_id=provider.id,
                    current_call_id=current_id,
                    call_id=result.call_id,
                )
                return ReconcileOutcome.STALE
        elif current_id is not None:
            # A failure before any call id existed cannot describe the current call
            return ReconcileOutcome.STALE
        elif not booking and status is not None and status.is_terminal:
            return ReconcileOutcome.DUPLICATE

        if not booking and status in _REACHED and result.status in _WEAK:
            logger.info(
                "reconcile_weaker_result_ignored",
                provider_id=provider.id,
                call_id=result.call_id,
                current=status.value,
                incoming=result.status.value,
            )
            return ReconcileOutcome.DUPLICATE

        if booking and provider.booking_confirmed and result.status in _WEAK:
            return ReconcileOutcome.DUPLICATE

        return None

    @staticmethod
    def _apply_research(provider: DBProvider, result: CallResult) -> None:
        provider.call_status = result.status.to_provider_status()
        provider.call_id = result.call_id or provider.call_id
        provider.call_result = _call_result_payload(result)
        provider.call_transcript = result.transcript
        provider.call_summary = result.analysis.summary
        provider.call_duration_minutes = result.duration
        if result.cost is not None:
            provider.call_cost = result.cost
        provider.call_method = result.call_method.value
        provider.called_at = provider.called_at or datetime.utcnow()
        provider.updated_at = datetime.utcnow()

    @staticmethod
    def _apply_booking(provider: DBProvider, result: CallResult) -> None:
        structured = result.structured
        provider.booking_call_id = result.call_id or provider.booking_call_id
        provider.booking_transcript = result.transcript
        provider.booking_confirmed = bool(result.status == CallResultStatus.COMPLETED and structured.booking_confirmed)
        provider.booking_date = structured.confirmed_date
        provider.booking_time = structured.confirmed_time
        number = structured.confirmation_number
        provider.confirmation_number = number if number and number.lower() != "none" else None
        # The research call behind this booking finished long ago
        provider.call_status = ProviderCallStatus.COMPLETED
        provider.updated_at = datetime.utcnow()

    @staticmethod
    def _step_name(provider: DBProvider, result: CallResult) -> str:
        if result.call_kind == CallKind.BOOKING:
            outcome = "Confirmed" if provider.booking_confirmed else "Not Confirmed"
            return f"Booking Call {outcome}: {provider.name}"
        labels = {
            CallResultStatus.COMPLETED: "Call Completed",
            CallResultStatus.VOICEMAIL: "Call Reached Voicemail",
            CallResultStatus.TIMEOUT: "Call Timed Out",
            CallResultStatus.ERROR: "Call Failed",
        }
        return f"{labels[result.status]}: {provider.name}"

    def log_event(
        self,
        service_request_id: str,
        step_name: str,
        detail: str = "",
        status: InteractionStatus = InteractionStatus.INFO,
        transcript=None,
        call_id: Optional[str] = None,
    ) -> bool:
        """Append a free-standing log entry (notification calls, batch milestones)."""
        with self.session_factory() as db:
            try:
                entry = InteractionLogService.add_log(
                    db, service_request_id, step_name, detail, status, transcript=transcript, call_id=call_id
                )
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("interaction_log_failed", request_id=service_request_id, step=step_name, error=str(e))
                raise PersistenceError(f"Failed to write log entry {step_name!r}: {e}") from e
        return entry is not None
