from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import Response

from concierge.db_models import DBProvider, RequestStatus
from concierge.errors import ConciergeError, InvalidTransitionError
from concierge.logging_config import get_logger
from concierge.routers.bookings import run_booking_task
from concierge.services import ServiceRequestService
from concierge.twiml_builder import build_message_twiml

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/twilio", tags=["Twilio"])

MAX_CHOICES = 3
NO_REQUEST_REPLY = "Hi! We couldn't find an active request for this number. Start a new search anytime. - AI Concierge"
STILL_WORKING_REPLY = "We're still researching providers for you. Please wait for our recommendations."


def parse_selection(body: str) -> int | None:
    """Leading integer of an SMS reply ("2", " 2 please"), or None."""
    digits = ""
    for ch in body.strip():
        if not ch.isdigit():
            break
        digits += ch
    return int(digits) if digits else None


def _xml(message: str) -> Response:
    return Response(content=build_message_twiml(message), media_type="application/xml")


def _confirmed_reply(db, service_request) -> str:
    if service_request.final_outcome:
        return f"{service_request.final_outcome}. Thank you for using AI Concierge!"
    provider = None
    if service_request.selected_provider_id:
        provider = db.query(DBProvider).filter(DBProvider.id == service_request.selected_provider_id).first()
    name = provider.name if provider else "your selected provider"
    return f"Great news! Your appointment is already confirmed with {name}. Thank you for using AI Concierge!"


# POST /api/v1/twilio/webhook
# Gets: Twilio form fields (From, Body, MessageSid, ...)
# Returns: TwiML (application/xml) with the reply message
# Example:
#   curl -X POST http://localhost:8000/api/v1/twilio/webhook -d 'From=%2B18645551234&Body=1'
@router.post("/webhook")
async def twilio_sms_webhook(request: Request, background_tasks: BackgroundTasks):
    """Handle a user's SMS reply to the recommendations message."""
    form_data = await request.form()
    from_number = form_data.get("From", "")
    body = form_data.get("Body", "")
    logger.info("sms_received", from_number=from_number, body=body[:50], message_sid=form_data.get("MessageSid"))

    app_state = request.app.state
    with app_state.session_factory() as db:
        service_request = ServiceRequestService.latest_awaiting_selection(db, from_number)
        if service_request is None:
            latest = ServiceRequestService.latest_for_phone(db, from_number)
            if latest is not None and latest.status == RequestStatus.COMPLETED:
                return _xml(_confirmed_reply(db, latest))
            logger.warning("sms_no_pending_request", from_number=from_number)
            return _xml(NO_REQUEST_REPLY)

        request_id = service_request.id
        status = service_request.status
        recommendations = (service_request.recommendations or {}).get("recommendations") or []
    choices = recommendations[:MAX_CHOICES]

    if not choices or status in (RequestStatus.CALLING, RequestStatus.ANALYZING):
        return _xml(STILL_WORKING_REPLY)

    selection = parse_selection(body)
    if selection is None or not 1 <= selection <= len(choices):
        options = "\n".join(f"{i}. {rec.get('providerName')}" for i, rec in enumerate(choices, start=1))
        return _xml(f"Please reply with {', '.join(str(i) for i in range(1, len(choices) + 1))} to select a provider:\n\n{options}")

    chosen = choices[selection - 1]
    if status == RequestStatus.BOOKING:
        return _xml("We're already booking your selected provider. You'll receive a confirmation shortly.")

    orchestrator = app_state.orchestrator
    try:
        provider_id = orchestrator.select_by_rank(request_id, selection)
    except InvalidTransitionError:
        return _xml("We're already booking your selected provider. You'll receive a confirmation shortly.")
    except ConciergeError as e:
        logger.error("sms_selection_failed", request_id=request_id, selection=selection, error=str(e))
        return _xml("Sorry, we couldn't process your selection. Please try again in a moment.")

    app_state.reconciler.log_event(
        request_id,
        "Booking Auto-Triggered",
        detail=f"Booking triggered for {chosen.get('providerName')} via SMS selection",
    )
    background_tasks.add_task(run_booking_task, orchestrator, request_id, provider_id)
    logger.info("sms_selection_applied", request_id=request_id, selection=selection, provider_id=provider_id)

    return _xml(
        f"Great choice! I'm booking {chosen.get('providerName')} for you now. You'll receive a confirmation shortly."
    )
