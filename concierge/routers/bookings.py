from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from concierge.database import get_db
from concierge.errors import ConciergeError
from concierge.logging_config import get_logger
from concierge.models import ScheduleBody
from concierge.orchestrator import StatusOrchestrator
from concierge.services import ProviderService, ServiceRequestService

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/bookings", tags=["Bookings"])


async def run_booking_task(orchestrator: StatusOrchestrator, request_id: str, provider_id: str, **preferences) -> None:
    """Background booking. run_booking already put the request back to RECOMMENDED on failure."""
    try:
        await orchestrator.run_booking(request_id, provider_id, **preferences)
    except ConciergeError as e:
        logger.error("booking_task_failed", request_id=request_id, provider_id=provider_id, error=str(e))


def _booking_payload(result) -> dict:
    data = result.structured
    return {
        "callId": result.call_id,
        "status": result.status.value,
        "bookingConfirmed": bool(data.booking_confirmed) and result.status.value == "completed",
        "confirmedDate": data.confirmed_date,
        "confirmedTime": data.confirmed_time,
        "confirmationNumber": data.confirmation_number,
        "summary": result.analysis.summary,
        "error": result.error,
    }


# POST /api/v1/bookings/schedule
# Gets: JSON body {serviceRequestId, providerId, preferredDateTime?, customerName?, customerAddress?}
# Returns: {success, data: booking call outcome}; waits for the booking call to finish
# Example:
#   curl -X POST http://localhost:8000/api/v1/bookings/schedule -H 'Content-Type: application/json' \
#     -d '{"serviceRequestId": "<id>", "providerId": "<pid>", "preferredDateTime": "Tomorrow 2pm"}'
@router.post("/schedule")
async def schedule(body: ScheduleBody, request: Request):
    """Select a recommended provider and call them to book."""
    orchestrator: StatusOrchestrator = request.app.state.orchestrator
    result = await orchestrator.book(body.service_request_id, body.provider_id, **body.preferences())
    payload = _booking_payload(result)
    return {"success": payload["bookingConfirmed"], "data": payload}


# POST /api/v1/bookings/schedule-async
# Gets: same body as /schedule
# Returns: 202 {success, data: {serviceRequestId, providerId, status}}; the call runs in the background
# Example:
#   curl -X POST http://localhost:8000/api/v1/bookings/schedule-async -H 'Content-Type: application/json' \
#     -d '{"serviceRequestId": "<id>", "providerId": "<pid>"}'
@router.post("/schedule-async", status_code=202)
async def schedule_async(body: ScheduleBody, request: Request, background_tasks: BackgroundTasks):
    orchestrator: StatusOrchestrator = request.app.state.orchestrator
    orchestrator.select_provider(body.service_request_id, body.provider_id)
    background_tasks.add_task(
        run_booking_task, orchestrator, body.service_request_id, body.provider_id, **body.preferences()
    )
    logger.info("booking_accepted", request_id=body.service_request_id, provider_id=body.provider_id)
    return {
        "success": True,
        "data": {
            "serviceRequestId": body.service_request_id,
            "providerId": body.provider_id,
            "status": "booking",
        },
    }


# GET /api/v1/bookings/{request_id}
# Gets: path param request_id
# Returns: request status and the selected provider's booking fields
# Example:
#   curl http://localhost:8000/api/v1/bookings/<id>
@router.get("/{request_id}")
async def booking_status(request_id: str, db: Session = Depends(get_db)):
    service_request = ServiceRequestService.require_request(db, request_id)
    booking = None
    if service_request.selected_provider_id:
        provider = ProviderService.require_provider(db, service_request.selected_provider_id, request_id)
        booking = {
            "providerId": provider.id,
            "providerName": provider.name,
            "bookingCallId": provider.booking_call_id,
            "bookingConfirmed": bool(provider.booking_confirmed),
            "bookingDate": provider.booking_date,
            "bookingTime": provider.booking_time,
            "confirmationNumber": provider.confirmation_number,
        }
    return {
        "success": True,
        "data": {
            "serviceRequestId": request_id,
            "status": service_request.status.value,
            "finalOutcome": service_request.final_outcome,
            "booking": booking,
        },
    }
