from fastapi import APIRouter, BackgroundTasks, HTTPException, Request

from concierge.errors import ConciergeError
from concierge.logging_config import get_logger
from concierge.models import NotifyBody
from concierge.routers.bookings import run_booking_task

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


# POST /api/v1/notifications/send
# Gets: JSON body {serviceRequestId, preferredContact?: "text" | "phone"}
# Returns: {success, data: {method, callId, messageSid, selectedProvider, error}}
# Example:
#   curl -X POST http://localhost:8000/api/v1/notifications/send -H 'Content-Type: application/json' \
#     -d '{"serviceRequestId": "<id>", "preferredContact": "text"}'
@router.post("/send")
async def send_notification(body: NotifyBody, request: Request, background_tasks: BackgroundTasks):
    """Send the recommendations to the user. A second send for the same request is a no-op."""
    notifier = request.app.state.notifier
    if notifier is None:
        raise HTTPException(status_code=503, detail="Notifications are not configured")
    result = await notifier.notify(body.service_request_id, body.preferred_contact)

    # A choice spoken during a notification call books right away
    if result.selected_provider is not None:
        orchestrator = request.app.state.orchestrator
        try:
            provider_id = orchestrator.select_by_rank(body.service_request_id, result.selected_provider)
            background_tasks.add_task(run_booking_task, orchestrator, body.service_request_id, provider_id)
        except ConciergeError as e:
            logger.error("notification_selection_failed", request_id=body.service_request_id, error=str(e))

    return {
        "success": result.success,
        "data": {
            "method": result.method,
            "callId": result.call_id,
            "messageSid": result.message_sid,
            "selectedProvider": result.selected_provider,
            "error": result.error,
        },
    }
