from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from concierge.database import get_db
from concierge.db_models import DBInteractionLog, DBProvider, DBServiceRequest, RequestStatus, RequestType
from concierge.errors import ConciergeError, invalid_field
from concierge.logging_config import get_logger
from concierge.models import ProviderCandidate, ServiceRequestCreate
from concierge.orchestrator import StatusOrchestrator
from concierge.phone import normalize_phone_to_e164
from concierge.services import InteractionLogService, ProviderService, ServiceRequestService

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/requests", tags=["Service Requests"])


def serialize_provider(provider: DBProvider) -> dict:
    return {
        "id": provider.id,
        "name": provider.name,
        "phone": provider.phone,
        "rating": provider.rating,
        "reviewCount": provider.review_count,
        "address": provider.address,
        "callStatus": provider.call_status.value if provider.call_status else None,
        "callId": provider.call_id,
        "callResult": provider.call_result,
        "callSummary": provider.call_summary,
        "callDurationMinutes": provider.call_duration_minutes,
        "calledAt": provider.called_at.isoformat() if provider.called_at else None,
        "bookingConfirmed": bool(provider.booking_confirmed),
        "bookingDate": provider.booking_date,
        "bookingTime": provider.booking_time,
        "confirmationNumber": provider.confirmation_number,
    }


def serialize_log(entry: DBInteractionLog) -> dict:
    return {
        "id": entry.id,
        "stepName": entry.step_name,
        "detail": entry.detail,
        "status": entry.status.value if entry.status else None,
        "transcript": entry.transcript,
        "callId": entry.call_id,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


def serialize_request(service_request: DBServiceRequest) -> dict:
    return {
        "id": service_request.id,
        "type": service_request.type.value,
        "title": service_request.title,
        "description": service_request.description,
        "criteria": service_request.criteria,
        "location": service_request.location,
        "urgency": service_request.urgency.value,
        "status": service_request.status.value,
        "selectedProviderId": service_request.selected_provider_id,
        "finalOutcome": service_request.final_outcome,
        "recommendations": service_request.recommendations,
        "userName": service_request.user_name,
        "userPhone": service_request.user_phone,
        "preferredContact": service_request.preferred_contact.value if service_request.preferred_contact else None,
        "notificationSentAt": (
            service_request.notification_sent_at.isoformat() if service_request.notification_sent_at else None
        ),
        "notificationMethod": service_request.notification_method,
        "createdAt": service_request.created_at.isoformat() if service_request.created_at else None,
        "updatedAt": service_request.updated_at.isoformat() if service_request.updated_at else None,
    }


async def run_pipeline(
    orchestrator: StatusOrchestrator,
    request_id: str,
    min_rating: float = 4.0,
    max_results: int = 10,
    research: bool = True,
) -> None:
    """Research, then call everyone found. Everything after that is driven by call results."""
    try:
        if research:
            providers = await orchestrator.run_research(request_id, min_rating=min_rating, max_results=max_results)
            if not providers:
                return
        await orchestrator.start_calls(request_id)
    except ConciergeError as e:
        logger.error("pipeline_failed", request_id=request_id, error=str(e))
        orchestrator.fail(request_id, str(e))


# POST /api/v1/requests
# Gets: JSON body {title, location, criteria, urgency, type, userName, userPhone, preferredContact, directContact?}
# Returns: the created request; research and calls continue in the background when autoStart is true
# Example:
#   curl -X POST http://localhost:8000/api/v1/requests -H 'Content-Type: application/json' \
#     -d '{"title": "Carpenter", "location": "Greenville, SC", "criteria": "Licensed", "userPhone": "864-555-1234"}'
@router.post("", status_code=201)
async def create_request(
    body: ServiceRequestCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Create a service request and start its pipeline."""
    if body.type == RequestType.DIRECT_TASK:
        if body.direct_contact is None:
            raise invalid_field("directContact", "directContact is required for direct tasks")
        if normalize_phone_to_e164(body.direct_contact.phone) is None:
            raise invalid_field("directContact.phone", "Not a dialable phone number")

    service_request = ServiceRequestService.create_request(
        db,
        title=body.title,
        location=body.location,
        description=body.description,
        criteria=body.criteria,
        urgency=body.urgency,
        request_type=body.type,
        user_name=body.user_name,
        user_phone=body.user_phone,
        preferred_contact=body.preferred_contact,
    )
    request_id = service_request.id
    orchestrator: StatusOrchestrator = request.app.state.orchestrator

    if body.type == RequestType.DIRECT_TASK:
        contact = ProviderCandidate(name=body.direct_contact.name, phone=body.direct_contact.phone)
        orchestrator.on_research_complete(request_id, [contact])
        if body.auto_start:
            background_tasks.add_task(run_pipeline, orchestrator, request_id, research=False)
    elif body.auto_start:
        background_tasks.add_task(run_pipeline, orchestrator, request_id, body.min_rating, body.max_providers)

    db.refresh(service_request)
    return {"success": True, "data": serialize_request(service_request)}


# GET /api/v1/requests?status=CALLING&skip=0&limit=50
# Gets: optional query params status, skip, limit
# Returns: JSON array of requests, newest first
# Example:
#   curl http://localhost:8000/api/v1/requests?status=RECOMMENDED
@router.get("")
async def list_requests(
    status: Optional[RequestStatus] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    """List service requests."""
    requests = ServiceRequestService.list_requests(db, skip=skip, limit=limit, status=status)
    return {"success": True, "data": [serialize_request(r) for r in requests]}


# GET /api/v1/requests/{request_id}
# Gets: path param request_id
# Returns: the request with its providers and interaction log
# Example:
#   curl http://localhost:8000/api/v1/requests/<id>
@router.get("/{request_id}")
async def get_request(request_id: str, db: Session = Depends(get_db)):
    """Get one service request with providers and log."""
    service_request = ServiceRequestService.require_request(db, request_id)
    data = serialize_request(service_request)
    data["providers"] = [serialize_provider(p) for p in ProviderService.list_for_request(db, request_id)]
    data["interactionLogs"] = [serialize_log(e) for e in InteractionLogService.list_logs(db, request_id)]
    return {"success": True, "data": data}
