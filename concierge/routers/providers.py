from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from concierge.database import get_db
from concierge.db_models import InteractionStatus, ProviderCallStatus
from concierge.errors import ConciergeError, invalid_field
from concierge.logging_config import get_logger
from concierge.models import BatchCallBody, CallKind, CallRequest, ProviderCallBody, RecommendBody
from concierge.orchestrator import StatusOrchestrator
from concierge.phone import normalize_phone_to_e164
from concierge.services import ProviderService, ServiceRequestService

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/providers", tags=["Providers"])


def _require_phone(phone: str, field: str) -> str:
    normalized = normalize_phone_to_e164(phone)
    if normalized is None:
        raise invalid_field(field, f"Not a dialable phone number: {phone!r}")
    return normalized


def _require_request_providers(request: Request, body: BatchCallBody) -> list[str]:
    """Provider ids of a linked batch; every one must belong to the request."""
    provider_ids = [p.id for p in body.providers]
    with request.app.state.session_factory() as db:
        ServiceRequestService.require_request(db, body.service_request_id)
        for provider_id in provider_ids:
            ProviderService.require_provider(db, provider_id, body.service_request_id)
    return provider_ids


def _batch_requests(body: BatchCallBody) -> list[CallRequest]:
    return [
        CallRequest(
            provider_name=provider.name,
            provider_phone=_require_phone(provider.phone, f"providers[{index}].phone"),
            service_needed=body.service_needed,
            user_criteria=body.user_criteria,
            location=body.location,
            urgency=body.urgency,
            service_request_id=body.service_request_id,
            provider_id=provider.id,
        )
        for index, provider in enumerate(body.providers)
    ]


# POST /api/v1/providers/call
# Gets: JSON body {providerName, providerPhone, serviceNeeded, userCriteria, location, urgency, serviceRequestId?, providerId?}
# Returns: {success, data: CallResult}; the result is persisted when both ids are given
# Example:
#   curl -X POST http://localhost:8000/api/v1/providers/call -H 'Content-Type: application/json' \
#     -d '{"providerName": "Ace Carpentry", "providerPhone": "(864) 555-1234", "serviceNeeded": "Carpenter"}'
@router.post("/call")
async def call_provider(body: ProviderCallBody, request: Request):
    """Place one call and wait for its result."""
    call_request = CallRequest(
        **body.model_dump(exclude={"provider_phone"}),
        provider_phone=_require_phone(body.provider_phone, "providerPhone"),
    )
    reconciler = request.app.state.reconciler
    linked = bool(call_request.provider_id and call_request.service_request_id)

    on_created = None
    if linked:
        async def on_created(call_id: str) -> None:
            reconciler.mark_call_in_progress(call_request.provider_id, call_id, CallKind.PROVIDER)

    result = await request.app.state.call_client.initiate_call(call_request, on_created=on_created)

    if linked:
        try:
            reconciler.save_call_result(call_request.provider_id, call_request.service_request_id, result)
        except ConciergeError as e:
            logger.error("call_result_persist_failed", provider_id=call_request.provider_id, error=str(e))
        await request.app.state.orchestrator.on_call_settled(call_request.service_request_id)

    return {"success": result.status.value != "error", "data": result.model_dump(mode="json")}


# POST /api/v1/providers/batch-call
# Gets: JSON body {providers: [{name, phone, id?}], serviceNeeded, userCriteria, location, urgency, serviceRequestId?, maxConcurrent?}
# Returns: {success, data: {results, stats, errors}} once every call has finished. With serviceRequestId and
#   provider ids the stored providers are called and those that already have a final result are skipped
# Example:
#   curl -X POST http://localhost:8000/api/v1/providers/batch-call -H 'Content-Type: application/json' \
#     -d '{"providers": [{"name": "A", "phone": "+18645551234"}], "serviceNeeded": "Plumber"}'
@router.post("/batch-call")
async def batch_call(body: BatchCallBody, request: Request):
    """Call several providers concurrently and wait for all of them."""
    orchestrator: StatusOrchestrator = request.app.state.orchestrator

    if body.service_request_id and all(p.id for p in body.providers):
        provider_ids = _require_request_providers(request, body)
        requests = orchestrator.prepare_calls(body.service_request_id, provider_ids)
        batch = await orchestrator.start_calls(body.service_request_id, requests, max_concurrent=body.max_concurrent)
    else:
        requests = _batch_requests(body)
        batch = await request.app.state.dispatcher.call_all_providers(requests, max_concurrent=body.max_concurrent)

    return {
        "success": batch.success,
        "data": {
            "results": [r.model_dump(mode="json") for r in batch.results],
            "stats": batch.stats.model_dump(),
            "errors": [e.model_dump() for e in batch.errors],
        },
    }


# POST /api/v1/providers/batch-call-async
# Gets: same body as batch-call; serviceRequestId and every provider id are required
# Returns: 202 {success, data: {serviceRequestId, providersQueued, status}}; calls run in the background
# Example:
#   curl -X POST http://localhost:8000/api/v1/providers/batch-call-async -H 'Content-Type: application/json' \
#     -d '{"serviceRequestId": "<id>", "providers": [{"id": "<pid>", "name": "A", "phone": "+18645551234"}], "serviceNeeded": "Plumber"}'
@router.post("/batch-call-async", status_code=202)
async def batch_call_async(body: BatchCallBody, request: Request, background_tasks: BackgroundTasks):
    """Queue providers and call them in the background; results are persisted as they arrive."""
    if not body.service_request_id:
        raise invalid_field("serviceRequestId", "serviceRequestId is required for async batches")
    if not all(p.id for p in body.providers):
        raise invalid_field("providers", "Every provider needs an id for async batches")

    app_state = request.app.state
    provider_ids = _require_request_providers(request, body)

    # Providers that already have a final result are skipped
    requests = app_state.orchestrator.prepare_calls(body.service_request_id, provider_ids)
    queued = len(requests)
    app_state.reconciler.log_event(
        body.service_request_id,
        "Batch Calls Started",
        detail=f"Calling {len(requests)} providers",
        status=InteractionStatus.PENDING,
    )
    background_tasks.add_task(
        app_state.orchestrator.start_calls, body.service_request_id, requests, body.max_concurrent
    )
    logger.info("batch_accepted", request_id=body.service_request_id, providers=len(requests), queued=queued)

    return {
        "success": True,
        "data": {
            "serviceRequestId": body.service_request_id,
            "providersQueued": queued,
            "status": "accepted",
        },
    }


# GET /api/v1/providers/batch-status/{request_id}
# Gets: path param request_id
# Returns: per-status provider counts and an overall batch status
# Example:
#   curl http://localhost:8000/api/v1/providers/batch-status/<id>
@router.get("/batch-status/{request_id}")
async def batch_status(request_id: str, db: Session = Depends(get_db)):
    """Progress of the calls for a request."""
    service_request = ServiceRequestService.require_request(db, request_id)
    providers = ProviderService.list_for_request(db, request_id)

    counts = {status.value: 0 for status in ProviderCallStatus}
    counts["not_called"] = 0
    for provider in providers:
        counts[provider.call_status.value if provider.call_status else "not_called"] += 1

    pending = counts[ProviderCallStatus.QUEUED.value] + counts[ProviderCallStatus.IN_PROGRESS.value]
    dispatched = len(providers) - counts["not_called"]
    if dispatched == 0:
        overall = "not_started"
    elif pending:
        overall = "in_progress"
    else:
        overall = "completed"

    return {
        "success": True,
        "data": {
            "serviceRequestId": request_id,
            "requestStatus": service_request.status.value,
            "status": overall,
            "total": len(providers),
            "queued": counts[ProviderCallStatus.QUEUED.value],
            "inProgress": counts[ProviderCallStatus.IN_PROGRESS.value],
            "completed": dispatched - pending,
            "byStatus": counts,
        },
    }


# POST /api/v1/providers/recommend
# Gets: JSON body {serviceRequestId}
# Returns: {success, data: {recommendations, overallRecommendation, analysisNotes, stats}}
# Example:
#   curl -X POST http://localhost:8000/api/v1/providers/recommend -H 'Content-Type: application/json' \
#     -d '{"serviceRequestId": "<id>"}'
@router.post("/recommend")
async def recommend(body: RecommendBody, request: Request):
    """Score the request's called providers and store the recommendations."""
    response = request.app.state.orchestrator.refresh_recommendations(body.service_request_id)
    return {"success": True, "data": response.to_payload()}


# GET /api/v1/providers/system-status
# Gets: nothing
# Returns: which call path is active and workflow-engine health
# Example:
#   curl http://localhost:8000/api/v1/providers/system-status
@router.get("/system-status")
async def system_status(request: Request):
    """Report the active call method."""
    config = request.app.state.config
    workflow = request.app.state.workflow
    kestra = {"enabled": workflow is not None, "healthy": None, "reason": None, "strict": config.KESTRA_STRICT}
    if workflow is not None:
        health = await workflow.health_check()
        kestra.update(healthy=health.healthy, reason=health.reason)

    if workflow is not None and kestra["healthy"]:
        method = "kestra"
    elif workflow is not None and config.KESTRA_STRICT:
        method = "unavailable"
    else:
        method = "direct_vapi"

    return {
        "success": True,
        "data": {
            "activeMethod": method,
            "webhookMode": "hybrid" if config.has_webhook_url() else "polling",
            "vapiConfigured": config.has_vapi_config(),
            "kestra": kestra,
            "liveCallsEnabled": config.LIVE_CALLS_ENABLED,
        },
    }
