from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from concierge.logging_config import get_logger
from concierge.security import verify_api_key

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/vapi", tags=["VAPI"])


# POST /api/v1/vapi/webhook
# Gets: VAPI server message JSON ({"message": {"type": "end-of-call-report", "call": {...}, ...}})
# Returns: {success, message, callId?}; always 200 so VAPI does not retry
# Example:
#   curl -X POST http://localhost:8000/api/v1/vapi/webhook -H 'Content-Type: application/json' \
#     -d '{"message": {"type": "end-of-call-report", "call": {"id": "call-123"}}}'
@router.post("/webhook")
async def vapi_webhook(request: Request):
    """Cache end-of-call results and start background enrichment."""
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("webhook_body_not_json")
        return JSONResponse(status_code=200, content={"success": False, "message": "Body is not JSON"})

    return await request.app.state.webhook_receiver.handle_webhook(payload)


# GET /api/v1/vapi/calls/{call_id}
# Gets: path param call_id
# Returns: the cached call result with its enrichment status, or 404
# Example:
#   curl http://localhost:8000/api/v1/vapi/calls/call-123
@router.get("/calls/{call_id}")
async def get_cached_call(call_id: str, request: Request):
    result = request.app.state.webhook_cache.get(call_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"No cached result for call {call_id}")
    return {"success": True, "data": result.model_dump(mode="json")}


# DELETE /api/v1/vapi/calls/{call_id}
# Gets: path param call_id and X-API-Key header
# Returns: {success, deleted}
# Example:
#   curl -X DELETE -H 'X-API-Key: <key>' http://localhost:8000/api/v1/vapi/calls/call-123
@router.delete("/calls/{call_id}")
async def delete_cached_call(call_id: str, request: Request, api_key: str = Depends(verify_api_key)):
    deleted = request.app.state.webhook_cache.delete(call_id)
    logger.info("webhook_cache_entry_deleted", call_id=call_id, deleted=deleted)
    return {"success": True, "deleted": deleted}


# GET /api/v1/vapi/cache/stats
# Gets: X-API-Key header
# Returns: cache size, TTL and per-entry status
# Example:
#   curl -H 'X-API-Key: <key>' http://localhost:8000/api/v1/vapi/cache/stats
@router.get("/cache/stats")
async def cache_stats(request: Request, api_key: str = Depends(verify_api_key)):
    return {"success": True, "data": request.app.state.webhook_cache.stats()}
