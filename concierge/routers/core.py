from fastapi import APIRouter

from concierge.config import VERSION

router = APIRouter(tags=["Core"])


# GET /
# Gets: nothing
# Returns: basic API metadata and a map of key endpoints
# Example:
#   curl http://localhost:8000/
@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "ConciergeAI API - finds, calls and books local service providers",
        "version": VERSION,
        "endpoints": {
            "requests": "/api/v1/requests",
            "provider_call": "/api/v1/providers/call",
            "batch_call": "/api/v1/providers/batch-call",
            "batch_call_async": "/api/v1/providers/batch-call-async",
            "batch_status": "/api/v1/providers/batch-status/{request_id}",
            "recommend": "/api/v1/providers/recommend",
            "vapi_webhook": "/api/v1/vapi/webhook",
            "bookings": "/api/v1/bookings/schedule",
            "notifications": "/api/v1/notifications/send",
            "twilio_webhook": "/api/v1/twilio/webhook",
            "metrics": "/metrics",
        },
        "features": [
            "Provider research",
            "Concurrent AI voice calls",
            "Deterministic provider scoring",
            "SMS and phone notifications",
            "Appointment booking",
        ],
    }
