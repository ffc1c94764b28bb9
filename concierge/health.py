"""
Health check and monitoring endpoints.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from concierge.config import VERSION
from concierge.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Health & Monitoring"])


# GET /health
# Gets: nothing
# Returns: {status, service, version}
# Example:
#   curl http://localhost:8000/health
@router.get("/health")
async def health_check():
    """
    Basic health check - returns 200 if service is running.
    Use this for basic liveness probes.
    """
    return {
        "status": "healthy",
        "service": "concierge-api",
        "version": VERSION,
    }


# GET /health/ready
# Gets: nothing
# Returns: dependency readiness checks; 503 when the database is unreachable
# Example:
#   curl http://localhost:8000/health/ready
@router.get("/health/ready")
async def readiness_check(request: Request):
    """
    Readiness check - verifies dependencies are available.
    Use this for Kubernetes readiness probes.

    Checks:
    - Database connectivity
    - Voice vendor, SMS and places configuration (informational)
    """
    config = request.app.state.config
    checks = {
        "database": False,
        "vapi": "configured" if config.has_vapi_config() else "not_configured",
        "twilio": "configured" if config.has_twilio_config() else "not_configured",
        "places": "configured" if config.has_places_config() else "not_configured",
        "ready": False,
    }

    try:
        with request.app.state.session_factory() as db:
            db.execute(text("SELECT 1"))
        checks["database"] = True
        logger.debug("readiness_check_database", status="ok")
    except SQLAlchemyError as e:
        logger.warning("readiness_check_database", status="error", error=str(e))

    # Vendors are optional for the service to start; the database is not
    checks["ready"] = checks["database"]

    return JSONResponse(content=checks, status_code=200 if checks["ready"] else 503)


# GET /health/info
# Gets: nothing
# Returns: service configuration summary
# Example:
#   curl http://localhost:8000/health/info
@router.get("/health/info")
async def system_info(request: Request):
    """
    System information and configuration status.
    """
    config = request.app.state.config
    return {
        "service": "concierge-api",
        "version": VERSION,
        "configuration": {
            "vapi_configured": config.has_vapi_config(),
            "webhook_mode": "hybrid" if config.has_webhook_url() else "polling",
            "kestra_enabled": config.KESTRA_ENABLED,
            "kestra_strict": config.KESTRA_STRICT,
            "debug_mode": config.DEBUG,
        },
        "features": {
            "outbound_calls": config.has_vapi_config(),
            "webhook_results": config.has_webhook_url(),
            "sms_notifications": config.has_twilio_config(),
            "provider_research": config.has_places_config(),
            "live_calls": config.LIVE_CALLS_ENABLED,
            "test_numbers": len(config.TEST_PHONE_NUMBERS),
        },
    }
