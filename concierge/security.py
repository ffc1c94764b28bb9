"""
Security utilities.
- API key authentication for operator endpoints
"""

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from concierge.logging_config import get_logger

logger = get_logger(__name__)

# API Key authentication scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(request: Request, api_key: str = Security(api_key_header)) -> str:
    """
    Verify API key for protected endpoints.

    Usage:
        @router.get("/cache/stats")
        async def cache_stats(api_key: str = Depends(verify_api_key)):
            ...
    """
    expected = request.app.state.config.API_KEY
    if not expected:
        # If no API key is configured, allow access (development mode)
        return "development"

    if api_key != expected:
        logger.warning("api_key_authentication_failed", provided_key=api_key[:8] if api_key else None)
        raise HTTPException(
            status_code=403,
            detail="Invalid or missing API key"
        )

    return api_key
