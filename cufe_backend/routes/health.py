"""
Health check route.

PUBLIC endpoint (no authentication) for load balancers and deployment checks.
"""

from fastapi import APIRouter

from cufe_backend.schemas.health import HealthResponse
from cufe_backend.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["system"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check endpoint",
    status_code=200,
)
async def health_check() -> HealthResponse:
    """Return {"status": "ok"} while the API is responding."""
    logger.debug("Health check endpoint called")
    return HealthResponse(status="ok")
