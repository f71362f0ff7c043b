"""Health check endpoints."""

from fastapi import APIRouter

from billsync.core.config import settings
from billsync.schemas.health import HealthResponse

router = APIRouter()


@router.get("", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check if the API is healthy.

    Returns:
    --------
        HealthResponse: The status of the API and the environment it runs in.
    """
    return HealthResponse(status="healthy", environment=settings.ENVIRONMENT.value)
