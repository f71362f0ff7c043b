"""Health check response schemas."""

from typing import Literal

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Response from the liveness probe."""

    status: Literal["healthy"]
    environment: str

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "healthy",
                "environment": "local",
            }
        }
    }
