"""
Health check endpoint schemas.
"""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response model for GET /health (public, no auth)."""

    status: str = Field(
        default="ok",
        description="Health status of the API (always 'ok' if responding)",
        examples=["ok"]
    )
    service: str = Field(default="cufe-invoice-backend")
