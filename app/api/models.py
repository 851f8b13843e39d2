"""Response models for the relay's FastAPI endpoints.

The webhook itself answers with an empty body; these models cover the
operational endpoints.
"""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response from /health endpoint.

    Attributes:
        status: Health status (healthy, degraded, unhealthy)
        orchestrator_ready: Whether completion and messaging clients are configured
        session_store_ok: Whether the session backend is operational
    """

    status: str = Field(..., description="Overall health status")
    orchestrator_ready: bool = Field(..., description="Conversation orchestrator configured")
    session_store_ok: bool = Field(..., description="Session store operational status")


class ErrorResponse(BaseModel):
    """Body of non-2xx responses raised through HTTPException."""

    detail: str = Field(..., description="Human-readable error description")
