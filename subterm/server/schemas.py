"""
Pydantic models for API request/response schemas.

Field names are snake_case in Python and camelCase on the wire.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Serializes with camelCase aliases, accepts either form on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Container Endpoint Schemas
# =============================================================================


class CreateContainerResponse(CamelModel):
    """Response body for POST /api/container."""

    session_id: str = Field(..., description="Opaque session identifier")
    workspace_path: str = Field(..., description="Workspace path inside the sandbox")


class SessionInfo(CamelModel):
    """One active session as stored in the registry."""

    session_id: str = Field(..., description="Session identifier")
    sandbox_name: str = Field(..., description="Runtime name of the sandbox")
    workspace_path: str = Field(..., description="Workspace path inside the sandbox")
    created_at: int = Field(..., description="Creation time, epoch milliseconds")
    last_active: int = Field(..., description="Last activity, epoch milliseconds")


class ListContainersResponse(CamelModel):
    """Response body for GET /api/containers."""

    count: int = Field(..., description="Number of active sessions")
    sessions: List[SessionInfo] = Field(..., description="Active sessions")


class ContainerStatusResponse(SessionInfo):
    """Response body for GET /api/container/{id}."""

    status: str = Field(..., description="Runtime status of the sandbox")


class DeleteContainerResponse(CamelModel):
    """Response body for DELETE /api/container/{id}."""

    message: str = Field(..., description="Outcome")
    session_id: str = Field(..., description="Session identifier")


class ActivityResponse(CamelModel):
    """Response body for POST /api/container/{id}/activity."""

    session_id: str = Field(..., description="Session identifier")
    last_active: int = Field(..., description="Updated last activity, epoch milliseconds")


# =============================================================================
# Health Endpoint Schemas
# =============================================================================


class CapacityInfo(BaseModel):
    max: int = Field(..., description="Capacity cap")


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str = Field(..., description="Health status")
    version: str = Field(..., description="API version")
    store: str = Field(..., description="State store backend")
    capacity: CapacityInfo


# =============================================================================
# Error Schemas
# =============================================================================


class ErrorDetail(BaseModel):
    """Error detail."""

    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
    request_id: Optional[str] = Field(None, description="Request ID for tracing")


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: ErrorDetail
