"""
Sandbox container endpoints.

POST /api/container - Provision a sandbox for a new session
GET /api/containers - List active sessions
GET /api/container/{id} - Session details plus live sandbox status
DELETE /api/container/{id} - Stop the sandbox and end the session
POST /api/container/{id}/activity - Record session activity
"""
from fastapi import APIRouter

from subterm.sandbox.registry import SessionRecord
from subterm.server.middleware import get_request_id
from subterm.server.schemas import (
    ActivityResponse,
    ContainerStatusResponse,
    CreateContainerResponse,
    DeleteContainerResponse,
    ListContainersResponse,
    SessionInfo,
)
from subterm.server.services.gateway import get_gateway


router = APIRouter(prefix="/api", tags=["containers"])


def _session_info(record: SessionRecord) -> SessionInfo:
    return SessionInfo(
        session_id=record.session_id,
        sandbox_name=record.sandbox_name,
        workspace_path=record.workspace_path,
        created_at=record.created_at,
        last_active=record.last_active,
    )


@router.post(
    "/container",
    response_model=CreateContainerResponse,
    response_model_by_alias=True,
)
async def create_container() -> CreateContainerResponse:
    """
    Provision a sandbox for a new session.

    Returns 503 when every sandbox slot is taken.
    """
    record = await get_gateway().create_container()
    return CreateContainerResponse(
        session_id=record.session_id,
        workspace_path=record.workspace_path,
    )


@router.get(
    "/containers",
    response_model=ListContainersResponse,
    response_model_by_alias=True,
)
async def list_containers() -> ListContainersResponse:
    sessions = await get_gateway().list_sessions()
    return ListContainersResponse(
        count=len(sessions),
        sessions=[_session_info(record) for record in sessions],
    )


@router.get(
    "/container/{session_id}",
    response_model=ContainerStatusResponse,
    response_model_by_alias=True,
)
async def get_container(session_id: str) -> ContainerStatusResponse:
    """
    Session details plus the sandbox's live runtime status.

    Returns 410 when the session is registered but its sandbox is gone;
    the stale session is removed in the process.
    """
    record, state = await get_gateway().describe(session_id)
    return ContainerStatusResponse(
        **_session_info(record).model_dump(),
        status=state.status,
    )


@router.delete(
    "/container/{session_id}",
    response_model=DeleteContainerResponse,
    response_model_by_alias=True,
)
async def delete_container(session_id: str) -> DeleteContainerResponse:
    await get_gateway().destroy(session_id, request_id=get_request_id())
    return DeleteContainerResponse(message="Container stopped", session_id=session_id)


@router.post(
    "/container/{session_id}/activity",
    response_model=ActivityResponse,
    response_model_by_alias=True,
)
async def record_activity(session_id: str) -> ActivityResponse:
    """Heartbeat from the terminal client; postpones inactivity eviction."""
    record = await get_gateway().touch(session_id)
    return ActivityResponse(session_id=record.session_id, last_active=record.last_active)
