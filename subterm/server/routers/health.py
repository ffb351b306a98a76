"""
Health check endpoint.

Provides basic health status for load balancers and monitoring.
"""
from fastapi import APIRouter

from subterm import __version__
from subterm.server.schemas import CapacityInfo, HealthResponse
from subterm.server.services.gateway import get_gateway


router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Reports "degraded" when the state store does not answer a ping.
    """
    gateway = get_gateway()
    healthy = await gateway.healthy()
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        store=gateway.store_backend,
        capacity=CapacityInfo(max=gateway.max_sandboxes),
    )
