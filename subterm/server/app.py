"""
FastAPI application factory.

Usage:
    from subterm.server.app import create_app

    app = create_app()

Or run directly:
    uvicorn subterm.server:app
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from subterm import __version__
from subterm.exceptions import SubtermError
from subterm.isolation.audit import get_audit_logger
from subterm.server.config import get_settings
from subterm.server.exceptions import APIError, api_error_from
from subterm.server.middleware import (
    REQUEST_ID_HEADER,
    RequestTrackingMiddleware,
    setup_audit_logging,
)
from subterm.server.schemas import ErrorDetail, ErrorResponse
from subterm.server.routers import containers, health
from subterm.server.services.gateway import get_gateway

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the gateway with the app; drain every sandbox on the way out."""
    setup_audit_logging()
    gateway = get_gateway()
    await gateway.start()
    try:
        yield
    finally:
        report = await gateway.shutdown()
        logger.info(
            "Shutdown drained %d sandboxes (%d stopped, %d already gone, %d failed)",
            report.total,
            report.stopped,
            report.already_gone,
            report.failed,
        )
        get_audit_logger().close()


def _error_json(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    request_id: Optional[str] = None,
) -> JSONResponse:
    request_id = request_id or getattr(request.state, "request_id", None) or "unknown"
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, request_id=request_id))
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(),
        headers={REQUEST_ID_HEADER: request_id},
    )


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIError)
    async def on_api_error(request: Request, exc: APIError) -> JSONResponse:
        return _error_json(request, exc.status_code, exc.code, exc.message, exc.request_id)

    @app.exception_handler(SubtermError)
    async def on_lifecycle_error(request: Request, exc: SubtermError) -> JSONResponse:
        error = api_error_from(exc)
        if error.status_code >= 500:
            logger.error("%s: %s", exc.code, exc.message)
        return _error_json(request, error.status_code, error.code, error.message)

    @app.exception_handler(Exception)
    async def on_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error: %s", exc)
        return _error_json(request, 500, "internal_error", "An internal error occurred")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Subterm Gateway",
        description="Sandbox lifecycle manager for browser terminal sessions",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(RequestTrackingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.client_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )

    _install_error_handlers(app)

    app.include_router(health.router)
    app.include_router(containers.router)

    return app


# Default app instance for uvicorn
app = create_app()
