"""
HTTP exception types for the API server.
"""

from typing import Dict, Optional, Type

from subterm.exceptions import (
    CapacityExceeded,
    ProvisionFailed,
    SandboxGone,
    SessionNotFound,
    StoreUnavailable,
    SubtermError,
)


class APIError(Exception):
    """Base exception for API errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, request_id: Optional[str] = None) -> None:
        self.message = message
        self.request_id = request_id
        super().__init__(message)


class CapacityExceededError(APIError):
    """All sandbox slots are taken; retry later."""

    status_code = 503
    code = "capacity_exceeded"


class ProvisionFailedError(APIError):
    """Sandbox could not be started."""

    status_code = 500
    code = "provision_failed"


class SessionNotFoundError(APIError):
    """Session does not exist."""

    status_code = 404
    code = "session_not_found"


class SandboxGoneError(APIError):
    """Session existed but its sandbox is gone."""

    status_code = 410
    code = "sandbox_gone"


class StoreUnavailableError(APIError):
    """Shared state store failed."""

    status_code = 500
    code = "store_unavailable"


_API_ERRORS: Dict[Type[SubtermError], Type[APIError]] = {
    CapacityExceeded: CapacityExceededError,
    ProvisionFailed: ProvisionFailedError,
    SessionNotFound: SessionNotFoundError,
    SandboxGone: SandboxGoneError,
    StoreUnavailable: StoreUnavailableError,
}


def api_error_from(exc: SubtermError, request_id: Optional[str] = None) -> APIError:
    """Translate a core error into its HTTP counterpart (500 if unmapped)."""
    for core_type, api_type in _API_ERRORS.items():
        if isinstance(exc, core_type):
            return api_type(exc.message, request_id=request_id)
    error = APIError(exc.message, request_id=request_id)
    error.code = exc.code
    return error
