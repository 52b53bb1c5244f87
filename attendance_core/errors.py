from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


VALIDATION_ERROR = "VALIDATION_ERROR"
UNAUTHORIZED = "UNAUTHORIZED"
FORBIDDEN = "FORBIDDEN"
NOT_FOUND = "NOT_FOUND"
ALREADY_EXISTS = "ALREADY_EXISTS"
INVALID_STATE = "INVALID_STATE"
INVALID_STATUS = "INVALID_STATUS"
STORE_NOT_READY = "STORE_NOT_READY"
INTERNAL_ERROR = "INTERNAL_ERROR"
IP_RESTRICTED = "IP_RESTRICTED"
LOCATION_RESTRICTED = "LOCATION_RESTRICTED"
PUNCH_TOO_SOON = "PUNCH_TOO_SOON"


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class StoreNotReadyError(ApiError):
    """Backing tables are missing; a migration-ordering problem, not bad data."""

    def __init__(self, message: str = "Attendance tables missing."):
        super().__init__(503, STORE_NOT_READY, message)


class RuleSetError(ApiError):
    def __init__(self, message: str):
        super().__init__(422, VALIDATION_ERROR, message)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
