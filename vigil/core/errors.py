"""
API error responses.

Every error leaves the API with the same body:

    {"error": {"code": ..., "message": ..., "details": {...}, "request_id": ...}}

``details`` and ``request_id`` are omitted when empty.
"""
import logging
import uuid
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from vigil.core.exceptions import PlaybookNotFoundError, PredicateSyntaxError

logger = logging.getLogger(__name__)


class ErrorCode:
    """Machine-readable codes carried in ``error.code``."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


def error_body(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    if request_id:
        error["request_id"] = request_id
    return {"error": error}


class HTTPError(HTTPException):
    """
    HTTPException rendered with the standard error body.

    Usage:
        raise HTTPError(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            message="Binding not found",
            details={"binding_id": 123}
        )
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


async def http_error_handler(request: Request, exc: HTTPError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code, exc.message, exc.details, _request_id(request)),
    )


async def redis_error_handler(request: Request, exc: RedisError) -> JSONResponse:
    """Redis outages that escape a route surface as 503 instead of a bare 500."""
    logger.error(f"Redis error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=error_body(
            ErrorCode.SERVICE_UNAVAILABLE, "Queue backend unavailable", request_id=_request_id(request)
        ),
    )


def not_found(resource: str, details: dict[str, Any] | None = None) -> HTTPError:
    return HTTPError(
        status_code=status.HTTP_404_NOT_FOUND,
        code=ErrorCode.NOT_FOUND,
        message=f"{resource} not found",
        details=details,
    )


def validation_error(message: str, details: dict[str, Any] | None = None) -> HTTPError:
    return HTTPError(
        status_code=status.HTTP_400_BAD_REQUEST,
        code=ErrorCode.VALIDATION_ERROR,
        message=message,
        details=details,
    )


def predicate_error(exc: PredicateSyntaxError) -> HTTPError:
    """400 carrying the predicate and the offending position."""
    return validation_error(
        f"Invalid predicate: {exc.message}",
        details={"predicate": exc.predicate, "position": exc.position},
    )


def unknown_playbook(exc: PlaybookNotFoundError) -> HTTPError:
    return validation_error(str(exc), details={"playbook_id": exc.playbook_id})


def conflict(message: str, details: dict[str, Any] | None = None) -> HTTPError:
    return HTTPError(
        status_code=status.HTTP_409_CONFLICT,
        code=ErrorCode.CONFLICT,
        message=message,
        details=details,
    )


def service_unavailable(message: str, details: dict[str, Any] | None = None) -> HTTPError:
    return HTTPError(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        code=ErrorCode.SERVICE_UNAVAILABLE,
        message=message,
        details=details,
    )
