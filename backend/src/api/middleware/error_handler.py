"""
Exception taxonomy and FastAPI exception handlers.

Services raise `AppException` subclasses; each carries its HTTP status as a
class attribute. Every handler renders the same envelope:

    {"error": <message>, "correlation_id": <id>, "details": {...}}

`details` is omitted when empty.
"""
import logging
from typing import Optional, Dict, Any, List
from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.lib.logging import get_logger

logger = get_logger(__name__)


class AppException(Exception):
    """Base application exception."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class BadRequestException(AppException):
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictException(AppException):
    status_code = status.HTTP_409_CONFLICT


class PersistenceError(AppException):
    """Storage became unavailable while a campaign was being dispatched."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ServiceUnavailableException(AppException):
    """An external collaborator (text generation, vendor API) is not configured or down."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class UpstreamServiceError(AppException):
    """An external collaborator answered with an error."""
    status_code = status.HTTP_502_BAD_GATEWAY


class NotFoundException(AppException):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, resource_id: Optional[Any] = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(message, details={"resource": resource, "resource_id": resource_id})


class RuleValidationError(BadRequestException):
    """
    Segment rules are structurally malformed or compile to an empty predicate.

    `errors` is a list of {"path", "msg"} entries; path is a JSON-pointer-like
    location inside the submitted rule tree (e.g. "conditions/1/value").
    """

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        self.errors = errors or []
        super().__init__(message, details={"errors": self.errors})


class ReconciliationConflict(ConflictException):
    """A delivery receipt contradicts the message's already-terminal outcome."""

    def __init__(self, message_id: int, current_status: str, incoming_status: str):
        self.message_id = message_id
        self.current_status = current_status
        self.incoming_status = incoming_status
        super().__init__(
            f"Message {message_id} is already '{current_status}'; refusing receipt '{incoming_status}'",
            details={
                "message_id": message_id,
                "current_status": current_status,
                "incoming_status": incoming_status,
            },
        )


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    exc_info: Optional[BaseException] = None,
) -> JSONResponse:
    correlation_id = getattr(request.state, "correlation_id", "unknown")

    logger.log(
        logging.ERROR if status_code >= 500 else logging.WARNING,
        f"{request.method} {request.url.path} failed: {message}",
        extra={
            "correlation_id": correlation_id,
            "status_code": status_code,
            "path": request.url.path,
            "method": request.method,
            "details": details or {},
        },
        exc_info=exc_info,
    )

    content: Dict[str, Any] = {"error": message, "correlation_id": correlation_id}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    return _error_response(request, exc.status_code, exc.message, exc.details)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body/query validation failures, reported as 422 with locations."""
    errors = [
        {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        {"errors": errors},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(request, exc.status_code, str(exc.detail))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected: full trace in the log, generic message to the client."""
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        exc_info=exc,
    )
