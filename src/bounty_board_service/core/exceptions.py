"""Error taxonomy and exception handlers for consistent error responses."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar, cast

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from bounty_board_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler


class ServiceError(Exception):
    """
    Base error carrying a machine readable code, an HTTP status and details.

    ``details`` holds whatever the caller needs to decide between retrying,
    escalating or surfacing the error (task_id, current status, constraint).
    """

    category: ClassVar[str] = "service"
    retryable: ClassVar[bool] = False

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, Any] = details if details is not None else {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(error={self.error!r}, message={self.message!r})"


class _TypedError(ServiceError):
    """ServiceError subclass with a fixed code and status."""

    code: ClassVar[str]
    http_status: ClassVar[int]

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(
            self.code,
            message,
            self.http_status,
            {key: value for key, value in details.items() if value is not None},
        )


# --- authorization -------------------------------------------------------


class NotMember(_TypedError):
    """The acting user has no grant on the installation."""

    category = "authorization"
    code = "NOT_MEMBER"
    http_status = 403


class PermissionDenied(_TypedError):
    """The acting user lacks the required permission code."""

    category = "authorization"
    code = "PERMISSION_DENIED"
    http_status = 403


# --- state ---------------------------------------------------------------


class InvalidTransition(_TypedError):
    category = "state"
    code = "INVALID_TRANSITION"
    http_status = 409


class AlreadyAccepted(_TypedError):
    category = "state"
    code = "ALREADY_ACCEPTED"
    http_status = 409


class NotReadyToSettle(_TypedError):
    category = "state"
    code = "NOT_READY_TO_SETTLE"
    http_status = 409


class DuplicateSubmission(_TypedError):
    category = "state"
    code = "DUPLICATE_SUBMISSION"
    http_status = 409


class InvalidApplicant(_TypedError):
    category = "state"
    code = "INVALID_APPLICANT"
    http_status = 409


# --- settlement ----------------------------------------------------------


class SettlementRetryable(_TypedError):
    """Transfer outcome unknown or transiently failed; settle may be re-invoked."""

    category = "settlement"
    retryable = True
    code = "SETTLEMENT_RETRYABLE"
    http_status = 503


class SettlementFailed(_TypedError):
    """Transfer failed permanently; an operator must intervene before retrying."""

    category = "settlement"
    code = "SETTLEMENT_FAILED"
    http_status = 502


# --- consistency ---------------------------------------------------------


class ConcurrentModification(_TypedError):
    """Optimistic version check failed; re-read and retry the whole operation."""

    category = "consistency"
    retryable = True
    code = "CONCURRENT_MODIFICATION"
    http_status = 409


# --- lookup / validation -------------------------------------------------


class NotFound(ServiceError):
    """A referenced entity does not exist. The code names the entity."""

    category = "lookup"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            f"{entity.upper()}_NOT_FOUND",
            f"{entity.capitalize()} not found",
            404,
            {f"{entity}_id": entity_id},
        )


class ValidationFailed(ServiceError):
    """Input or business-rule validation failure that is not a state error."""

    category = "validation"

    def __init__(self, error: str, message: str, status_code: int = 400, **details: Any) -> None:
        super().__init__(
            error,
            message,
            status_code,
            {key: value for key, value in details.items() if value is not None},
        )


# --- HTTP rendering ------------------------------------------------------


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle ServiceError exceptions."""
    logger = get_logger(__name__)
    logger.warning(
        "Service error",
        extra={
            "error_code": exc.error,
            "category": exc.category,
            "status_code": exc.status_code,
            "path": str(request.url.path),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "details": exc.details},
    )


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "details": {},
        },
    )


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTP exceptions (e.g., 405 from router)."""
    if exc.status_code == 405:
        return JSONResponse(
            status_code=405,
            content={
                "error": "METHOD_NOT_ALLOWED",
                "message": "Method not allowed",
                "details": {},
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "HTTP_ERROR", "message": str(exc.detail), "details": {}},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
