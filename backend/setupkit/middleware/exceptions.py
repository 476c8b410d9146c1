"""Setup error taxonomy and the exception handlers that render it.

Every failure the operator can see is one of:

  SetupValidationError    missing/invalid field, surfaced inline
  ConnectivityError       cannot reach the database, edit and retry
  ContainerConflictError  managed container already exists, operator decides
  ProvisioningError       schema could not be applied, retry once reachable
  PreconditionError       an operation was called out of order (caller bug)

Components translate raw driver and subprocess failures into these kinds
at their boundary, so the messages here are always operator-safe.
"""

import logging
import traceback
from typing import Any, Union

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

# status.HTTP_422_UNPROCESSABLE_ENTITY is deprecated in current starlette
HTTP_422_UNPROCESSABLE = 422


class SetupError(Exception):
    """Base exception for setup/bootstrap errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class SetupValidationError(SetupError):
    """A required field is missing or a value is not acceptable."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(
            message=message,
            status_code=HTTP_422_UNPROCESSABLE,
            error_code="VALIDATION_ERROR",
            details={"field": field} if field else None,
        )
        self.field = field


class ConnectivityError(SetupError):
    """The database could not be reached with the given connection."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="CONNECTIVITY_ERROR",
        )


class ContainerConflictError(SetupError):
    """A managed container already exists; the operator must choose what to do."""

    def __init__(self, message: str, container_status: dict, resolutions: list[str]):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="CONTAINER_CONFLICT",
            details={"container": container_status, "resolutions": resolutions},
        )
        self.container_status = container_status
        self.resolutions = resolutions


class ProvisioningError(SetupError):
    """Schema application failed.

    `reason` is one of: cannot_connect, schema_conflict,
    insufficient_privileges, incomplete, failed.
    """

    def __init__(self, message: str, reason: str = "failed"):
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code=f"PROVISIONING_{reason.upper()}",
            details={"reason": reason},
        )
        self.reason = reason


class PreconditionError(SetupError):
    """An orchestrator operation was invoked out of order."""

    def __init__(self, message: str, precondition: str):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="PRECONDITION_FAILED",
            details={"precondition": precondition},
        )
        self.precondition = precondition


def error_envelope(
    status_code: int,
    code: str,
    message: str,
    details: Union[dict, list, None] = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Render `{"error": {"code", "message", "details"}}`; `details` only when set."""
    body: dict[str, Any] = {"code": code, "message": message}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body}, headers=headers)


def _where(request: Request) -> dict[str, str]:
    return {"path": request.url.path, "method": request.method}


async def setup_exception_handler(request: Request, exc: SetupError) -> JSONResponse:
    """Precondition failures are caller bugs and log as errors."""
    extra = {"error_code": exc.error_code, **_where(request)}
    if isinstance(exc, PreconditionError):
        logger.error(
            "Invariant violation (%s): %s", exc.precondition, exc.message, extra=extra
        )
    else:
        logger.warning("Setup error: %s - %s", exc.error_code, exc.message, extra=extra)
    return error_envelope(exc.status_code, exc.error_code, exc.message, exc.details)


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException],
) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "HTTP %s on %s: %s", exc.status_code, request.url.path, exc.detail, extra=_where(request)
        )
    return error_envelope(
        exc.status_code,
        f"HTTP_{exc.status_code}",
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError],
) -> JSONResponse:
    """Request body problems; the first offending field is lifted into `details.field`."""
    errors = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part != "body"),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(
        "Rejected request to %s: %d invalid field(s)", request.url.path, len(errors), extra=_where(request)
    )

    details: dict[str, Any] = {"errors": errors}
    if errors:
        details["field"] = errors[0]["field"]
    message = errors[0]["message"] if len(errors) == 1 else "Some fields are not valid."
    return error_envelope(HTTP_422_UNPROCESSABLE, "VALIDATION_ERROR", message, details)


async def state_store_exception_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """The local state database is locked, missing or out of disk."""
    logger.error("State store unavailable on %s: %s", request.url.path, exc, extra=_where(request))
    return error_envelope(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "STATE_UNAVAILABLE",
        "Setup state storage is temporarily unavailable. Try again shortly.",
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled %s on %s",
        type(exc).__name__,
        request.url.path,
        extra={**_where(request), "traceback": traceback.format_exc()},
        exc_info=exc,
    )
    return error_envelope(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_SERVER_ERROR",
        "Setup hit an unexpected error. Check the server log and try again.",
    )


def register_exception_handlers(app):
    handlers = (
        (SetupError, setup_exception_handler),
        (HTTPException, http_exception_handler),
        (StarletteHTTPException, http_exception_handler),
        (RequestValidationError, validation_exception_handler),
        (ValidationError, validation_exception_handler),
        (OperationalError, state_store_exception_handler),
        (Exception, unhandled_exception_handler),
    )
    for exc_class, handler in handlers:
        app.add_exception_handler(exc_class, handler)
