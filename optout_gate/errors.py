"""
Error taxonomy for the opt-out service and its FastAPI exception handlers.

Every error renders as {"error": <message>, ...extra} so existing clients
keep parsing the same body shape.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class OptOutGateError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_body(self) -> dict:
        return {"error": self.message, **self.extra}


class ValidationError(OptOutGateError):
    """Missing or malformed request fields."""

    status_code = status.HTTP_400_BAD_REQUEST


class PolicyRejection(OptOutGateError):
    """The recipient has opted out; the transport was never called."""

    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, to: str):
        super().__init__("Number is opted out", to=to, blocked=True, status="rejected")
        self.to = to


class UpstreamTransportError(OptOutGateError):
    """
    The SMS API failed or answered with a non-success status.

    When the provider supplied its own error code the request is answered
    with 400 and that code, otherwise with 500.
    """

    def __init__(self, message: str, error_code: Optional[str] = None, **extra: Any):
        if error_code is not None:
            extra = {"status": "failed", "errorCode": error_code, **extra}
        super().__init__(message, **extra)
        self.error_code = error_code

    @property
    def status_code(self) -> int:
        if self.error_code is not None:
            return status.HTTP_400_BAD_REQUEST
        return status.HTTP_500_INTERNAL_SERVER_ERROR


class NotFoundError(OptOutGateError):
    """A referenced configuration or sender id does not exist."""

    status_code = status.HTTP_404_NOT_FOUND


def missing_fields(**fields: Any) -> list[str]:
    """Names of the given fields whose value is empty."""
    return [name for name, value in fields.items() if not value]


def require_fields(**fields: Any) -> None:
    """
    Raise ValidationError naming every empty field.

    Field names are passed as keyword arguments in the order they should
    be reported, e.g. require_fields(to=to, **{"from": sender}, text=text).
    """
    missing = missing_fields(**fields)
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


# =============================================================================
# FastAPI handlers
# =============================================================================

async def _handle_gate_error(request: Request, exc: OptOutGateError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        fields.append(".".join(loc) or "body")
    message = f"Missing or invalid fields: {', '.join(dict.fromkeys(fields))}"
    logger.warning(f"{request.method} {request.url.path} rejected: {message}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OptOutGateError, _handle_gate_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(Exception, _handle_unexpected)
