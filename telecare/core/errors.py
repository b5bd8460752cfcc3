"""
Error taxonomy for the alerting pipeline.

Every error carries a machine readable ``code`` and a ``context`` dict with the
identifiers a caller needs for remediation (patient_id, alert_id, vital_name).
None of them is fatal to the process: only the offending reading, request or
connection is affected.
"""

from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

log = structlog.get_logger()


class AlertingError(Exception):
    code = "alerting_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {key: value for key, value in context.items() if value is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


class ValidationError(AlertingError):
    """Malformed reading or vital name; only that reading is rejected."""

    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class AuthError(AlertingError):
    """Bad or expired credential; the connection attempt is terminated."""

    code = "auth_failed"
    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDeniedError(AlertingError):
    code = "permission_denied"
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AlertingError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class TransportError(AlertingError):
    """Network-level failure; drives the client reconnect policy."""

    code = "transport_error"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


ERRORS_BY_CODE: dict[str, type[AlertingError]] = {
    error.code: error
    for error in (
        ValidationError,
        AuthError,
        PermissionDeniedError,
        NotFoundError,
        TransportError,
    )
}


def error_from_payload(payload: dict[str, Any]) -> AlertingError:
    """Rebuild a typed error from an ``error`` frame sent by the server."""
    error_cls = ERRORS_BY_CODE.get(payload.get("code", ""), AlertingError)
    context = payload.get("context") or {}
    return error_cls(payload.get("message", "request failed"), **context)


async def alerting_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, AlertingError)
    log.warning(
        "request rejected",
        code=exc.code,
        error=exc.message,
        path=request.url.path,
        **exc.context,
    )
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_dict()},
        headers=headers,
    )


async def request_validation_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RequestValidationError)
    # Raw input values stay out of logs and responses
    errors = jsonable_encoder(
        [{key: err[key] for key in ("loc", "msg", "type") if key in err} for err in exc.errors()]
    )
    log.warning("request rejected", code=ValidationError.code, path=request.url.path, errors=errors)
    error = ValidationError("request validation failed", errors=errors)
    return JSONResponse(status_code=error.status_code, content={"error": error.to_dict()})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AlertingError, alerting_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
