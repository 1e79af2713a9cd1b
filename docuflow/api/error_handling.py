from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from docuflow.api.schemas import Envelope, ErrorBody
from docuflow.logging import get_logger
from docuflow.service.errors import ServiceError
from docuflow.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# codes for errors that do not come from the service layer
_STATUS_TO_CODE = {
    400: "invalid_input",
    401: "unauthorized",
    403: "forbidden",
    409: "conflict",
    429: "rate_limited",
    502: "delivery_error",
}


def _code_for(status_code: int) -> str:
    fallback = "invalid_input" if status_code < 500 else "server_error"
    return _STATUS_TO_CODE.get(status_code, fallback)


def error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: str | None = None,
) -> JSONResponse:
    body = ErrorBody(code=code or _code_for(status_code), message=message, details=details or None)
    envelope = Envelope(status="error", error=body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def _log_failure(event: str, request: Request, status_code: int, **fields: Any) -> None:
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope with a stable code."""

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        # submitted values are dropped; they may hold passwords or tokens
        details = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        _log_failure(
            "request_validation_failed",
            request,
            400,
            fields=[".".join(item["loc"]) for item in details],
        )
        return error_response(400, "invalid request", details, code="invalid_input")

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        # detail names internal ids; it stays in the log
        _log_failure("constraint_violation", request, 409, message=exc.message, detail=exc.detail)
        return error_response(409, exc.message, code="conflict")

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log_failure(
            "service_error",
            request,
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        _log_failure("http_error", request, exc.status_code, message=message)
        details = exc.detail if isinstance(exc.detail, dict) else None
        return error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, "internal server error", code="server_error")
