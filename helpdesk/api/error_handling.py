from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from helpdesk.api.schemas import Envelope, ErrorBody
from helpdesk.logging import get_logger
from helpdesk.service.errors import ServiceError
from helpdesk.storage.errors import StorageError

logger = get_logger(__name__)

# Fallback envelope codes when the raiser did not choose one
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    423: "account_locked",
}


def _render(
    request: Request,
    status_code: int,
    message: str,
    *,
    event: str,
    code: Optional[str] = None,
    details: Any = None,
    **log_fields: Any,
) -> JSONResponse:
    """Log a failed request (4xx as warning, 5xx as error) and build its envelope."""
    code = code or _STATUS_TO_CODE.get(status_code, "server_error")
    log = logger.error if status_code >= 500 else logger.warning
    log(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        error_code=code,
        message=message,
        **log_fields,
    )
    envelope = Envelope(
        success=False, error=ErrorBody(code=code, message=message, details=details)
    )
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def _unpack_http_detail(detail: Any) -> tuple[str, Optional[str], Any]:
    # Detail may already be an envelope: {"success": False, "error": {...}}
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        error = detail["error"]
        return error.get("message", "http error"), error.get("code"), error.get("details")
    return (detail if isinstance(detail, str) else "http error"), None, None


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure in the response envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        return _render(
            request,
            exc.status_code,
            exc.message,
            event="service_error",
            code=exc.error_code,
            details=exc.detail or None,
        )

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        return _render(
            request, 409, exc.message, event="storage_conflict", details=exc.detail or None
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return _render(
            request,
            400,
            "invalid request",
            event="request_validation_failed",
            details=errors,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message, code, details = _unpack_http_detail(exc.detail)
        return _render(
            request, exc.status_code, message, event="http_error", code=code, details=details
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        return _render(
            request,
            500,
            "internal server error",
            event="unhandled_exception",
            error_type=type(exc).__name__,
            exc_info=exc,
        )
