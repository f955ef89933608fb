from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from authbase.api.schemas import Envelope, ErrorBody
from authbase.logging import get_logger, sanitize_error_message
from authbase.service.errors import AccountLocked, CredentialError, ServiceError
from authbase.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    423: "account_locked",
    503: "service_unavailable",
    500: "server_error",
}

GENERIC_CREDENTIAL_MESSAGE = "authentication failed"


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json"),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI, *, surface_account_lock: bool = True) -> None:
    """Install envelope-producing handlers for service and storage errors.

    Credential errors collapse to one generic 401 so callers cannot tell an
    unknown email from a wrong password or a disabled account. A lockout is
    reported distinctly only when ``surface_account_lock`` is set.
    """

    @app.exception_handler(CredentialError)
    async def handle_credential_error(request: Request, exc: CredentialError):
        logger.warning(
            "credential_error",
            path=request.url.path,
            reason=type(exc).__name__,
        )
        if isinstance(exc, AccountLocked) and surface_account_lock:
            details = None
            if exc.locked_until is not None:
                details = {"locked_until": exc.locked_until.isoformat()}
            return _error_response(
                423,
                "account temporarily locked; try again later",
                details,
                code="account_locked",
            )
        return _error_response(
            401,
            GENERIC_CREDENTIAL_MESSAGE,
            code="unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code, headers=headers
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            store=exc.store,
            error=sanitize_error_message(exc.message),
        )
        return _error_response(503, "service temporarily unavailable", code="service_unavailable")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return _error_response(
            422,
            "request validation failed",
            [{"loc": list(err.get("loc", [])), "msg": err.get("msg")} for err in exc.errors()],
            code="validation_error",
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error("http_error", path=request.url.path, status_code=exc.status_code)
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.error(
            "unhandled_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")
