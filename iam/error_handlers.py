"""Translation of service outcomes and exceptions into envelope responses."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic_core import to_jsonable_python
from starlette.exceptions import HTTPException as StarletteHTTPException

from iam.core.results import Outcome, ServiceError, ServiceResult
from iam.schemas.envelope import AnyEnvelope

UNEXPECTED_ERROR = "An unexpected error occurred."
VALIDATION_FAILED = "One or more validation errors occurred."

_STATUS_BY_OUTCOME: dict[Outcome, int] = {
    Outcome.OK: 200,
    Outcome.FAILED: 400,
    Outcome.CONFLICT: 400,
    Outcome.VALIDATION_FAILED: 400,
    Outcome.UNAUTHORIZED: 401,
    Outcome.FORBIDDEN: 403,
    Outcome.NOT_FOUND: 404,
}

_AUTH_PATH_PREFIXES = ("/api/authentications", "/api/external-links", "/api/sessions")

logger = structlog.get_logger(__name__)


def status_for_outcome(outcome: Outcome) -> int:
    """Map an outcome tag to its HTTP status code."""
    return _STATUS_BY_OUTCOME.get(outcome, 500)


def envelope_response(
    status_code: int,
    success: bool,
    message: str,
    data: Any = None,
    errors: dict[str, list[str]] | None = None,
) -> JSONResponse:
    """Build the standard envelope payload."""
    envelope = AnyEnvelope(
        success=success,
        message=message,
        data=to_jsonable_python(data) if data is not None else None,
        errors=errors,
    )
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def _log_auth_failure(request: Request, status_code: int, message: str) -> None:
    """Emit WARNING-level log for client-side failures on auth paths."""
    if status_code < 400 or status_code >= 500:
        return
    if not request.url.path.startswith(_AUTH_PATH_PREFIXES):
        return
    user_state = getattr(request.state, "user", None)
    user_id = user_state.get("user_id") if isinstance(user_state, dict) else None
    logger.warning(
        "auth_failure",
        event_type="auth_failure",
        user_id=user_id,
        status_code=status_code,
        detail=message,
        path=request.url.path,
        method=request.method,
    )


def to_response(result: ServiceResult[Any], request: Request | None = None) -> JSONResponse:
    """Translate a service result into its envelope response."""
    status_code = status_for_outcome(result.outcome)
    if request is not None and not result.success:
        _log_auth_failure(request, status_code, result.message)
    return envelope_response(
        status_code=status_code,
        success=result.success,
        message=result.message,
        data=result.data,
        errors=result.errors,
    )


def _field_errors(exc: RequestValidationError) -> dict[str, list[str]]:
    """Group validation messages by dotted field path."""
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ())]
        if location and location[0] in {"body", "query", "path", "header"} and len(location) > 1:
            location = location[1:]
        key = ".".join(location) or "request"
        errors.setdefault(key, []).append(str(error.get("msg", "Invalid value.")))
    return errors


def register_exception_handlers(app: FastAPI, environment: str) -> None:
    """Register global exception handlers enforcing the envelope contract."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
        """Translate thrown not-found and authentication-context errors."""
        status_code = status_for_outcome(exc.outcome)
        _log_auth_failure(request, status_code, exc.message)
        return envelope_response(status_code=status_code, success=False, message=exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Normalize framework HTTP exceptions to the envelope."""
        message = exc.detail if isinstance(exc.detail, str) else "Request failed."
        _log_auth_failure(request, exc.status_code, message)
        return envelope_response(status_code=exc.status_code, success=False, message=message)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_exception(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Map request validation errors to field-keyed 400 envelopes."""
        errors = _field_errors(exc)
        _log_auth_failure(request, 400, VALIDATION_FAILED)
        return envelope_response(
            status_code=400, success=False, message=VALIDATION_FAILED, errors=errors
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
        """Mask internal errors behind a generic message."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc) if environment == "development" else type(exc).__name__,
        )
        return envelope_response(status_code=500, success=False, message=UNEXPECTED_ERROR)
