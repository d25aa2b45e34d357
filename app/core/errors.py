from __future__ import annotations

from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException


class LoanServiceError(Exception):
    """Base class for failures raised by the loan lifecycle core."""

    kind = "loan_service_error"
    status_code = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class CollaboratorUnavailable(LoanServiceError):
    """An external client (ledger, documents, storage, messaging) could not be built."""

    kind = "collaborator_unavailable"
    status_code = 503


class RecordNotFound(LoanServiceError):
    kind = "not_found"
    status_code = 404


class RenderError(LoanServiceError):
    """A fatal document rendering step failed; ``step`` names which one."""

    kind = "render_failed"

    def __init__(self, step: str, message: str, **details: Any) -> None:
        super().__init__(message, step=step, **details)
        self.step = step


class OrdinalConflict(LoanServiceError):
    """The ledger row computed for a new ordinal was already occupied."""

    kind = "ordinal_conflict"
    status_code = 409


class PipelineBusy(LoanServiceError):
    kind = "pipeline_busy"
    status_code = 503


class RunNotRetryable(LoanServiceError):
    """Only failed pipeline runs can be re-driven."""

    kind = "run_not_retryable"
    status_code = 409


def _default_code(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        422: "unprocessable_entity",
        429: "rate_limited",
        503: "service_unavailable",
    }
    return mapping.get(status_code, "http_error")


def _default_message(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Request failed"


def _normalize_details(details: Any) -> dict:
    if details is None:
        return {}
    if isinstance(details, dict):
        return details
    if isinstance(details, list):
        return {"errors": details}
    if isinstance(details, str):
        return {"detail": details}
    return {"detail": str(details)}


def _build_response(
    status_code: int,
    code: str,
    message: str,
    details: Any | None = None,
) -> JSONResponse:
    payload = {
        "code": code,
        "message": message,
        "data": None,
        "details": _normalize_details(details),
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        return _build_response(exc.status_code, _default_code(exc.status_code), detail, {"detail": detail})
    return _build_response(
        exc.status_code,
        _default_code(exc.status_code),
        _default_message(exc.status_code),
        detail,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    message = "Validation failed"
    if errors:
        first = errors[0] or {}
        loc = first.get("loc") or []
        msg = first.get("msg") or "Validation failed"
        # Drop the request section (body/query/path) from the location
        loc_parts = [str(part) for part in loc if part not in {"body", "query", "path"}]
        if loc_parts:
            message = f"{'.'.join(loc_parts)}: {msg}"
        else:
            message = str(msg)
    return _build_response(
        status_code=422,
        code="validation_error",
        message=message,
        details={"errors": errors},
    )


async def loan_service_exception_handler(request: Request, exc: LoanServiceError) -> JSONResponse:
    return _build_response(
        status_code=exc.status_code,
        code=exc.kind,
        message=exc.message,
        details=exc.details,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return _build_response(
        status_code=500,
        code="internal_server_error",
        message="Internal server error",
        details={},
    )


async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    details = getattr(exc, "detail", None)
    response = _build_response(
        status_code=429,
        code="rate_limited",
        message=_default_message(429),
        details=details,
    )
    headers = getattr(exc, "headers", None)
    if isinstance(headers, dict):
        response.headers.update(headers)
    return response


def register_exception_handlers(app) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)
    app.add_exception_handler(LoanServiceError, loan_service_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
