from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from legalhub.core.errors import (
    AuthDeniedError,
    InvalidRequestError,
    ProtocolViolationError,
    RecordNotFoundError,
    VendorConfigError,
    VendorError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "VENDOR_ERROR",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def error_body(message: str, code: str, **fields: Any) -> dict[str, Any]:
    # Human-readable "error" first; structured fields sit beside it.
    return {"error": message, "code": code, **fields}


async def auth_denied_handler(request: Request, exc: AuthDeniedError) -> JSONResponse:
    # Rate-limit denials repeat the window in headers so clients can back off.
    headers: dict[str, str] = {}
    rate_limit = exc.details.get("rate_limit")
    if rate_limit:
        headers = {
            "X-RateLimit-Limit": str(rate_limit["limit"]),
            "X-RateLimit-Remaining": str(rate_limit["remaining"]),
            "X-RateLimit-Reset": str(rate_limit["reset_at"]),
        }
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    body = error_body(exc.message, _default_code(exc.status_code), reason=exc.reason, **exc.details)
    return JSONResponse(content=body, status_code=exc.status_code, headers=headers)


async def invalid_request_handler(request: Request, exc: InvalidRequestError) -> JSONResponse:
    return JSONResponse(content=error_body(str(exc), "BAD_REQUEST"), status_code=400)


async def protocol_violation_handler(request: Request, exc: ProtocolViolationError) -> JSONResponse:
    # Distinct code so integrators can tell a state-tracking bug from other conflicts.
    return JSONResponse(content=error_body(str(exc), "PROTOCOL_VIOLATION"), status_code=409)


async def not_found_handler(request: Request, exc: RecordNotFoundError) -> JSONResponse:
    return JSONResponse(content=error_body(str(exc), "NOT_FOUND"), status_code=404)


async def vendor_error_handler(request: Request, exc: VendorError) -> JSONResponse:
    # Only admin routes call the vendor inline; surface the failure as a gateway error.
    logger.warning("vendor_error path=%s", request.url.path, exc_info=exc)
    code = "VENDOR_CONFIG_ERROR" if isinstance(exc, VendorConfigError) else "VENDOR_ERROR"
    return JSONResponse(content=error_body(str(exc), code), status_code=502)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        content=error_body(message, _default_code(exc.status_code)),
        status_code=exc.status_code,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Body validation failures are bad input like any other: 400 with details.
    return JSONResponse(
        content=error_body("Validation error", "BAD_REQUEST", details=jsonable_errors(exc)),
        status_code=400,
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": str(error.get("msg", "")), "type": error.get("type")}
        for error in exc.errors()
    ]


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return JSONResponse(content=error_body("Internal server error", "INTERNAL_ERROR"), status_code=500)
