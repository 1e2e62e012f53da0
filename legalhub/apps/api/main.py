from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from legalhub.apps.api.errors import (
    auth_denied_handler,
    http_exception_handler,
    invalid_request_handler,
    not_found_handler,
    protocol_violation_handler,
    unhandled_exception_handler,
    validation_exception_handler,
    vendor_error_handler,
)
from legalhub.apps.api.routes.admin import router as admin_router
from legalhub.apps.api.routes.health import router as health_router
from legalhub.apps.api.routes.records import router as records_router
from legalhub.core.errors import (
    AuthDeniedError,
    InvalidRequestError,
    ProtocolViolationError,
    RecordNotFoundError,
    VendorError,
)
from legalhub.core.logging import configure_logging
from legalhub.services.audit import get_request_context, record_api_request
from legalhub.services.telemetry import record_request


# Client-facing record routes; every request to them gets a metrics row.
_METERED_PREFIX = "/api-"


async def _log_api_request(request: Request, status_code: int, latency_ms: float) -> None:
    ctx = getattr(request.state, "gateway_ctx", None)
    if ctx is not None:
        await record_api_request(
            api_request_id=ctx.api_request_id,
            token_id=ctx.token_id,
            client_id=ctx.client_id,
            endpoint=ctx.endpoint,
            method=ctx.method,
            status_code=status_code,
            response_time_ms=latency_ms,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        return
    context = get_request_context(request)
    await record_api_request(
        api_request_id=None,
        token_id=None,
        client_id=None,
        endpoint=context["endpoint"] or request.url.path,
        method=context["method"] or request.method,
        status_code=status_code,
        response_time_ms=latency_ms,
        ip_address=context["ip_address"],
        user_agent=context["user_agent"],
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="LegalHub API")

    @app.middleware("http")
    async def request_metrics_middleware(request: Request, call_next):  # type: ignore[override]
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            latency_ms = (time.monotonic() - start) * 1000.0
            record_request(path=request.url.path, status_code=status_code, latency_ms=latency_ms)
            # Allowed and denied requests alike; separate from the security log.
            if request.url.path.startswith(_METERED_PREFIX):
                await _log_api_request(request, status_code, latency_ms)
        return response

    app.add_exception_handler(AuthDeniedError, auth_denied_handler)
    app.add_exception_handler(InvalidRequestError, invalid_request_handler)
    app.add_exception_handler(ProtocolViolationError, protocol_violation_handler)
    app.add_exception_handler(RecordNotFoundError, not_found_handler)
    app.add_exception_handler(VendorError, vendor_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(admin_router)
    app.include_router(records_router)
    return app


app = create_app()
