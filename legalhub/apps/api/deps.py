from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from legalhub.core.config import get_settings
from legalhub.persistence.db import get_session
from legalhub.services.audit import get_request_context
from legalhub.services.gateway import GatewayContext, GatewayDecision, authenticate
from legalhub.services.vendor.factory import VendorClientFactory, build_vendor_client


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_vendor_client_factory() -> VendorClientFactory:
    # Overridden in tests to swap in fake vendor clients.
    return build_vendor_client


def gateway_context(request: Request) -> GatewayContext:
    # Stored on request.state so the metrics middleware can log denied requests too.
    existing = getattr(request.state, "gateway_ctx", None)
    if existing is not None:
        return existing
    context = get_request_context(request)
    ctx = GatewayContext(
        authorization=request.headers.get(get_settings().auth_api_key_header),
        endpoint=context["endpoint"] or request.url.path,
        method=context["method"] or request.method,
        ip_address=context["ip_address"],
        user_agent=context["user_agent"],
    )
    request.state.gateway_ctx = ctx
    return ctx


async def authenticate_request(
    request: Request,
    *,
    session: AsyncSession,
    required_kind: str | None = None,
    require_platform: bool = False,
) -> GatewayDecision:
    decision = await authenticate(
        session,
        gateway_context(request),
        required_kind=required_kind,
        require_platform=require_platform,
    )
    request.state.gateway_decision = decision
    return decision


async def require_platform(
    request: Request, session: AsyncSession = Depends(get_db)
) -> GatewayDecision:
    # Administrative routes accept only platform identity tokens.
    return await authenticate_request(request, session=session, require_platform=True)
