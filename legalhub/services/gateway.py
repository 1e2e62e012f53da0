from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from legalhub.core.config import get_settings
from legalhub.core.errors import AuthDeniedError
from legalhub.domain.kinds import (
    REASON_BLOCKED,
    REASON_EXPIRED,
    REASON_INACTIVE,
    REASON_INVALID_HEADER,
    REASON_INVALID_TOKEN,
    REASON_IP_BLOCKED,
    REASON_IP_NOT_WHITELISTED,
    REASON_PLATFORM_REQUIRED,
    REASON_RATE_LIMIT,
    REASON_SERVICE_DENIED,
)
from legalhub.domain.models import (
    ApiRequest,
    ApiToken,
    ClientServiceEntitlement,
    ClientSystem,
    IpRule,
    VendorService,
    as_utc,
    utc_now,
)
from legalhub.persistence.db import SessionLocal
from legalhub.services.audit import record_security_event, reserve_api_request
from legalhub.services.auth.ip_rules import find_blocking_rule, ip_allowed_by_list
from legalhub.services.auth.tokens import hash_api_token, is_platform_token, parse_bearer


logger = logging.getLogger(__name__)

# Same message for a missing header and an unknown token.
_GENERIC_AUTH_MESSAGE = "Missing or invalid authorization header"

_background_tasks: set[asyncio.Task] = set()


@dataclass
class GatewayContext:
    """What the gateway knows about one inbound request.

    Identity fields are filled in as checks pass so the caller can log the
    request-metrics row even when the request is denied part way through.
    """

    authorization: str | None
    endpoint: str
    method: str
    ip_address: str | None = None
    user_agent: str | None = None
    token_id: str | None = None
    client_id: str | None = None
    api_request_id: int | None = None


@dataclass(frozen=True)
class RateLimitWindow:
    limit: int
    remaining: int
    reset_at: datetime

    def as_dict(self) -> dict[str, Any]:
        return {"limit": self.limit, "remaining": self.remaining, "reset_at": self.reset_at.isoformat()}

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }


@dataclass(frozen=True)
class GatewayDecision:
    client_id: str | None
    token_id: str | None
    is_platform: bool
    rate_limit: RateLimitWindow | None


async def _deny(
    session: AsyncSession,
    ctx: GatewayContext,
    *,
    reason: str,
    message: str,
    status_code: int = 401,
    details: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuthDeniedError:
    # Every deny lands in the security log before the error propagates.
    await record_security_event(
        session=session,
        reason=reason,
        endpoint=ctx.endpoint,
        ip_address=ctx.ip_address,
        token_id=ctx.token_id,
        client_id=ctx.client_id,
        method=ctx.method,
        user_agent=ctx.user_agent,
        metadata=metadata,
    )
    return AuthDeniedError(reason, message, status_code=status_code, details=details)


async def _touch_last_used(token_id: str) -> None:
    # Update last_used_at outside the request transaction.
    async with SessionLocal() as session:
        try:
            await session.execute(
                update(ApiToken).where(ApiToken.id == token_id).values(last_used_at=utc_now())
            )
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("token_touch_failed token_id=%s", token_id, exc_info=exc)


def schedule_touch(token_id: str) -> None:
    task = asyncio.create_task(_touch_last_used(token_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def drain_background_tasks() -> None:
    # Let pending last-used updates finish (shutdown and tests).
    if _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


async def _load_ip_rules(session: AsyncSession, client_id: str | None) -> list[IpRule]:
    query = select(IpRule).where(IpRule.is_active.is_(True))
    if client_id is None:
        query = query.where(IpRule.client_id.is_(None))
    else:
        query = query.where((IpRule.client_id.is_(None)) | (IpRule.client_id == client_id))
    result = await session.execute(query)
    return list(result.scalars().all())


async def _count_window(session: AsyncSession, token_id: str, since: datetime) -> int:
    result = await session.execute(
        select(func.count(ApiRequest.id)).where(
            ApiRequest.token_id == token_id,
            ApiRequest.counts_toward_limit.is_(True),
            ApiRequest.requested_at > since,
        )
    )
    return int(result.scalar_one() or 0)


async def has_kind_entitlement(session: AsyncSession, client_id: str, kind: str) -> bool:
    # At least one active entitlement to an active service of the kind.
    result = await session.execute(
        select(func.count(ClientServiceEntitlement.id))
        .join(VendorService, VendorService.id == ClientServiceEntitlement.service_id)
        .where(
            ClientServiceEntitlement.client_id == client_id,
            ClientServiceEntitlement.is_active.is_(True),
            VendorService.is_active.is_(True),
            VendorService.kind == kind,
        )
    )
    return int(result.scalar_one() or 0) > 0


async def authenticate(
    session: AsyncSession,
    ctx: GatewayContext,
    *,
    required_kind: str | None = None,
    require_platform: bool = False,
    now: datetime | None = None,
) -> GatewayDecision:
    """Admit or deny one inbound request.

    Checks run in a fixed order and the first failure wins: bearer header,
    platform token, API token state, IP rules, token allow-list, sliding
    rate window, then kind entitlement. Denials raise ``AuthDeniedError``
    after a security event has been written.
    """
    settings = get_settings()
    now = now or utc_now()

    raw_token = parse_bearer(ctx.authorization)
    if raw_token is None:
        raise await _deny(session, ctx, reason=REASON_INVALID_HEADER, message=_GENERIC_AUTH_MESSAGE)

    if is_platform_token(raw_token):
        return GatewayDecision(client_id=None, token_id=None, is_platform=True, rate_limit=None)

    result = await session.execute(select(ApiToken).where(ApiToken.token_hash == hash_api_token(raw_token)))
    token = result.scalar_one_or_none()
    if token is None:
        raise await _deny(session, ctx, reason=REASON_INVALID_TOKEN, message=_GENERIC_AUTH_MESSAGE)
    ctx.token_id = token.id
    ctx.client_id = token.client_id

    if require_platform:
        raise await _deny(
            session,
            ctx,
            reason=REASON_PLATFORM_REQUIRED,
            message="This operation requires a platform token",
            status_code=403,
        )

    if not token.is_active:
        raise await _deny(session, ctx, reason=REASON_INACTIVE, message="Token is inactive")
    if token.is_blocked:
        raise await _deny(
            session,
            ctx,
            reason=REASON_BLOCKED,
            message=f"Token is blocked: {token.blocked_reason or 'no reason given'}",
            status_code=403,
            details={"blocked_reason": token.blocked_reason},
            metadata={"blocked_reason": token.blocked_reason},
        )
    expires_at = as_utc(token.expires_at)
    if expires_at is not None and expires_at <= now:
        raise await _deny(session, ctx, reason=REASON_EXPIRED, message="Token has expired")

    client = await session.get(ClientSystem, token.client_id)
    if client is None or not client.is_active:
        raise await _deny(session, ctx, reason=REASON_INACTIVE, message="Client system is inactive")

    rules = await _load_ip_rules(session, token.client_id)
    blocking = find_blocking_rule(rules, ip=ctx.ip_address, client_id=token.client_id, now=now)
    if blocking is not None:
        raise await _deny(
            session,
            ctx,
            reason=REASON_IP_BLOCKED,
            message="Access from this IP address is blocked",
            status_code=403,
            metadata={"rule_id": blocking.id, "ip_pattern": blocking.ip_pattern},
        )

    if not ip_allowed_by_list(token.allowed_ips_json, ctx.ip_address):
        raise await _deny(
            session,
            ctx,
            reason=REASON_IP_NOT_WHITELISTED,
            message="IP address is not in the token allow-list",
            status_code=403,
        )

    # Serialise the count-and-reserve per token; the lock is released on commit.
    await session.execute(select(ApiToken.id).where(ApiToken.id == token.id).with_for_update())
    limit = token.rate_limit_override or settings.rate_limit_default_per_window
    window = timedelta(minutes=settings.rate_limit_window_minutes)
    used = await _count_window(session, token.id, now - window)
    reset_at = now + window
    if used >= limit:
        await session.rollback()
        window_info = RateLimitWindow(limit=limit, remaining=0, reset_at=reset_at)
        raise await _deny(
            session,
            ctx,
            reason=REASON_RATE_LIMIT,
            message="Rate limit exceeded",
            status_code=429,
            details={"rate_limit": window_info.as_dict()},
            metadata={"limit": limit, "used": used},
        )
    if required_kind is not None and not await has_kind_entitlement(session, token.client_id, required_kind):
        # Denied before the reservation, so the request does not count toward the limit.
        await session.rollback()
        raise await _deny(
            session,
            ctx,
            reason=REASON_SERVICE_DENIED,
            message=f"Client is not entitled to {required_kind}",
            status_code=403,
        )
    ctx.api_request_id = await reserve_api_request(
        session,
        token_id=token.id,
        client_id=token.client_id,
        endpoint=ctx.endpoint,
        method=ctx.method,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
    )
    await session.commit()
    rate_limit = RateLimitWindow(limit=limit, remaining=max(limit - used - 1, 0), reset_at=reset_at)

    schedule_touch(token.id)
    return GatewayDecision(
        client_id=token.client_id,
        token_id=token.id,
        is_platform=False,
        rate_limit=rate_limit,
    )
