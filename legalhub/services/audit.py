from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from legalhub.domain.models import ApiRequest, SecurityEvent, utc_now
from legalhub.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "api_key"]
_REDACTED_VALUE = "[REDACTED]"
_CREDENTIAL_PREFIX_CHARS = 8


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub credential-like fields while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def mask_credential(value: str | None) -> str | None:
    # Keep a short prefix so operators can tell credentials apart.
    if not value:
        return value
    return f"{value[:_CREDENTIAL_PREFIX_CHARS]}***"


def client_ip(request: Request | None) -> str | None:
    # Prefer the first proxy hop when the API sits behind a load balancer.
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"endpoint": None, "method": None, "ip_address": None, "user_agent": None}
    return {
        "endpoint": request.url.path,
        "method": request.method,
        "ip_address": client_ip(request),
        "user_agent": request.headers.get("user-agent"),
    }


async def record_security_event(
    *,
    session: AsyncSession | None = None,
    reason: str,
    endpoint: str,
    ip_address: str | None,
    token_id: str | None = None,
    client_id: str | None = None,
    method: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> None:
    """Append a gateway deny to the security log.

    Writes are best-effort: a failure is logged and swallowed so the caller
    still returns its deny response. With a session the row is committed on
    it; otherwise a short-lived session is used.
    """
    event = SecurityEvent(
        occurred_at=occurred_at or utc_now(),
        ip_address=ip_address,
        token_id=token_id,
        client_id=client_id,
        endpoint=endpoint,
        reason=reason,
        method=method,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
    )
    logger.info(
        "security_event reason=%s endpoint=%s ip=%s token_id=%s client_id=%s",
        reason,
        endpoint,
        ip_address,
        token_id,
        client_id,
    )
    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                logger.warning("security_event_write_failed reason=%s", reason, exc_info=exc)
        return

    try:
        session.add(event)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("security_event_write_failed reason=%s", reason, exc_info=exc)


async def reserve_api_request(
    session: AsyncSession,
    *,
    token_id: str,
    client_id: str,
    endpoint: str,
    method: str,
    ip_address: str | None,
    user_agent: str | None,
) -> int:
    # Insert the metrics row up front so it counts toward the rate window immediately.
    row = ApiRequest(
        token_id=token_id,
        client_id=client_id,
        endpoint=endpoint,
        method=method,
        counts_toward_limit=True,
        ip_address=ip_address,
        user_agent=user_agent,
        requested_at=utc_now(),
    )
    session.add(row)
    await session.flush()
    return row.id


async def record_api_request(
    *,
    api_request_id: int | None,
    token_id: str | None,
    client_id: str | None,
    endpoint: str,
    method: str,
    status_code: int,
    response_time_ms: float,
    ip_address: str | None,
    user_agent: str | None,
) -> None:
    # Finish the reserved row, or log a fresh one for requests that never reached it.
    async with SessionLocal() as session:
        try:
            if api_request_id is not None:
                await session.execute(
                    update(ApiRequest)
                    .where(ApiRequest.id == api_request_id)
                    .values(status_code=status_code, response_time_ms=response_time_ms)
                )
            else:
                session.add(
                    ApiRequest(
                        token_id=token_id,
                        client_id=client_id,
                        endpoint=endpoint,
                        method=method,
                        status_code=status_code,
                        response_time_ms=response_time_ms,
                        counts_toward_limit=False,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        requested_at=utc_now(),
                    )
                )
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning(
                "api_request_write_failed endpoint=%s status=%s", endpoint, status_code, exc_info=exc
            )
