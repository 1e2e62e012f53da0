from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from legalhub.domain.models import ApiToken
from legalhub.services.auth.tokens import generate_api_token


async def create_api_token(
    session: AsyncSession,
    *,
    client_id: str,
    name: str | None = None,
    rate_limit_override: int | None = None,
    allowed_ips: list[str] | None = None,
    expires_at: datetime | None = None,
) -> tuple[ApiToken, str]:
    # Only the hash is stored; the raw token is returned once to the caller.
    token_id, raw_token, key_prefix, token_hash = generate_api_token()
    token = ApiToken(
        id=token_id,
        client_id=client_id,
        key_prefix=key_prefix,
        token_hash=token_hash,
        name=name,
        rate_limit_override=rate_limit_override,
        allowed_ips_json=allowed_ips or None,
        expires_at=expires_at,
    )
    session.add(token)
    await session.flush()
    return token, raw_token
