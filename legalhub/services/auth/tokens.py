from __future__ import annotations

import hashlib
import hmac
import secrets
from uuid import uuid4

from legalhub.core.config import get_settings


TOKEN_PREFIX = "lhk"


def hash_api_token(raw_token: str) -> str:
    # SHA-256 for deterministic, non-reversible storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_api_token(*, token_id: str | None = None) -> tuple[str, str, str, str]:
    # Embed the token id so operators can trace a secret without storing it.
    resolved_id = token_id or uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_token = f"{TOKEN_PREFIX}_{resolved_id}_{secret}"
    key_prefix = raw_token[:12]
    return resolved_id, raw_token, key_prefix, hash_api_token(raw_token)


def is_platform_token(raw_token: str) -> bool:
    # Constant-time comparison against every configured platform token.
    candidates = get_settings().platform_token_list()
    matched = False
    for candidate in candidates:
        if hmac.compare_digest(candidate.encode("utf-8"), raw_token.encode("utf-8")):
            matched = True
    return matched


def parse_bearer(header_value: str | None) -> str | None:
    # Returns None for anything that is not exactly "Bearer <token>".
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        return None
    return parts[1]
