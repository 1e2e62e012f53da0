from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError

from legalhub.core.config import get_settings


logger = logging.getLogger(__name__)

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()
# Services locked by this process when Redis is not configured or unreachable.
_local_held: dict[str, str] = {}


@dataclass(slots=True)
class ServiceLock:
    service_id: str
    token: str
    redis: Redis | None


def _lock_key(service_id: str) -> str:
    return f"{get_settings().sync_lock_prefix}:{service_id}"


async def get_lock_redis() -> Redis | None:
    # One connection pool per event loop; the local backend skips Redis entirely.
    global _redis_pool, _redis_loop
    settings = get_settings()
    if settings.sync_lock_backend != "redis" or not settings.redis_url:
        return None
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    async with _redis_lock:
        if _redis_pool is None or _redis_loop != current_loop:
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


def _acquire_local(service_id: str, token: str) -> ServiceLock | None:
    if service_id in _local_held:
        return None
    _local_held[service_id] = token
    return ServiceLock(service_id=service_id, token=token, redis=None)


async def acquire_service_lock(service_id: str) -> ServiceLock | None:
    """Take the single-flight lock for one service, or None if a run holds it."""
    token = uuid4().hex
    redis = await get_lock_redis()
    if redis is not None:
        ttl_s = max(5, int(get_settings().sync_lock_ttl_s))
        try:
            acquired = await redis.set(_lock_key(service_id), token, nx=True, ex=ttl_s)
        except RedisError as exc:
            logger.warning("sync_lock_redis_unavailable service_id=%s", service_id, exc_info=exc)
            return _acquire_local(service_id, token)
        if not acquired:
            return None
        return ServiceLock(service_id=service_id, token=token, redis=redis)
    return _acquire_local(service_id, token)


async def release_service_lock(lock: ServiceLock) -> None:
    # Only the holder's token may delete the key; an expired lock may belong to a newer run.
    if lock.redis is None:
        if _local_held.get(lock.service_id) == lock.token:
            del _local_held[lock.service_id]
        return
    try:
        current = await lock.redis.get(_lock_key(lock.service_id))
        if current == lock.token:
            await lock.redis.delete(_lock_key(lock.service_id))
    except RedisError as exc:
        logger.warning("sync_lock_release_failed service_id=%s", lock.service_id, exc_info=exc)
