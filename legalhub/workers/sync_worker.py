from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from legalhub.core.config import get_settings
from legalhub.core.logging import configure_logging
from legalhub.domain.models import VendorService
from legalhub.persistence.db import SessionLocal
from legalhub.services.sync.discovery import discover_resources
from legalhub.services.sync.sweep import STATUS_SKIPPED, ServiceSyncReport, sweep, sync_one


logger = logging.getLogger(__name__)


async def sync_service(ctx, service_id: str) -> dict:
    # Manual or enqueued run of one service; the single-flight lock still applies.
    async with SessionLocal() as session:
        service = await session.get(VendorService, service_id)
    if service is None or not service.is_active:
        logger.warning("sync_service_unavailable service_id=%s", service_id)
        return ServiceSyncReport(service_id, "", STATUS_SKIPPED, detail="inactive or missing").as_dict()
    report = await sync_one(service, cancel=ctx.get("cancel_event"))
    return report.as_dict()


async def discover_service(ctx, service_id: str) -> dict:
    # Import what the vendor already monitors for one service.
    async with SessionLocal() as session:
        service = await session.get(VendorService, service_id)
    if service is None or not service.is_active:
        logger.warning("discover_service_unavailable service_id=%s", service_id)
        return {"service_id": service_id, "status": STATUS_SKIPPED, "detail": "inactive or missing"}
    result = await discover_resources(service)
    return result.as_dict()


async def scheduled_sweep(ctx) -> list[dict]:
    reports = await sweep(cancel=ctx.get("cancel_event"))
    return [report.as_dict() for report in reports]


async def _startup(ctx) -> None:
    # The event lets in-flight drains stop between iterations on shutdown.
    configure_logging()
    ctx["cancel_event"] = asyncio.Event()


async def _shutdown(ctx) -> None:
    event = ctx.get("cancel_event")
    if event is not None:
        event.set()


def _cron_minutes(every: int) -> set[int]:
    every = max(1, min(int(every), 60))
    return set(range(0, 60, every))


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sync_queue_name
    max_tries = 1
    # A sweep can drain several services back to back.
    job_timeout = settings.sync_lock_ttl_s
    functions = [sync_service, discover_service]
    cron_jobs = [cron(scheduled_sweep, minute=_cron_minutes(settings.sync_cron_minutes), run_at_startup=False)]
    on_startup = _startup
    on_shutdown = _shutdown
