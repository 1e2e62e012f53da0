from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Iterable

from sqlalchemy import select

from legalhub.core.config import get_settings
from legalhub.domain.kinds import normalize_kind
from legalhub.domain.models import VendorService, as_utc, utc_now
from legalhub.persistence.db import SessionLocal
from legalhub.services.sync.locks import acquire_service_lock, release_service_lock
from legalhub.services.sync.loop import run_sync
from legalhub.services.vendor.factory import VendorClientFactory, build_vendor_client


logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_SKIPPED = "skipped"
STATUS_CANCELLED = "cancelled"


@dataclass(frozen=True)
class ServiceSyncReport:
    service_id: str
    kind: str
    status: str
    records_synced: int = 0
    batches: int = 0
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "kind": self.kind,
            "status": self.status,
            "records_synced": self.records_synced,
            "batches": self.batches,
            "detail": self.detail,
        }


async def list_sync_targets(
    *, kinds: Iterable[str] | None = None, service_ids: Iterable[str] | None = None
) -> list[VendorService]:
    query = select(VendorService).where(VendorService.is_active.is_(True)).order_by(VendorService.name)
    kinds = [normalize_kind(kind) for kind in (kinds or [])]
    if kinds:
        query = query.where(VendorService.kind.in_(kinds))
    service_ids = list(service_ids or [])
    if service_ids:
        query = query.where(VendorService.id.in_(service_ids))
    async with SessionLocal() as session:
        result = await session.execute(query)
        return list(result.scalars().all())


def is_due(service: VendorService, now: datetime) -> bool:
    last_sync_at = as_utc(service.last_sync_at)
    if last_sync_at is None:
        return True
    return now - last_sync_at >= timedelta(seconds=get_settings().sync_min_interval_s)


async def sync_one(
    service: VendorService,
    *,
    client_factory: VendorClientFactory = build_vendor_client,
    cancel: asyncio.Event | None = None,
) -> ServiceSyncReport:
    """Run one service under its single-flight lock; errors become a report."""
    lock = await acquire_service_lock(service.id)
    if lock is None:
        logger.info("sync_skipped_locked service_id=%s", service.id)
        return ServiceSyncReport(service.id, service.kind, STATUS_SKIPPED, detail="already running")
    try:
        outcome = await run_sync(service, client_factory=client_factory, cancel=cancel)
    except Exception as exc:  # noqa: BLE001 - one failing service must not stop the sweep
        logger.warning("sync_service_failed service_id=%s", service.id, exc_info=exc)
        return ServiceSyncReport(service.id, service.kind, STATUS_ERROR, detail=str(exc))
    finally:
        await release_service_lock(lock)
    return ServiceSyncReport(
        service.id,
        outcome.kind,
        STATUS_CANCELLED if outcome.cancelled else STATUS_SUCCESS,
        records_synced=outcome.records_synced,
        batches=outcome.batches,
        detail="cancelled" if outcome.cancelled else None,
    )


async def sweep(
    *,
    kinds: Iterable[str] | None = None,
    service_ids: Iterable[str] | None = None,
    force: bool = False,
    client_factory: VendorClientFactory = build_vendor_client,
    cancel: asyncio.Event | None = None,
    now: datetime | None = None,
) -> list[ServiceSyncReport]:
    """Sync every active vendor service that is due, one at a time."""
    now = now or utc_now()
    reports: list[ServiceSyncReport] = []
    for service in await list_sync_targets(kinds=kinds, service_ids=service_ids):
        if not force and not is_due(service, now):
            reports.append(ServiceSyncReport(service.id, service.kind, STATUS_SKIPPED, detail="synced recently"))
            continue
        if cancel is not None and cancel.is_set():
            reports.append(ServiceSyncReport(service.id, service.kind, STATUS_SKIPPED, detail="cancelled"))
            continue
        reports.append(await sync_one(service, client_factory=client_factory, cancel=cancel))
    logger.info(
        "sync_sweep_done services=%s succeeded=%s failed=%s",
        len(reports),
        sum(1 for report in reports if report.status == STATUS_SUCCESS),
        sum(1 for report in reports if report.status == STATUS_ERROR),
    )
    return reports
