from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from legalhub.core.config import get_settings
from legalhub.core.errors import InvalidRequestError
from legalhub.domain.kinds import KIND_PROCESSES, KIND_PUBLICATIONS, RESOURCE_PUBLICATION_TERM, normalize_kind
from legalhub.domain.models import (
    MonitoredResource,
    Publication,
    PublicationTermMatch,
    VendorService,
    new_id,
    utc_now,
)
from legalhub.persistence.db import SessionLocal
from legalhub.persistence.repos.records import (
    insert_ignore,
    set_confirmed,
    upsert_by_vendor_id,
)
from legalhub.services.call_log import SyncRunLogger
from legalhub.services.sync.feeds import FEEDS_BY_KIND, FeedSpec
from legalhub.services.sync.orphans import link_orphans
from legalhub.services.telemetry import increment_counter
from legalhub.services.vendor.base import VendorClient
from legalhub.services.vendor.factory import VendorClientFactory, build_vendor_client
from legalhub.services.vendor.results import expect_structs


logger = logging.getLogger(__name__)


@dataclass
class SyncProgress:
    """Running totals for one sync run; survives a mid-run failure."""

    records_synced: int = 0
    batches: int = 0
    per_feed: dict[str, int] = field(default_factory=dict)

    def add(self, feed: str, records: int) -> None:
        self.records_synced += records
        self.batches += 1
        self.per_feed[feed] = self.per_feed.get(feed, 0) + records


@dataclass(frozen=True)
class SyncOutcome:
    service_id: str
    kind: str
    records_synced: int
    batches: int
    per_feed: dict[str, int]
    orphans_linked: int = 0
    cancelled: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "kind": self.kind,
            "records_synced": self.records_synced,
            "batches": self.batches,
            "per_feed": dict(self.per_feed),
            "orphans_linked": self.orphans_linked,
            "cancelled": self.cancelled,
        }


def _build_rows(feed: FeedSpec, service: VendorService, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # Malformed items are dropped one at a time; the rest of the page still lands.
    rows_by_vendor_id: dict[int, dict[str, Any]] = {}
    for item in items:
        if not isinstance(item, dict):
            logger.warning("sync_item_skipped feed=%s reason=not_a_struct", feed.name)
            continue
        vendor_id = feed.vendor_id(item)
        if vendor_id is None:
            logger.warning("sync_item_skipped feed=%s reason=missing_vendor_id", feed.name)
            increment_counter("sync_items_skipped")
            continue
        try:
            mapped = feed.to_row(item)
        except (TypeError, ValueError) as exc:
            logger.warning("sync_item_skipped feed=%s vendor_id=%s reason=%s", feed.name, vendor_id, exc)
            increment_counter("sync_items_skipped")
            continue
        row = {
            "id": new_id(),
            "vendor_id": vendor_id,
            "service_id": service.id,
            "is_confirmed": False,
            "raw_json": item,
            "created_at": utc_now(),
            **mapped,
        }
        for parent in feed.parents:
            row[parent.column] = None
        # Postgres rejects one statement touching the same conflict key twice.
        rows_by_vendor_id[vendor_id] = row
    return list(rows_by_vendor_id.values())


async def _resolve_parents(
    session: AsyncSession, feed: FeedSpec, service: VendorService, rows: list[dict[str, Any]]
) -> None:
    # One batched lookup per parent link, never per row.
    for parent in feed.parents:
        codes = {row[parent.code_column] for row in rows if row.get(parent.code_column)}
        mapping = await parent.resolve(session, service.id, codes)
        for row in rows:
            code = row.get(parent.code_column)
            if code:
                row[parent.column] = mapping.get(code)


async def _match_publication_terms(
    session: AsyncSession, service: VendorService, vendor_ids: list[int]
) -> int:
    terms = await session.execute(
        select(MonitoredResource.id, MonitoredResource.natural_key).where(
            MonitoredResource.service_id == service.id,
            MonitoredResource.resource_type == RESOURCE_PUBLICATION_TERM,
            MonitoredResource.is_active.is_(True),
        )
    )
    active_terms = [(term_id, term.lower()) for term_id, term in terms.all() if term]
    if not active_terms:
        return 0
    publications = await session.execute(
        select(Publication.id, Publication.content).where(Publication.vendor_id.in_(vendor_ids))
    )
    matches = []
    for publication_id, content in publications.all():
        text = (content or "").lower()
        for term_id, term in active_terms:
            if term in text:
                matches.append({"id": new_id(), "publication_id": publication_id, "term_id": term_id})
    await insert_ignore(session, PublicationTermMatch, matches, index_elements=["publication_id", "term_id"])
    return len(matches)


async def persist_batch(
    session: AsyncSession, feed: FeedSpec, service: VendorService, items: list[dict[str, Any]]
) -> list[int]:
    """Upsert one fetched page and return the vendor ids that were stored."""
    rows = _build_rows(feed, service, items)
    if not rows:
        return []
    await _resolve_parents(session, feed, service, rows)
    await upsert_by_vendor_id(
        session, feed.model, rows, keep_existing=[parent.column for parent in feed.parents]
    )
    vendor_ids = [row["vendor_id"] for row in rows]
    if feed.kind == KIND_PUBLICATIONS:
        await _match_publication_terms(session, service, vendor_ids)
    await session.commit()
    return vendor_ids


async def confirm_received(client: VendorClient, feed: FeedSpec, vendor_ids: list[int]) -> None:
    """Acknowledge stored ids upstream in fixed-size chunks.

    Each chunk is marked confirmed locally right after the vendor accepts it.
    """
    chunk_size = get_settings().sync_confirm_chunk_size
    for start in range(0, len(vendor_ids), chunk_size):
        chunk = vendor_ids[start : start + chunk_size]
        await client.call(feed.confirm, {"codigos": chunk})
        async with SessionLocal() as session:
            await set_confirmed(session, feed.model, chunk, True)
            await session.commit()


async def drain_feed(
    client: VendorClient,
    feed: FeedSpec,
    service: VendorService,
    progress: SyncProgress,
    *,
    run_logger: SyncRunLogger | None = None,
    cancel: asyncio.Event | None = None,
) -> bool:
    """Fetch, persist and confirm until a short page or the iteration cap.

    Returns False when ``cancel`` stopped the drain before the feed was empty.
    """
    settings = get_settings()
    params = feed.fetch_params(service) if feed.fetch_params else None
    for iteration in range(1, settings.sync_max_iterations + 1):
        if cancel is not None and cancel.is_set():
            logger.info("sync_cancelled service_id=%s feed=%s iteration=%s", service.id, feed.name, iteration)
            return False
        items = expect_structs(await client.call(feed.fetch, params), operation=feed.fetch.name)
        if not items:
            return True
        async with SessionLocal() as session:
            vendor_ids = await persist_batch(session, feed, service, items)
        if vendor_ids:
            await confirm_received(client, feed, vendor_ids)
        progress.add(feed.name, len(vendor_ids))
        logger.info(
            "sync_batch service_id=%s feed=%s iteration=%s fetched=%s stored=%s",
            service.id,
            feed.name,
            iteration,
            len(items),
            len(vendor_ids),
        )
        if run_logger is not None:
            await run_logger.progress(progress.records_synced)
        if len(items) < settings.sync_page_size:
            return True
    logger.warning(
        "sync_iteration_cap service_id=%s feed=%s cap=%s", service.id, feed.name, settings.sync_max_iterations
    )
    increment_counter("sync_iteration_cap_hit")
    return True


async def _stamp_last_sync(service_id: str) -> None:
    async with SessionLocal() as session:
        await session.execute(
            update(VendorService).where(VendorService.id == service_id).values(last_sync_at=utc_now())
        )
        await session.commit()


async def run_sync(
    service: VendorService,
    kind: str | None = None,
    *,
    client_factory: VendorClientFactory = build_vendor_client,
    cancel: asyncio.Event | None = None,
) -> SyncOutcome:
    """Drain every feed of ``kind`` for one vendor service inside a SyncRun.

    Upserts committed before a failure stay committed; only the run status
    records the error.
    """
    kind = normalize_kind(kind or service.kind)
    feeds = FEEDS_BY_KIND.get(kind)
    if not feeds:
        raise InvalidRequestError(f"No feeds for kind {kind}")

    run_logger = SyncRunLogger(service_id=service.id, sync_type=f"{kind}_sync")
    await run_logger.start()
    progress = SyncProgress()
    orphans_linked = 0
    completed = True
    try:
        client = client_factory(service, run_logger=run_logger)
        for feed in feeds:
            completed = await drain_feed(client, feed, service, progress, run_logger=run_logger, cancel=cancel)
            if not completed:
                break
        if completed:
            if kind == KIND_PROCESSES:
                orphans_linked = await link_orphans(service_id=service.id)
            await _stamp_last_sync(service.id)
    except Exception as exc:
        await run_logger.error(str(exc), records_synced=progress.records_synced)
        raise
    if completed:
        await run_logger.success(progress.records_synced)
        increment_counter("sync_runs_succeeded")
    else:
        # Committed batches stay; last_sync_at is left unstamped.
        await run_logger.cancelled(progress.records_synced)
        increment_counter("sync_runs_cancelled")
    return SyncOutcome(
        service_id=service.id,
        kind=kind,
        records_synced=progress.records_synced,
        batches=progress.batches,
        per_feed=progress.per_feed,
        orphans_linked=orphans_linked,
        cancelled=not completed,
    )
