from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Sequence

from legalhub.core.config import get_settings
from legalhub.core.errors import InvalidRequestError, VendorError
from legalhub.domain.models import VendorService
from legalhub.persistence.db import SessionLocal
from legalhub.persistence.repos.records import set_confirmed
from legalhub.services.call_log import SyncRunLogger
from legalhub.services.sync.feeds import FEEDS_BY_NAME
from legalhub.services.vendor.factory import VendorClientFactory, build_vendor_client


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReversalResult:
    feed: str
    requested: int
    reverted: int
    failed: int
    failed_chunks: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "feed": self.feed,
            "requested": self.requested,
            "reverted": self.reverted,
            "failed": self.failed,
            "failed_chunks": self.failed_chunks,
        }


async def revert_confirmations(
    service: VendorService,
    *,
    feed: str,
    vendor_ids: Sequence[int],
    client_factory: VendorClientFactory = build_vendor_client,
) -> ReversalResult:
    """Ask the vendor to redeliver records that were already confirmed.

    Ids go out in fixed-size chunks. A failing chunk is counted and the next
    one still runs; reverted records are flagged unconfirmed locally so the
    next sync stores them again.
    """
    spec = FEEDS_BY_NAME.get(feed)
    if spec is None:
        raise InvalidRequestError(f"Unknown feed: {feed}")
    if spec.kind != service.kind:
        raise InvalidRequestError(f"Feed {feed} does not belong to a {service.kind} service")
    ids = list(dict.fromkeys(int(vendor_id) for vendor_id in vendor_ids))
    if not ids:
        raise InvalidRequestError("vendor_ids must not be empty")

    logger.warning("confirmation_revert_requested service_id=%s feed=%s count=%s", service.id, feed, len(ids))
    run_logger = SyncRunLogger(service_id=service.id, sync_type="revert_confirmations")
    await run_logger.start()
    client = client_factory(service, run_logger=run_logger)

    chunk_size = get_settings().sync_confirm_chunk_size
    reverted = 0
    failed = 0
    failed_chunks = 0
    for start in range(0, len(ids), chunk_size):
        chunk = ids[start : start + chunk_size]
        try:
            await client.call(spec.revert, {"codigos": chunk})
        except VendorError as exc:
            failed += len(chunk)
            failed_chunks += 1
            logger.warning(
                "confirmation_revert_chunk_failed service_id=%s feed=%s size=%s", service.id, feed, len(chunk),
                exc_info=exc,
            )
            continue
        async with SessionLocal() as session:
            await set_confirmed(session, spec.model, chunk, False)
            await session.commit()
        reverted += len(chunk)

    if failed and not reverted:
        await run_logger.error(f"{failed_chunks} revert chunks failed", records_synced=0)
    else:
        await run_logger.success(reverted)
    logger.warning(
        "confirmation_revert_done service_id=%s feed=%s reverted=%s failed=%s", service.id, feed, reverted, failed
    )
    return ReversalResult(
        feed=feed, requested=len(ids), reverted=reverted, failed=failed, failed_chunks=failed_chunks
    )
