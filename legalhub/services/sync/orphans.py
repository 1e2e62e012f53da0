from __future__ import annotations

from collections import defaultdict
import logging

from sqlalchemy import select, update

from legalhub.core.errors import InvalidRequestError
from legalhub.persistence.db import SessionLocal
from legalhub.services.sync.feeds import FEEDS_BY_NAME, FeedSpec, ParentLink


logger = logging.getLogger(__name__)

_ORPHAN_PAGE_SIZE = 500


async def _link_parent(feed: FeedSpec, parent: ParentLink, service_id: str | None) -> int:
    model = feed.model
    column = getattr(model, parent.column)
    code_column = getattr(model, parent.code_column)
    linked = 0
    last_id: str | None = None
    while True:
        # Keyset paging; rows that stay unresolved must not be rescanned.
        query = (
            select(model.id, model.service_id, code_column)
            .where(column.is_(None), code_column.is_not(None))
            .order_by(model.id)
            .limit(_ORPHAN_PAGE_SIZE)
        )
        if service_id is not None:
            query = query.where(model.service_id == service_id)
        if last_id is not None:
            query = query.where(model.id > last_id)

        async with SessionLocal() as session:
            rows = (await session.execute(query)).all()
            if not rows:
                return linked
            last_id = rows[-1][0]

            codes_by_service: dict[str, set[str]] = defaultdict(set)
            for _, row_service_id, code in rows:
                codes_by_service[row_service_id].add(code)
            resolved: dict[tuple[str, str], str] = {}
            for row_service_id, codes in codes_by_service.items():
                mapping = await parent.resolve(session, row_service_id, codes)
                for code, parent_id in mapping.items():
                    resolved[(row_service_id, code)] = parent_id

            ids_by_parent: dict[str, list[str]] = defaultdict(list)
            for record_id, row_service_id, code in rows:
                parent_id = resolved.get((row_service_id, code))
                if parent_id is not None:
                    ids_by_parent[parent_id].append(record_id)
            for parent_id, record_ids in ids_by_parent.items():
                await session.execute(
                    update(model)
                    .where(model.id.in_(record_ids), column.is_(None))
                    .values({parent.column: parent_id})
                    .execution_options(synchronize_session=False)
                )
                linked += len(record_ids)
            await session.commit()

        if len(rows) < _ORPHAN_PAGE_SIZE:
            return linked


async def link_orphans(*, service_id: str | None = None, feeds: list[str] | None = None) -> int:
    """Attach child records whose parent arrived after them.

    Scans null-parent rows page by page, resolves their vendor parent codes
    in one lookup per page, and fills in the reference. Safe to run at any
    time, including over history.
    """
    unknown = sorted(set(feeds or []) - set(FEEDS_BY_NAME))
    if unknown:
        raise InvalidRequestError(f"Unknown feeds: {', '.join(unknown)}")
    selected = [FEEDS_BY_NAME[name] for name in feeds] if feeds else list(FEEDS_BY_NAME.values())
    total = 0
    for feed in selected:
        for parent in feed.parents:
            linked = await _link_parent(feed, parent, service_id)
            if linked:
                logger.info(
                    "orphans_linked feed=%s column=%s count=%s service_id=%s",
                    feed.name,
                    parent.column,
                    linked,
                    service_id,
                )
            total += linked
    return total
