from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
import logging
from typing import Any, Sequence

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from legalhub.core.config import get_settings
from legalhub.core.errors import ProtocolViolationError, RecordNotFoundError
from legalhub.domain.kinds import (
    KIND_DISTRIBUTIONS,
    KIND_PROCESSES,
    KIND_PUBLICATIONS,
    RESOURCE_TYPE_FOR_KIND,
    normalize_kind,
)
from legalhub.domain.models import (
    ClientLink,
    DeliveryCursor,
    Distribution,
    MonitoredResource,
    ProcessDocument,
    ProcessMovement,
    Publication,
    PublicationTermMatch,
    utc_now,
)


logger = logging.getLogger(__name__)


class CursorState(str, Enum):
    """Delivery cursor lifecycle for one (client, kind) pair.

    ``deliver`` is legal from ABSENT or CONFIRMED and moves to PENDING;
    ``confirm`` is legal only from PENDING and moves to CONFIRMED.
    """

    ABSENT = "absent"
    PENDING = "pending"
    CONFIRMED = "confirmed"


def cursor_state(cursor: DeliveryCursor | None) -> CursorState:
    if cursor is None:
        return CursorState.ABSENT
    if cursor.pending_confirmation:
        return CursorState.PENDING
    return CursorState.CONFIRMED


def ensure_can_deliver(state: CursorState) -> None:
    if state is CursorState.PENDING:
        raise ProtocolViolationError("Previous batch is awaiting confirmation")


def ensure_can_confirm(state: CursorState) -> None:
    if state is not CursorState.PENDING:
        raise ProtocolViolationError("No batch is pending confirmation")


@dataclass
class RecordFilters:
    numero: str | None = None
    tribunal: str | None = None
    instancia: str | None = None
    status: str | None = None
    uf: str | None = None
    termo: str | None = None
    diario: str | None = None
    data_inicial: date | None = None
    data_final: date | None = None


@dataclass
class BatchPage:
    kind: str
    records: Sequence[Any] = field(default_factory=list)
    total: int = 0
    limit: int = 0
    offset: int = 0
    pending_confirmation: bool = False
    blocked: bool = False
    total_delivered: int = 0
    # Platform reads on behalf of a client leave its cursor untouched.
    read_only: bool = False

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.records) < self.total

    @property
    def records_in_batch(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class ConfirmResult:
    kind: str
    total_delivered: int


def clamp_limit(limit: int | None) -> int:
    # Server-side cap applies whatever the client asks for.
    settings = get_settings()
    if limit is None:
        return settings.delivery_default_limit
    return max(1, min(int(limit), settings.delivery_max_limit))


async def get_cursor(session: AsyncSession, client_id: str, kind: str) -> DeliveryCursor | None:
    result = await session.execute(
        select(DeliveryCursor).where(DeliveryCursor.client_id == client_id, DeliveryCursor.kind == kind)
    )
    return result.scalar_one_or_none()


def _linked_resource_ids(client_id: str, kind: str) -> Select:
    # Entitlement is the set of resources the client is linked to.
    return (
        select(ClientLink.resource_id)
        .join(MonitoredResource, MonitoredResource.id == ClientLink.resource_id)
        .where(
            ClientLink.client_id == client_id,
            MonitoredResource.resource_type == RESOURCE_TYPE_FOR_KIND[kind],
        )
    )


async def count_links(session: AsyncSession, client_id: str, kind: str) -> int:
    subquery = _linked_resource_ids(client_id, kind).subquery()
    result = await session.execute(select(func.count()).select_from(subquery))
    return int(result.scalar_one() or 0)


def _day_after(value: date) -> str:
    return (value + timedelta(days=1)).isoformat()


def _contains(column, value: str):
    return func.lower(column).contains(value.strip().lower())


def _build_query(client_id: str, kind: str, filters: RecordFilters) -> Select:
    linked = _linked_resource_ids(client_id, kind)
    if kind == KIND_PROCESSES:
        query = select(MonitoredResource).where(MonitoredResource.id.in_(linked))
        if filters.numero:
            query = query.where(MonitoredResource.natural_key == filters.numero.strip())
        if filters.tribunal:
            query = query.where(MonitoredResource.tribunal == filters.tribunal)
        if filters.instancia:
            query = query.where(MonitoredResource.instance == filters.instancia)
        if filters.status:
            query = query.where(MonitoredResource.status == filters.status)
        if filters.uf:
            query = query.where(MonitoredResource.uf == filters.uf)
        return query.order_by(MonitoredResource.created_at.desc(), MonitoredResource.id.desc())

    if kind == KIND_DISTRIBUTIONS:
        query = select(Distribution).where(Distribution.term_id.in_(linked))
        if filters.termo:
            query = query.where(_contains(Distribution.term, filters.termo))
        if filters.tribunal:
            query = query.where(Distribution.tribunal == filters.tribunal)
        if filters.data_inicial:
            query = query.where(Distribution.distribution_date >= filters.data_inicial.isoformat())
        if filters.data_final:
            query = query.where(Distribution.distribution_date < _day_after(filters.data_final))
        return query.order_by(Distribution.distribution_date.desc().nulls_last(), Distribution.id.desc())

    matched = select(PublicationTermMatch.publication_id).where(PublicationTermMatch.term_id.in_(linked))
    query = select(Publication).where(Publication.id.in_(matched))
    if filters.termo:
        query = query.where(_contains(Publication.content, filters.termo))
    if filters.diario:
        query = query.where(_contains(Publication.gazette_name, filters.diario))
    if filters.data_inicial:
        query = query.where(Publication.publication_date >= filters.data_inicial.isoformat())
    if filters.data_final:
        query = query.where(Publication.publication_date < _day_after(filters.data_final))
    return query.order_by(Publication.publication_date.desc().nulls_last(), Publication.id.desc())


async def _blocked_page(session: AsyncSession, *, client_id: str, kind: str, limit: int, offset: int) -> BatchPage:
    cursor = await get_cursor(session, client_id, kind)
    return BatchPage(
        kind=kind,
        limit=limit,
        offset=offset,
        pending_confirmation=True,
        blocked=True,
        total_delivered=cursor.total_delivered if cursor else 0,
    )


async def _mark_delivered(
    session: AsyncSession,
    *,
    cursor: DeliveryCursor | None,
    client_id: str,
    kind: str,
    last_id: str,
    delivered: int,
    limit: int,
) -> bool:
    """Flip the cursor to pending in one conditional write.

    Returns False when a concurrent request won the transition, in which case
    the caller must answer with a blocked page instead of the rows it read.
    """
    now = utc_now()
    if cursor is None:
        session.add(
            DeliveryCursor(
                client_id=client_id,
                kind=kind,
                last_delivered_id=last_id,
                last_delivered_at=now,
                pending_confirmation=True,
                total_delivered=delivered,
                batch_size=limit,
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return False
        return True

    result = await session.execute(
        update(DeliveryCursor)
        .where(DeliveryCursor.id == cursor.id, DeliveryCursor.pending_confirmation.is_(False))
        .values(
            pending_confirmation=True,
            last_delivered_id=last_id,
            last_delivered_at=now,
            total_delivered=DeliveryCursor.total_delivered + delivered,
            batch_size=limit,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        return False
    await session.commit()
    return True


async def _select_page(
    session: AsyncSession, client_id: str, kind: str, filters: RecordFilters, *, limit: int, offset: int
) -> tuple[list[Any], int]:
    query = _build_query(client_id, kind, filters)
    total = int(
        (await session.execute(select(func.count()).select_from(query.order_by(None).subquery()))).scalar_one()
        or 0
    )
    rows = list((await session.execute(query.limit(limit).offset(offset))).scalars().all())
    return rows, total


async def next_batch(
    session: AsyncSession,
    *,
    client_id: str,
    kind: str,
    limit: int | None = None,
    offset: int = 0,
    filters: RecordFilters | None = None,
) -> BatchPage:
    """Hand the client its next batch, or a blocked page while one is unconfirmed."""
    kind = normalize_kind(kind)
    limit = clamp_limit(limit)
    offset = max(0, int(offset))
    filters = filters or RecordFilters()

    cursor = await get_cursor(session, client_id, kind)
    state = cursor_state(cursor)
    if state is CursorState.PENDING:
        logger.info("delivery_blocked client_id=%s kind=%s", client_id, kind)
        return BatchPage(
            kind=kind,
            limit=limit,
            offset=offset,
            pending_confirmation=True,
            blocked=True,
            total_delivered=cursor.total_delivered,
        )
    ensure_can_deliver(state)
    total_delivered = cursor.total_delivered if cursor else 0

    if await count_links(session, client_id, kind) == 0:
        return BatchPage(kind=kind, limit=limit, offset=offset, total_delivered=total_delivered)

    rows, total = await _select_page(session, client_id, kind, filters, limit=limit, offset=offset)
    if not rows:
        return BatchPage(kind=kind, total=total, limit=limit, offset=offset, total_delivered=total_delivered)

    won = await _mark_delivered(
        session,
        cursor=cursor,
        client_id=client_id,
        kind=kind,
        last_id=rows[-1].id,
        delivered=len(rows),
        limit=limit,
    )
    if not won:
        logger.info("delivery_race_lost client_id=%s kind=%s", client_id, kind)
        return await _blocked_page(session, client_id=client_id, kind=kind, limit=limit, offset=offset)

    logger.info("delivery_batch client_id=%s kind=%s records=%s", client_id, kind, len(rows))
    return BatchPage(
        kind=kind,
        records=rows,
        total=total,
        limit=limit,
        offset=offset,
        pending_confirmation=True,
        total_delivered=total_delivered + len(rows),
    )


async def browse_records(
    session: AsyncSession,
    *,
    client_id: str,
    kind: str,
    limit: int | None = None,
    offset: int = 0,
    filters: RecordFilters | None = None,
) -> BatchPage:
    """Page through a client's records without touching its delivery cursor.

    Used by platform callers; the client's own batch handshake is neither
    checked nor advanced.
    """
    kind = normalize_kind(kind)
    limit = clamp_limit(limit)
    offset = max(0, int(offset))
    cursor = await get_cursor(session, client_id, kind)
    rows, total = await _select_page(session, client_id, kind, filters or RecordFilters(), limit=limit, offset=offset)
    return BatchPage(
        kind=kind,
        records=rows,
        total=total,
        limit=limit,
        offset=offset,
        pending_confirmation=cursor_state(cursor) is CursorState.PENDING,
        total_delivered=cursor.total_delivered if cursor else 0,
        read_only=True,
    )


async def confirm_batch(session: AsyncSession, *, client_id: str, kind: str) -> ConfirmResult:
    """Acknowledge the outstanding batch; confirming with nothing pending is a protocol error."""
    kind = normalize_kind(kind)
    cursor = await get_cursor(session, client_id, kind)
    ensure_can_confirm(cursor_state(cursor))
    result = await session.execute(
        update(DeliveryCursor)
        .where(DeliveryCursor.id == cursor.id, DeliveryCursor.pending_confirmation.is_(True))
        .values(pending_confirmation=False, confirmed_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ProtocolViolationError("No batch is pending confirmation")
    await session.commit()
    logger.info("delivery_confirmed client_id=%s kind=%s", client_id, kind)
    return ConfirmResult(kind=kind, total_delivered=cursor.total_delivered)


@dataclass
class RecordDetail:
    record: Any
    movements: list[ProcessMovement] | None = None
    documents: list[ProcessDocument] | None = None


async def get_record(
    session: AsyncSession,
    *,
    client_id: str,
    kind: str,
    record_id: str,
    include: set[str] | None = None,
) -> RecordDetail:
    """Fetch one record by id, outside the cursor but still entitlement-scoped."""
    kind = normalize_kind(kind)
    include = include or set()
    query = _build_query(client_id, kind, RecordFilters()).order_by(None)
    model = {KIND_PROCESSES: MonitoredResource, KIND_DISTRIBUTIONS: Distribution, KIND_PUBLICATIONS: Publication}[kind]
    result = await session.execute(query.where(model.id == record_id))
    record = result.scalar_one_or_none()
    if record is None:
        raise RecordNotFoundError(f"{kind} record {record_id} not found")

    detail = RecordDetail(record=record)
    if kind == KIND_PROCESSES:
        if "movements" in include:
            movements = await session.execute(
                select(ProcessMovement)
                .where(ProcessMovement.process_id == record.id)
                .order_by(ProcessMovement.movement_date.desc().nulls_last())
            )
            detail.movements = list(movements.scalars().all())
        if "documents" in include:
            documents = await session.execute(
                select(ProcessDocument)
                .where(ProcessDocument.process_id == record.id)
                .order_by(ProcessDocument.created_at.desc())
            )
            detail.documents = list(documents.scalars().all())
    return detail
