from __future__ import annotations

from typing import Any, Iterable, Sequence

from sqlalchemy import func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from legalhub.persistence.db import dialect_name


def _insert(model: type):
    # ON CONFLICT exists in both dialects under the same API.
    if dialect_name() == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


async def upsert_by_vendor_id(
    session: AsyncSession,
    model: type,
    rows: Sequence[dict[str, Any]],
    *,
    keep_existing: Iterable[str] = (),
) -> None:
    """Insert or refresh vendor records keyed by ``vendor_id`` in one statement.

    Columns listed in ``keep_existing`` are coalesced so a resolved parent
    reference is never overwritten with null by a redelivery.
    """
    if not rows:
        return
    keep = set(keep_existing)
    stmt = _insert(model).values(list(rows))
    table = model.__table__
    updatable = [
        column.name
        for column in table.columns
        if column.name not in {"id", "vendor_id", "created_at"} and column.name in rows[0]
    ]
    set_: dict[str, Any] = {}
    for name in updatable:
        if name in keep:
            set_[name] = func.coalesce(stmt.excluded[name], table.c[name])
        else:
            set_[name] = stmt.excluded[name]
    await session.execute(stmt.on_conflict_do_update(index_elements=["vendor_id"], set_=set_))


async def insert_ignore(
    session: AsyncSession, model: type, rows: Sequence[dict[str, Any]], *, index_elements: list[str]
) -> None:
    if not rows:
        return
    stmt = _insert(model).values(list(rows)).on_conflict_do_nothing(index_elements=index_elements)
    await session.execute(stmt)


async def set_confirmed(session: AsyncSession, model: type, vendor_ids: Sequence[int], confirmed: bool) -> int:
    if not vendor_ids:
        return 0
    result = await session.execute(
        update(model)
        .where(model.vendor_id.in_(list(vendor_ids)))
        .values(is_confirmed=confirmed)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
