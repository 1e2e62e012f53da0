from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from legalhub.domain.kinds import (
    KIND_DISTRIBUTIONS,
    KIND_PROCESSES,
    KIND_PUBLICATIONS,
    RESOURCE_CASE,
    RESOURCE_DISTRIBUTION_TERM,
)
from legalhub.domain.models import (
    Distribution,
    MonitoredResource,
    ProcessDocument,
    ProcessMovement,
    Publication,
    VendorService,
)
from legalhub.services.vendor import operations as ops
from legalhub.services.vendor.operations import VendorOperation


# (session, service_id, vendor parent codes) -> {code: local id}
ParentResolver = Callable[[AsyncSession, str, set[str]], Awaitable[dict[str, str]]]


@dataclass(frozen=True)
class ParentLink:
    """A nullable foreign key on a child record, back-filled from a vendor code."""

    column: str
    code_column: str
    resolve: ParentResolver


@dataclass(frozen=True)
class FeedSpec:
    """One vendor "new records" queue and how its items map onto a table."""

    name: str
    kind: str
    fetch: VendorOperation
    confirm: VendorOperation
    revert: VendorOperation
    model: type
    id_fields: tuple[str, ...]
    to_row: Callable[[dict[str, Any]], dict[str, Any]]
    parents: tuple[ParentLink, ...] = ()
    fetch_params: Callable[[VendorService], dict[str, Any]] | None = None

    def vendor_id(self, item: dict[str, Any]) -> int | None:
        for field_name in self.id_fields:
            value = item.get(field_name)
            if value is None or value == "":
                continue
            try:
                return int(value)
            except (TypeError, ValueError):
                return None
        return None


def text_field(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def first_field(item: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


async def resolve_cases(session: AsyncSession, service_id: str, codes: set[str]) -> dict[str, str]:
    if not codes:
        return {}
    result = await session.execute(
        select(MonitoredResource.vendor_code, MonitoredResource.id).where(
            MonitoredResource.service_id == service_id,
            MonitoredResource.resource_type == RESOURCE_CASE,
            MonitoredResource.vendor_code.in_(codes),
        )
    )
    return {code: resource_id for code, resource_id in result.all()}


async def resolve_movements(session: AsyncSession, service_id: str, codes: set[str]) -> dict[str, str]:
    numeric = {int(code) for code in codes if code.isdigit()}
    if not numeric:
        return {}
    result = await session.execute(
        select(ProcessMovement.vendor_id, ProcessMovement.id).where(ProcessMovement.vendor_id.in_(numeric))
    )
    return {str(vendor_id): movement_id for vendor_id, movement_id in result.all()}


async def resolve_distribution_terms(session: AsyncSession, service_id: str, codes: set[str]) -> dict[str, str]:
    if not codes:
        return {}
    result = await session.execute(
        select(MonitoredResource.natural_key, MonitoredResource.id).where(
            MonitoredResource.service_id == service_id,
            MonitoredResource.resource_type == RESOURCE_DISTRIBUTION_TERM,
            MonitoredResource.natural_key.in_(codes),
        )
    )
    return {term: resource_id for term, resource_id in result.all()}


def movement_row(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "vendor_case_code": text_field(item.get("codProcesso")),
        "movement_type": text_field(first_field(item, "tipoAndamento", "tipo")),
        "movement_date": text_field(first_field(item, "dataAndamento", "data")),
        "description": text_field(first_field(item, "descricao", "textoAndamento")),
    }


def document_row(item: dict[str, Any]) -> dict[str, Any]:
    size = item.get("tamanhoBytes")
    return {
        "vendor_case_code": text_field(item.get("codProcesso")),
        "vendor_movement_code": text_field(item.get("codAndamento")),
        "document_type": text_field(item.get("tipoDocumento")),
        "file_name": text_field(item.get("nomeArquivo")),
        "document_url": text_field(item.get("urlDocumento")),
        "size_bytes": int(size) if size not in (None, "") else None,
    }


def distribution_row(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "term": text_field(first_field(item, "termo", "nome", "term")),
        "process_number": text_field(first_field(item, "numeroProcesso", "numProcesso")),
        "tribunal": text_field(item.get("tribunal")),
        "distribution_date": text_field(first_field(item, "dataDistribuicao", "data")),
    }


def publication_row(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "gazette_name": text_field(first_field(item, "nomeDiario", "nomeGazeta", "diario")),
        "content": text_field(first_field(item, "conteudo", "content", "texto")),
        "publication_date": text_field(first_field(item, "dataPublicacao", "data")),
    }


CASE_PARENT = ParentLink("process_id", "vendor_case_code", resolve_cases)
MOVEMENT_PARENT = ParentLink("movement_id", "vendor_movement_code", resolve_movements)
TERM_PARENT = ParentLink("term_id", "term", resolve_distribution_terms)


MOVEMENTS_FEED = FeedSpec(
    name="movements",
    kind=KIND_PROCESSES,
    fetch=ops.FETCH_MOVEMENTS,
    confirm=ops.CONFIRM_MOVEMENTS,
    revert=ops.REVERT_MOVEMENTS,
    model=ProcessMovement,
    id_fields=("codAndamento",),
    to_row=movement_row,
    parents=(CASE_PARENT,),
)

DOCUMENTS_FEED = FeedSpec(
    name="documents",
    kind=KIND_PROCESSES,
    fetch=ops.FETCH_DOCUMENTS,
    confirm=ops.CONFIRM_DOCUMENTS,
    revert=ops.REVERT_DOCUMENTS,
    model=ProcessDocument,
    id_fields=("codDocumento",),
    to_row=document_row,
    parents=(CASE_PARENT, MOVEMENT_PARENT),
)

DISTRIBUTIONS_FEED = FeedSpec(
    name="distributions",
    kind=KIND_DISTRIBUTIONS,
    fetch=ops.FETCH_DISTRIBUTIONS,
    confirm=ops.CONFIRM_DISTRIBUTIONS,
    revert=ops.REVERT_DISTRIBUTIONS,
    model=Distribution,
    id_fields=("codDistribuicao", "id"),
    to_row=distribution_row,
    parents=(TERM_PARENT,),
)

PUBLICATIONS_FEED = FeedSpec(
    name="publications",
    kind=KIND_PUBLICATIONS,
    fetch=ops.FETCH_PUBLICATIONS,
    confirm=ops.CONFIRM_PUBLICATIONS,
    revert=ops.REVERT_PUBLICATIONS,
    model=Publication,
    id_fields=("codPublicacao", "id"),
    to_row=publication_row,
)


# Feeds drained per kind, in order; children of a case come after movements.
FEEDS_BY_KIND: dict[str, tuple[FeedSpec, ...]] = {
    KIND_PROCESSES: (MOVEMENTS_FEED, DOCUMENTS_FEED),
    KIND_DISTRIBUTIONS: (DISTRIBUTIONS_FEED,),
    KIND_PUBLICATIONS: (PUBLICATIONS_FEED,),
}

FEEDS_BY_NAME: dict[str, FeedSpec] = {
    feed.name: feed for feeds in FEEDS_BY_KIND.values() for feed in feeds
}
