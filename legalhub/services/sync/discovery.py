from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from legalhub.core.config import get_settings
from legalhub.core.errors import InvalidRequestError, VendorFailureError
from legalhub.domain.kinds import (
    RESOURCE_CASE,
    RESOURCE_DISTRIBUTION_TERM,
    RESOURCE_PUBLICATION_TERM,
    RESOURCE_STATUS_REGISTERED,
    RESOURCE_TYPE_FOR_KIND,
    normalize_kind,
)
from legalhub.domain.models import MonitoredResource, VendorService, utc_now
from legalhub.persistence.db import SessionLocal
from legalhub.services.call_log import SyncRunLogger
from legalhub.services.sync.feeds import first_field, text_field
from legalhub.services.telemetry import increment_counter
from legalhub.services.vendor import operations as ops
from legalhub.services.vendor.base import VendorClient
from legalhub.services.vendor.factory import VendorClientFactory, build_vendor_client
from legalhub.services.vendor.results import expect_structs


logger = logging.getLogger(__name__)

# Vendor case status codes (codStatus).
CASE_STATUS_VALIDATING = 2
CASE_STATUS_LABELS = {
    2: "Validando",
    4: "Cadastrado",
    5: "Arquivado",
    6: "Segredo de Justiça",
    7: "Erro na Validação",
}
_CASE_STATUS_BY_TEXT = {
    "VALIDANDO": 2,
    "CADASTRADO": 4,
    "ARQUIVADO": 5,
    "SEGREDO DE JUSTICA": 6,
    "SEGREDO DE JUSTIÇA": 6,
    "ERRO": 7,
}

_LIST_OPERATIONS = {
    RESOURCE_CASE: ops.LIST_CASES,
    RESOURCE_DISTRIBUTION_TERM: ops.LIST_DISTRIBUTION_TERMS,
    RESOURCE_PUBLICATION_TERM: ops.LIST_PUBLICATION_TERMS,
}

_TRUE_FLAGS = {"1", "true", "s", "sim", "y", "yes"}


@dataclass(frozen=True)
class ListedResource:
    """One entry of the vendor's "what is registered for this office" listing."""

    natural_key: str
    vendor_code: str | None
    is_active: bool = True
    status_code: int | None = None
    tribunal: str | None = None
    uf: str | None = None
    instance: str | None = None
    variations: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class DiscoveryResult:
    service_id: str
    resource_type: str
    listed: int
    created: int
    updated: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "resource_type": self.resource_type,
            "listed": self.listed,
            "created": self.created,
            "updated": self.updated,
        }


def service_office_code(service: VendorService) -> int | None:
    if service.office_code is not None:
        return service.office_code
    return get_settings().vendor_default_office_code


def match_key(resource_type: str, natural_key: str) -> str:
    # Case numbers are compared by digits (CNJ punctuation varies); terms case-insensitively.
    if resource_type == RESOURCE_CASE:
        return re.sub(r"\D", "", natural_key) or natural_key.strip()
    return " ".join(natural_key.split()).casefold()


def _flag(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_FLAGS


def case_status_code(item: dict[str, Any]) -> int:
    code = first_field(item, "codStatus", "statusCode")
    if code is not None:
        try:
            return int(code)
        except (TypeError, ValueError):
            pass
    text = str(item.get("status") or "").strip().upper()
    return _CASE_STATUS_BY_TEXT.get(text, CASE_STATUS_VALIDATING)


def case_status_label(code: int | None, fallback: Any = None) -> str | None:
    if code in CASE_STATUS_LABELS:
        return CASE_STATUS_LABELS[code]
    return text_field(fallback)


def _variations(raw: Any) -> tuple[str, ...]:
    values: list[str] = []
    for entry in raw or []:
        text = text_field(entry.get("termo") if isinstance(entry, dict) else entry)
        if text:
            values.append(text)
    return tuple(values)


def _parse_cases(items: list[dict[str, Any]], office_code: int | None) -> list[ListedResource]:
    # The listing may span several offices and repeat a case; keep the most advanced status.
    by_key: dict[str, ListedResource] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        item_office = item.get("codEscritorio")
        if office_code is not None and item_office not in (None, "") and str(item_office) != str(office_code):
            continue
        number = text_field(first_field(item, "numProcesso", "numCNJ"))
        if number is None:
            continue
        status_code = case_status_code(item)
        key = match_key(RESOURCE_CASE, number)
        current = by_key.get(key)
        if current is not None and (current.status_code or 0) >= status_code:
            continue
        instance = first_field(item, "instancia", "instance")
        by_key[key] = ListedResource(
            natural_key=number,
            vendor_code=text_field(item.get("codProcesso")),
            status_code=status_code,
            tribunal=text_field(item.get("tribunal")),
            uf=text_field(first_field(item, "uf", "UF")),
            instance=str(instance) if instance is not None else None,
            raw=item,
        )
    return list(by_key.values())


def _parse_terms(resource_type: str, items: list[dict[str, Any]]) -> list[ListedResource]:
    by_key: dict[str, ListedResource] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        name = text_field(first_field(item, "nome", "Nome", "term"))
        if name is None:
            continue
        by_key.setdefault(
            match_key(resource_type, name),
            ListedResource(
                natural_key=name,
                vendor_code=text_field(first_field(item, "codNome", "CodNome")),
                is_active=_flag(item.get("ativo")),
                variations=_variations(item.get("variacoes")),
                raw=item,
            ),
        )
    return list(by_key.values())


def parse_listing(
    resource_type: str, items: list[dict[str, Any]], office_code: int | None
) -> list[ListedResource]:
    if resource_type == RESOURCE_CASE:
        return _parse_cases(items, office_code)
    return _parse_terms(resource_type, items)


async def list_registered(client: VendorClient, service: VendorService, resource_type: str) -> list[ListedResource]:
    """Ask the vendor what it already monitors for this service's office."""
    operation = _LIST_OPERATIONS.get(resource_type)
    if operation is None:
        raise InvalidRequestError(f"Unsupported resource type: {resource_type}")
    office_code = service_office_code(service)
    try:
        result = await client.call(operation, {"codEscritorio": office_code})
    except VendorFailureError as exc:
        # The name listings answer 400 when the office has nothing registered.
        if exc.status_code == 400 and resource_type != RESOURCE_CASE:
            return []
        raise
    return parse_listing(resource_type, expect_structs(result, operation=operation.name), office_code)


async def lookup_vendor_code(
    client: VendorClient, service: VendorService, resource_type: str, natural_key: str
) -> str | None:
    wanted = match_key(resource_type, natural_key)
    for entry in await list_registered(client, service, resource_type):
        if match_key(resource_type, entry.natural_key) == wanted:
            return entry.vendor_code
    return None


def _apply_listing(resource: MonitoredResource, entry: ListedResource) -> None:
    if entry.vendor_code is not None:
        resource.vendor_code = entry.vendor_code
    resource.status = RESOURCE_STATUS_REGISTERED
    resource.removed_at = None
    resource.is_active = entry.is_active
    if entry.status_code is not None:
        resource.vendor_status_code = entry.status_code
        resource.vendor_status = case_status_label(entry.status_code, entry.raw.get("descricaoStatus"))
        resource.status_checked_at = utc_now()
    resource.tribunal = entry.tribunal or resource.tribunal
    resource.uf = entry.uf or resource.uf
    resource.instance = entry.instance or resource.instance
    payload = dict(resource.payload_json or {})
    if entry.variations:
        payload["variations"] = list(entry.variations)
    payload["vendor_listing"] = entry.raw
    resource.payload_json = payload


async def upsert_listed(
    session: AsyncSession, service: VendorService, resource_type: str, listed: list[ListedResource]
) -> tuple[int, int]:
    """Create or refresh local rows for everything the vendor lists.

    Rows are matched on the normalized natural key so a case number stored
    with different punctuation is not duplicated. Client links are untouched.
    """
    result = await session.execute(
        select(MonitoredResource).where(
            MonitoredResource.service_id == service.id,
            MonitoredResource.resource_type == resource_type,
        )
    )
    existing = {match_key(resource_type, row.natural_key): row for row in result.scalars().all()}
    created = 0
    updated = 0
    for entry in listed:
        key = match_key(resource_type, entry.natural_key)
        resource = existing.get(key)
        if resource is None:
            resource = MonitoredResource(
                service_id=service.id,
                resource_type=resource_type,
                natural_key=entry.natural_key,
                payload_json={},
            )
            session.add(resource)
            existing[key] = resource
            created += 1
        else:
            updated += 1
        _apply_listing(resource, entry)
    await session.commit()
    return created, updated


async def discover_resources(
    service: VendorService,
    *,
    client_factory: VendorClientFactory = build_vendor_client,
) -> DiscoveryResult:
    """Import the registrations the vendor holds for a service into the local store.

    Covers resources registered outside the hub and registrations whose code
    was lost, so parent linking and removals can address them by code.
    """
    resource_type = RESOURCE_TYPE_FOR_KIND[normalize_kind(service.kind)]
    run_logger = SyncRunLogger(service_id=service.id, sync_type=f"{resource_type}_discovery")
    await run_logger.start()
    try:
        client = client_factory(service, run_logger=run_logger)
        listed = await list_registered(client, service, resource_type)
        async with SessionLocal() as session:
            created, updated = await upsert_listed(session, service, resource_type, listed)
    except Exception as exc:
        await run_logger.error(str(exc))
        raise
    await run_logger.success(len(listed))
    increment_counter("discovery_runs")
    logger.info(
        "resource_discovery_done service_id=%s type=%s listed=%s created=%s updated=%s",
        service.id,
        resource_type,
        len(listed),
        created,
        updated,
    )
    return DiscoveryResult(
        service_id=service.id, resource_type=resource_type, listed=len(listed), created=created, updated=updated
    )
