from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from legalhub.core.errors import (
    InvalidRequestError,
    RecordNotFoundError,
    VendorDuplicateError,
    VendorError,
    VendorFailureError,
)
from legalhub.domain.kinds import (
    RESOURCE_CASE,
    RESOURCE_DISTRIBUTION_TERM,
    RESOURCE_PUBLICATION_TERM,
    RESOURCE_STATUS_CODE_UNKNOWN,
    RESOURCE_STATUS_REGISTERED,
    RESOURCE_STATUS_REMOVED,
    RESOURCE_TYPES,
)
from legalhub.domain.models import ClientLink, MonitoredResource, VendorService, utc_now
from legalhub.services.call_log import SyncRunLogger
from legalhub.services.sync.discovery import (
    case_status_code,
    case_status_label,
    lookup_vendor_code,
    service_office_code,
)
from legalhub.services.vendor import operations as ops
from legalhub.services.vendor.factory import VendorClientFactory, build_vendor_client
from legalhub.services.vendor.operations import VendorOperation
from legalhub.services.vendor.results import VendorResult, expect_structs, first_value


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceOperations:
    register: VendorOperation
    remove: VendorOperation
    code_field: str
    activate: VendorOperation | None = None
    deactivate: VendorOperation | None = None


_OPERATIONS: dict[str, ResourceOperations] = {
    RESOURCE_CASE: ResourceOperations(ops.REGISTER_CASE, ops.REMOVE_CASE, "codProcesso"),
    RESOURCE_DISTRIBUTION_TERM: ResourceOperations(
        ops.REGISTER_DISTRIBUTION_TERM,
        ops.REMOVE_DISTRIBUTION_TERM,
        "codNome",
        ops.ACTIVATE_DISTRIBUTION_TERM,
        ops.DEACTIVATE_DISTRIBUTION_TERM,
    ),
    RESOURCE_PUBLICATION_TERM: ResourceOperations(
        ops.REGISTER_PUBLICATION_TERM,
        ops.REMOVE_PUBLICATION_TERM,
        "codNome",
        ops.ACTIVATE_PUBLICATION_TERM,
        ops.DEACTIVATE_PUBLICATION_TERM,
    ),
}


@dataclass(frozen=True)
class RegistrationResult:
    resource: MonitoredResource
    registered_upstream: bool


@dataclass(frozen=True)
class ReleaseResult:
    resource_id: str
    removed_upstream: bool
    remaining_links: int


def normalize_natural_key(resource_type: str, natural_key: str) -> str:
    if resource_type not in RESOURCE_TYPES:
        raise InvalidRequestError(f"Unsupported resource type: {resource_type}")
    key = (natural_key or "").strip()
    if not key:
        raise InvalidRequestError("natural_key is required")
    return key


def registration_params(
    resource_type: str, natural_key: str, service: VendorService, payload: dict[str, Any]
) -> dict[str, Any]:
    # Field names follow the vendor's operation signatures.
    office_code = service_office_code(service)
    if resource_type == RESOURCE_CASE:
        return {
            "numProcesso": natural_key,
            "codEscritorio": office_code,
            "UF": payload.get("uf") or "",
            "instancia": int(payload.get("instance") or 0),
        }
    return {
        "codEscritorio": office_code,
        "nome": natural_key,
        "variacoes": payload.get("variations") or [],
    }


def removal_params(resource: MonitoredResource, service: VendorService) -> dict[str, Any]:
    code = _vendor_code_param(resource.vendor_code)
    if resource.resource_type == RESOURCE_CASE:
        return {"codProcesso": code}
    return {"codEscritorio": service_office_code(service), "codNome": code}


def _vendor_code_param(code: str | None) -> Any:
    # Codes are numeric upstream; keep the int type so SOAP sends xsd:int.
    if code is not None and code.isdigit():
        return int(code)
    return code


async def _find_resource(
    session: AsyncSession, *, service_id: str, resource_type: str, natural_key: str
) -> MonitoredResource | None:
    result = await session.execute(
        select(MonitoredResource).where(
            MonitoredResource.service_id == service_id,
            MonitoredResource.resource_type == resource_type,
            MonitoredResource.natural_key == natural_key,
        )
    )
    return result.scalar_one_or_none()


async def _ensure_link(session: AsyncSession, *, client_id: str, resource_id: str) -> None:
    # Idempotent link creation; a concurrent insert of the same pair is fine.
    existing = await session.execute(
        select(ClientLink.id).where(ClientLink.client_id == client_id, ClientLink.resource_id == resource_id)
    )
    if existing.scalar_one_or_none() is not None:
        return
    session.add(ClientLink(client_id=client_id, resource_id=resource_id))
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()


async def register_for_client(
    session: AsyncSession,
    *,
    service: VendorService,
    resource_type: str,
    natural_key: str,
    client_id: str,
    payload: dict[str, Any] | None = None,
    client_factory: VendorClientFactory = build_vendor_client,
) -> RegistrationResult:
    """Register a resource upstream at most once and link the client to it.

    A resource already tracked locally is only linked. Otherwise the vendor
    is called first; a vendor "already registered" answer counts as success.
    The link is written only after the resource row exists, so a vendor
    failure never leaves an orphaned link.
    """
    natural_key = normalize_natural_key(resource_type, natural_key)
    payload = payload or {}

    resource = await _find_resource(
        session, service_id=service.id, resource_type=resource_type, natural_key=natural_key
    )
    registered_upstream = False
    if resource is not None and resource.status == RESOURCE_STATUS_REMOVED:
        # Removed upstream earlier; a new interest re-registers it.
        resource = await _reregister(session, resource, service, payload, client_factory)
        registered_upstream = True
    elif resource is None:
        resource, registered_upstream = await _register_new(
            session,
            service=service,
            resource_type=resource_type,
            natural_key=natural_key,
            payload=payload,
            client_factory=client_factory,
        )

    await _ensure_link(session, client_id=client_id, resource_id=resource.id)
    logger.info(
        "resource_linked resource_id=%s client_id=%s registered_upstream=%s",
        resource.id,
        client_id,
        registered_upstream,
    )
    return RegistrationResult(resource=resource, registered_upstream=registered_upstream)


async def _call_register(
    service: VendorService,
    resource_type: str,
    natural_key: str,
    payload: dict[str, Any],
    client_factory: VendorClientFactory,
) -> tuple[str | None, dict[str, Any]]:
    run_logger = SyncRunLogger(service_id=service.id, sync_type=f"{resource_type}_register")
    await run_logger.start()
    client = client_factory(service, run_logger=run_logger)
    operations = _OPERATIONS[resource_type]
    try:
        result: VendorResult = await client.call(
            operations.register, registration_params(resource_type, natural_key, service, payload)
        )
    except VendorDuplicateError:
        # Registered upstream by an earlier attempt whose local write was lost.
        logger.warning("vendor_duplicate_registration type=%s key=%s", resource_type, natural_key)
        code = None
        try:
            code = await lookup_vendor_code(client, service, resource_type, natural_key)
        except VendorError as exc:
            logger.warning("vendor_code_lookup_failed type=%s key=%s", resource_type, natural_key, exc_info=exc)
        await run_logger.success(1)
        return code, {"duplicate": True}
    except Exception as exc:
        await run_logger.error(str(exc))
        raise
    await run_logger.success(1)
    code = first_value(result, operations.code_field)
    return (str(code) if code is not None else None), {"vendor_response": _result_summary(result)}


def _registered_status(vendor_code: str | None) -> str:
    return RESOURCE_STATUS_REGISTERED if vendor_code is not None else RESOURCE_STATUS_CODE_UNKNOWN


def _result_summary(result: VendorResult) -> Any:
    items = getattr(result, "items", None)
    if items is not None:
        return items[:1]
    return None


async def _register_new(
    session: AsyncSession,
    *,
    service: VendorService,
    resource_type: str,
    natural_key: str,
    payload: dict[str, Any],
    client_factory: VendorClientFactory,
) -> tuple[MonitoredResource, bool]:
    vendor_code, extra = await _call_register(service, resource_type, natural_key, payload, client_factory)
    resource = MonitoredResource(
        service_id=service.id,
        resource_type=resource_type,
        natural_key=natural_key,
        vendor_code=vendor_code,
        status=_registered_status(vendor_code),
        is_active=True,
        tribunal=payload.get("tribunal"),
        instance=str(payload["instance"]) if payload.get("instance") is not None else None,
        uf=payload.get("uf"),
        payload_json={**payload, **extra},
    )
    session.add(resource)
    try:
        await session.commit()
    except IntegrityError:
        # Another request inserted the same natural key first; use its row.
        await session.rollback()
        existing = await _find_resource(
            session, service_id=service.id, resource_type=resource_type, natural_key=natural_key
        )
        if existing is None:
            raise
        return existing, True
    return resource, True


async def _reregister(
    session: AsyncSession,
    resource: MonitoredResource,
    service: VendorService,
    payload: dict[str, Any],
    client_factory: VendorClientFactory,
) -> MonitoredResource:
    vendor_code, extra = await _call_register(
        service, resource.resource_type, resource.natural_key, payload, client_factory
    )
    # The old code died with the upstream removal.
    resource.vendor_code = vendor_code
    resource.status = _registered_status(resource.vendor_code)
    resource.is_active = True
    resource.removed_at = None
    resource.payload_json = {**(resource.payload_json or {}), **payload, **extra}
    await session.commit()
    return resource


async def release_for_client(
    session: AsyncSession,
    *,
    resource_id: str,
    client_id: str,
    client_factory: VendorClientFactory = build_vendor_client,
) -> ReleaseResult:
    """Drop one client's interest; remove upstream only when nobody is left.

    The resource row is locked for the whole decision so concurrent releases
    of the same resource serialise and exactly one of them sees zero.
    """
    result = await session.execute(
        select(MonitoredResource).where(MonitoredResource.id == resource_id).with_for_update()
    )
    resource = result.scalar_one_or_none()
    if resource is None:
        raise RecordNotFoundError(f"Resource {resource_id} not found")

    link_result = await session.execute(
        select(ClientLink).where(ClientLink.resource_id == resource_id, ClientLink.client_id == client_id)
    )
    link = link_result.scalar_one_or_none()
    if link is None:
        await session.rollback()
        raise RecordNotFoundError(f"Client {client_id} is not linked to resource {resource_id}")

    others = await session.execute(
        select(func.count(ClientLink.id)).where(
            ClientLink.resource_id == resource_id, ClientLink.client_id != client_id
        )
    )
    remaining = int(others.scalar_one() or 0)

    removed_upstream = False
    if remaining == 0 and resource.status != RESOURCE_STATUS_REMOVED:
        service = await session.get(VendorService, resource.service_id)
        if service is None:
            await session.rollback()
            raise RecordNotFoundError(f"Vendor service {resource.service_id} not found")
        # The vendor call precedes the unlink; a failure leaves the link in place.
        try:
            await _call_by_code(
                resource,
                service,
                _OPERATIONS[resource.resource_type].remove,
                sync_type=f"{resource.resource_type}_remove",
                client_factory=client_factory,
            )
        except Exception:
            await session.rollback()
            raise
        resource.status = RESOURCE_STATUS_REMOVED
        resource.is_active = False
        resource.removed_at = utc_now()
        removed_upstream = True

    await session.delete(link)
    await session.commit()
    logger.info(
        "resource_released resource_id=%s client_id=%s remaining=%s removed_upstream=%s",
        resource_id,
        client_id,
        remaining,
        removed_upstream,
    )
    return ReleaseResult(resource_id=resource_id, removed_upstream=removed_upstream, remaining_links=remaining)


async def _call_by_code(
    resource: MonitoredResource,
    service: VendorService,
    operation: VendorOperation,
    *,
    sync_type: str,
    client_factory: VendorClientFactory,
) -> None:
    # Calls addressed by vendor code; a missing code is looked up in the vendor listing first.
    run_logger = SyncRunLogger(service_id=service.id, sync_type=sync_type)
    await run_logger.start()
    client = client_factory(service, run_logger=run_logger)
    try:
        if resource.vendor_code is None:
            code = await lookup_vendor_code(client, service, resource.resource_type, resource.natural_key)
            if code is None:
                raise VendorFailureError(
                    f"Vendor code for {resource.resource_type} {resource.natural_key!r} is unknown"
                )
            logger.info("vendor_code_recovered resource_id=%s code=%s", resource.id, code)
            resource.vendor_code = code
            if resource.status == RESOURCE_STATUS_CODE_UNKNOWN:
                resource.status = RESOURCE_STATUS_REGISTERED
        await client.call(operation, removal_params(resource, service))
    except Exception as exc:
        await run_logger.error(str(exc))
        raise
    await run_logger.success(1)


async def set_active(
    session: AsyncSession,
    *,
    resource_id: str,
    active: bool,
    client_factory: VendorClientFactory = build_vendor_client,
) -> MonitoredResource:
    """Activate or deactivate a monitored term at the vendor and locally."""
    resource = await session.get(MonitoredResource, resource_id)
    if resource is None:
        raise RecordNotFoundError(f"Resource {resource_id} not found")
    operations = _OPERATIONS[resource.resource_type]
    operation = operations.activate if active else operations.deactivate
    if operation is None:
        raise InvalidRequestError(f"{resource.resource_type} resources cannot be toggled")
    if resource.status == RESOURCE_STATUS_REMOVED:
        raise InvalidRequestError(f"Resource {resource_id} was removed upstream")
    service = await session.get(VendorService, resource.service_id)
    if service is None:
        raise RecordNotFoundError(f"Vendor service {resource.service_id} not found")
    try:
        await _call_by_code(
            resource,
            service,
            operation,
            sync_type=f"{resource.resource_type}_{'activate' if active else 'deactivate'}",
            client_factory=client_factory,
        )
    except Exception:
        await session.rollback()
        raise
    resource.is_active = active
    await session.commit()
    return resource


async def refresh_case_status(
    session: AsyncSession,
    *,
    resource_id: str,
    client_factory: VendorClientFactory = build_vendor_client,
) -> MonitoredResource:
    """Pull the vendor's current status (codStatus) for one monitored case."""
    resource = await session.get(MonitoredResource, resource_id)
    if resource is None:
        raise RecordNotFoundError(f"Resource {resource_id} not found")
    if resource.resource_type != RESOURCE_CASE:
        raise InvalidRequestError("Only cases carry a vendor status")
    if resource.status == RESOURCE_STATUS_REMOVED:
        raise InvalidRequestError(f"Resource {resource_id} was removed upstream")
    service = await session.get(VendorService, resource.service_id)
    if service is None:
        raise RecordNotFoundError(f"Vendor service {resource.service_id} not found")

    run_logger = SyncRunLogger(service_id=service.id, sync_type="case_status")
    await run_logger.start()
    client = client_factory(service, run_logger=run_logger)
    try:
        if resource.vendor_code is None:
            resource.vendor_code = await lookup_vendor_code(client, service, RESOURCE_CASE, resource.natural_key)
            if resource.vendor_code is None:
                raise VendorFailureError(f"Vendor code for case {resource.natural_key!r} is unknown")
            resource.status = RESOURCE_STATUS_REGISTERED
        result = await client.call(ops.CASE_STATUS, {"codProcesso": _vendor_code_param(resource.vendor_code)})
        items = expect_structs(result, operation=ops.CASE_STATUS.name)
    except Exception as exc:
        await session.rollback()
        await run_logger.error(str(exc))
        raise
    await run_logger.success(1)

    if items:
        resource.vendor_status_code = case_status_code(items[0])
        resource.vendor_status = case_status_label(resource.vendor_status_code, items[0].get("descricaoStatus"))
    resource.status_checked_at = utc_now()
    await session.commit()
    logger.info(
        "case_status_refreshed resource_id=%s status_code=%s", resource.id, resource.vendor_status_code
    )
    return resource
