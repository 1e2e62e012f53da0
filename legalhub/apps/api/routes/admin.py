from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from legalhub.apps.api.deps import get_db, get_vendor_client_factory, require_platform
from legalhub.core.errors import RecordNotFoundError
from legalhub.domain.models import ClientSystem, MonitoredResource, VendorService
from legalhub.services.gateway import GatewayDecision
from legalhub.services.registrar import (
    refresh_case_status,
    register_for_client,
    release_for_client,
    set_active,
)
from legalhub.services.reversal import revert_confirmations
from legalhub.services.sync.discovery import discover_resources
from legalhub.services.sync.orphans import link_orphans
from legalhub.services.sync.sweep import list_sync_targets, sweep
from legalhub.services.vendor.factory import VendorClientFactory


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


class RegisterResourceRequest(BaseModel):
    service_id: str
    client_id: str
    resource_type: str
    natural_key: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class ResourceResponse(BaseModel):
    id: str
    service_id: str
    resource_type: str
    natural_key: str
    vendor_code: str | None
    status: str
    is_active: bool
    vendor_status_code: int | None = None
    vendor_status: str | None = None


class RegisterResourceResponse(BaseModel):
    resource: ResourceResponse
    registered_upstream: bool


class ReleaseResponse(BaseModel):
    resource_id: str
    removed_upstream: bool
    remaining_links: int


class SyncRequest(BaseModel):
    kinds: list[str] | None = None
    service_ids: list[str] | None = None
    force: bool = False


class DiscoveryRequest(BaseModel):
    kinds: list[str] | None = None
    service_ids: list[str] | None = None


class OrphanLinkRequest(BaseModel):
    service_id: str | None = None
    feeds: list[str] | None = None


class RevertRequest(BaseModel):
    service_id: str
    feed: str
    vendor_ids: list[int] = Field(min_length=1)


def _to_resource_response(resource: MonitoredResource) -> ResourceResponse:
    return ResourceResponse(
        id=resource.id,
        service_id=resource.service_id,
        resource_type=resource.resource_type,
        natural_key=resource.natural_key,
        vendor_code=resource.vendor_code,
        status=resource.status,
        is_active=resource.is_active,
        vendor_status_code=resource.vendor_status_code,
        vendor_status=resource.vendor_status,
    )


async def _get_service(db: AsyncSession, service_id: str) -> VendorService:
    service = await db.get(VendorService, service_id)
    if service is None:
        raise RecordNotFoundError(f"Vendor service {service_id} not found")
    return service


@router.post("/resources", status_code=201, response_model=RegisterResourceResponse)
async def register_resource(
    payload: RegisterResourceRequest,
    db: AsyncSession = Depends(get_db),
    _platform: GatewayDecision = Depends(require_platform),
    client_factory: VendorClientFactory = Depends(get_vendor_client_factory),
) -> RegisterResourceResponse:
    service = await _get_service(db, payload.service_id)
    if await db.get(ClientSystem, payload.client_id) is None:
        raise RecordNotFoundError(f"Client system {payload.client_id} not found")
    result = await register_for_client(
        db,
        service=service,
        resource_type=payload.resource_type,
        natural_key=payload.natural_key,
        client_id=payload.client_id,
        payload=payload.payload,
        client_factory=client_factory,
    )
    return RegisterResourceResponse(
        resource=_to_resource_response(result.resource),
        registered_upstream=result.registered_upstream,
    )


@router.delete("/resources/{resource_id}/clients/{client_id}", response_model=ReleaseResponse)
async def release_resource(
    resource_id: str,
    client_id: str,
    db: AsyncSession = Depends(get_db),
    _platform: GatewayDecision = Depends(require_platform),
    client_factory: VendorClientFactory = Depends(get_vendor_client_factory),
) -> ReleaseResponse:
    result = await release_for_client(
        db, resource_id=resource_id, client_id=client_id, client_factory=client_factory
    )
    return ReleaseResponse(
        resource_id=result.resource_id,
        removed_upstream=result.removed_upstream,
        remaining_links=result.remaining_links,
    )


@router.post("/resources/{resource_id}/activate", response_model=ResourceResponse)
async def activate_resource(
    resource_id: str,
    db: AsyncSession = Depends(get_db),
    _platform: GatewayDecision = Depends(require_platform),
    client_factory: VendorClientFactory = Depends(get_vendor_client_factory),
) -> ResourceResponse:
    resource = await set_active(db, resource_id=resource_id, active=True, client_factory=client_factory)
    return _to_resource_response(resource)


@router.post("/resources/{resource_id}/deactivate", response_model=ResourceResponse)
async def deactivate_resource(
    resource_id: str,
    db: AsyncSession = Depends(get_db),
    _platform: GatewayDecision = Depends(require_platform),
    client_factory: VendorClientFactory = Depends(get_vendor_client_factory),
) -> ResourceResponse:
    resource = await set_active(db, resource_id=resource_id, active=False, client_factory=client_factory)
    return _to_resource_response(resource)


@router.post("/resources/{resource_id}/status", response_model=ResourceResponse)
async def refresh_resource_status(
    resource_id: str,
    db: AsyncSession = Depends(get_db),
    _platform: GatewayDecision = Depends(require_platform),
    client_factory: VendorClientFactory = Depends(get_vendor_client_factory),
) -> ResourceResponse:
    resource = await refresh_case_status(db, resource_id=resource_id, client_factory=client_factory)
    return _to_resource_response(resource)


@router.post("/discovery")
async def trigger_discovery(
    payload: DiscoveryRequest,
    _platform: GatewayDecision = Depends(require_platform),
    client_factory: VendorClientFactory = Depends(get_vendor_client_factory),
) -> dict[str, Any]:
    # Services are imported one by one; a vendor failure stops the request.
    results = []
    for service in await list_sync_targets(kinds=payload.kinds, service_ids=payload.service_ids):
        result = await discover_resources(service, client_factory=client_factory)
        results.append(result.as_dict())
    return {"services": results}


@router.post("/sync")
async def trigger_sync(
    payload: SyncRequest,
    _platform: GatewayDecision = Depends(require_platform),
    client_factory: VendorClientFactory = Depends(get_vendor_client_factory),
) -> dict[str, Any]:
    reports = await sweep(
        kinds=payload.kinds,
        service_ids=payload.service_ids,
        force=payload.force,
        client_factory=client_factory,
    )
    return {"services": [report.as_dict() for report in reports]}


@router.post("/orphans/link")
async def trigger_orphan_linking(
    payload: OrphanLinkRequest,
    _platform: GatewayDecision = Depends(require_platform),
) -> dict[str, Any]:
    linked = await link_orphans(service_id=payload.service_id, feeds=payload.feeds)
    return {"linked": linked}


@router.post("/confirmations/revert")
async def revert_vendor_confirmations(
    payload: RevertRequest,
    db: AsyncSession = Depends(get_db),
    _platform: GatewayDecision = Depends(require_platform),
    client_factory: VendorClientFactory = Depends(get_vendor_client_factory),
) -> dict[str, Any]:
    service = await _get_service(db, payload.service_id)
    result = await revert_confirmations(
        service, feed=payload.feed, vendor_ids=payload.vendor_ids, client_factory=client_factory
    )
    return result.as_dict()
