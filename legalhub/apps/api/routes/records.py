from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from legalhub.apps.api.deps import authenticate_request, get_db
from legalhub.apps.api.params import parse_filters, parse_include, parse_limit, parse_offset, parse_uuid
from legalhub.core.errors import InvalidRequestError
from legalhub.domain.kinds import KIND_DISTRIBUTIONS, KIND_PROCESSES, KIND_PUBLICATIONS, RECORD_KINDS
from legalhub.services.delivery import (
    BatchPage,
    RecordDetail,
    browse_records,
    confirm_batch,
    get_record,
    next_batch,
)
from legalhub.services.gateway import GatewayDecision


logger = logging.getLogger(__name__)
router = APIRouter(tags=["records"])

_BLOCKED_MESSAGE = "Previous batch is pending confirmation. POST ?action=confirm before requesting more records."


class ProcessOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    natural_key: str
    vendor_code: str | None
    status: str
    is_active: bool
    tribunal: str | None
    instance: str | None
    uf: str | None
    created_at: datetime


class MovementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    vendor_id: int
    movement_type: str | None
    movement_date: str | None
    description: str | None
    created_at: datetime


class DocumentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    vendor_id: int
    movement_id: str | None
    document_type: str | None
    file_name: str | None
    document_url: str | None
    size_bytes: int | None
    created_at: datetime


class DistributionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    vendor_id: int
    term: str | None
    process_number: str | None
    tribunal: str | None
    distribution_date: str | None
    created_at: datetime


class PublicationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    vendor_id: int
    gazette_name: str | None
    content: str | None
    publication_date: str | None
    created_at: datetime


_SCHEMAS: dict[str, type[BaseModel]] = {
    KIND_PROCESSES: ProcessOut,
    KIND_DISTRIBUTIONS: DistributionOut,
    KIND_PUBLICATIONS: PublicationOut,
}


def _resolve_kind(kind: str) -> str:
    # Only the three record kinds exist as /api-{kind} routes.
    normalized = kind.strip().lower()
    if normalized not in RECORD_KINDS:
        raise StarletteHTTPException(status_code=404, detail="Not Found")
    return normalized


def _serialize(kind: str, record: Any) -> dict[str, Any]:
    return _SCHEMAS[kind].model_validate(record).model_dump(mode="json")


def _serialize_detail(kind: str, detail: RecordDetail) -> dict[str, Any]:
    payload = _serialize(kind, detail.record)
    if detail.movements is not None:
        payload["movements"] = [MovementOut.model_validate(row).model_dump(mode="json") for row in detail.movements]
    if detail.documents is not None:
        payload["documents"] = [DocumentOut.model_validate(row).model_dump(mode="json") for row in detail.documents]
    return payload


def _target_client(decision: GatewayDecision, request: Request) -> str:
    # Platform callers act on behalf of the client named in the query string.
    if decision.client_id is not None:
        return decision.client_id
    client_id = request.query_params.get("client_id")
    if not client_id:
        raise InvalidRequestError("client_id is required for platform callers")
    return parse_uuid(client_id, name="client_id")


def _respond(decision: GatewayDecision, body: dict[str, Any]) -> JSONResponse:
    rate_limit = decision.rate_limit
    body["rate_limit"] = rate_limit.as_dict() if rate_limit else None
    headers = rate_limit.headers() if rate_limit else None
    return JSONResponse(content=body, headers=headers)


def _page_body(kind: str, page: BatchPage) -> dict[str, Any]:
    batch: dict[str, Any] = {
        "pending_confirmation": page.pending_confirmation,
        "records_in_batch": page.records_in_batch,
        "total_delivered": page.total_delivered,
    }
    if page.blocked:
        batch["message"] = _BLOCKED_MESSAGE
    if page.read_only:
        batch["read_only"] = True
    return {
        "data": [_serialize(kind, record) for record in page.records],
        "pagination": {
            "total": page.total,
            "limit": page.limit,
            "offset": page.offset,
            "has_more": page.has_more,
        },
        "batch": batch,
    }


@router.get("/api-{kind}")
async def list_records(kind: str, request: Request, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    kind = _resolve_kind(kind)
    decision = await authenticate_request(request, session=db, required_kind=kind)
    client_id = _target_client(decision, request)
    query = dict(request.query_params)

    record_id = query.get("id")
    if record_id is not None:
        detail = await get_record(
            db,
            client_id=client_id,
            kind=kind,
            record_id=parse_uuid(record_id),
            include=parse_include(query.get("include")) if kind == KIND_PROCESSES else None,
        )
        return _respond(decision, {"data": _serialize_detail(kind, detail)})

    # Only the client itself drives its batch handshake.
    fetch_page = browse_records if decision.is_platform else next_batch
    page = await fetch_page(
        db,
        client_id=client_id,
        kind=kind,
        limit=parse_limit(query.get("limit")),
        offset=parse_offset(query.get("offset")),
        filters=parse_filters(kind, query),
    )
    return _respond(decision, _page_body(kind, page))


@router.post("/api-{kind}")
async def confirm_records(kind: str, request: Request, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    kind = _resolve_kind(kind)
    if request.query_params.get("action") != "confirm":
        raise StarletteHTTPException(status_code=405, detail="Method Not Allowed")
    decision = await authenticate_request(request, session=db, required_kind=kind)
    if decision.is_platform:
        raise InvalidRequestError("Platform callers cannot confirm a client's batch")
    client_id = _target_client(decision, request)
    result = await confirm_batch(db, client_id=client_id, kind=kind)
    return _respond(
        decision,
        {"message": "Batch confirmed", "total_delivered": result.total_delivered},
    )
