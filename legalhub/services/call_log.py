from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from legalhub.core.config import get_settings
from legalhub.domain.kinds import SYNC_CANCELLED, SYNC_ERROR, SYNC_IN_PROGRESS, SYNC_SUCCESS
from legalhub.domain.models import CallLog, SyncRun, new_id, utc_now
from legalhub.persistence.db import SessionLocal
from legalhub.services.audit import mask_credential


logger = logging.getLogger(__name__)

# Header and query keys that carry vendor credentials.
_CREDENTIAL_KEYS = {"token", "nomerelacional", "authorization"}


def sanitize_headers(headers: dict[str, Any] | None) -> dict[str, Any]:
    # Truncate credential values to a short prefix plus mask.
    sanitized: dict[str, Any] = {}
    for key, value in (headers or {}).items():
        if str(key).lower() in _CREDENTIAL_KEYS:
            sanitized[key] = mask_credential(str(value)) if value is not None else None
        else:
            sanitized[key] = value
    return sanitized


def summarize_response(body: bytes | str | None, item_count: int | None = None) -> str:
    # Persist sizes only; bodies stay out of the log tables.
    settings = get_settings()
    if body is None:
        size = 0
    elif isinstance(body, bytes):
        size = len(body)
    else:
        size = len(body.encode("utf-8"))
    summary = f"{size} bytes"
    if item_count is not None:
        summary = f"{summary}, {item_count} items"
    return summary[: settings.call_log_summary_max_chars]


def truncate_body(body: str | None) -> str | None:
    if body is None:
        return None
    limit = get_settings().call_log_request_body_max_chars
    if len(body) <= limit:
        return body
    return f"{body[:limit]}...[truncated]"


@dataclass
class CallRecord:
    """One outbound vendor HTTP attempt, ready to persist."""

    call_type: str
    method: str
    url: str
    request_headers: dict[str, Any] = field(default_factory=dict)
    request_body: str | None = None
    response_status: int | None = None
    response_status_text: str | None = None
    response_summary: str | None = None
    duration_ms: float | None = None
    error_message: str | None = None


async def record_call(
    record: CallRecord,
    *,
    service_id: str | None,
    sync_run_id: str | None,
) -> None:
    # Best-effort append; a broken log write never fails the vendor call.
    row = CallLog(
        sync_run_id=sync_run_id,
        service_id=service_id,
        call_type=record.call_type,
        method=record.method,
        url=record.url,
        request_headers_json=sanitize_headers(record.request_headers),
        request_body=truncate_body(record.request_body),
        response_status=record.response_status,
        response_status_text=record.response_status_text,
        response_summary=record.response_summary,
        duration_ms=record.duration_ms,
        error_message=record.error_message,
    )
    async with SessionLocal() as session:
        try:
            session.add(row)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning(
                "call_log_write_failed method=%s url=%s", record.method, record.url, exc_info=exc
            )


class SyncRunLogger:
    """Tracks one SyncRun row from start to success or error.

    Vendor clients built with a run logger tag every call log with the run id.
    """

    def __init__(self, *, service_id: str | None, sync_type: str) -> None:
        self.service_id = service_id
        self.sync_type = sync_type
        self.run_id: str | None = None
        self.records_synced = 0

    async def start(self) -> str:
        run_id = new_id()
        async with SessionLocal() as session:
            try:
                session.add(
                    SyncRun(
                        id=run_id,
                        service_id=self.service_id,
                        sync_type=self.sync_type,
                        status=SYNC_IN_PROGRESS,
                        records_synced=0,
                        started_at=utc_now(),
                    )
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("sync_run_start_failed sync_type=%s", self.sync_type, exc_info=exc)
        self.run_id = run_id
        logger.info(
            "sync_run_started run_id=%s service_id=%s sync_type=%s", run_id, self.service_id, self.sync_type
        )
        return run_id

    async def progress(self, records_synced: int) -> None:
        # Keep the running count visible while a long drain is in flight.
        self.records_synced = records_synced
        await self._update(records_synced=records_synced)

    async def success(self, records_synced: int) -> None:
        self.records_synced = records_synced
        await self._update(status=SYNC_SUCCESS, records_synced=records_synced, completed_at=utc_now())
        logger.info("sync_run_succeeded run_id=%s records=%s", self.run_id, records_synced)

    async def error(self, message: str, records_synced: int | None = None) -> None:
        values: dict[str, Any] = {"status": SYNC_ERROR, "error_message": message, "completed_at": utc_now()}
        if records_synced is not None:
            self.records_synced = records_synced
            values["records_synced"] = records_synced
        await self._update(**values)
        logger.error("sync_run_failed run_id=%s error=%s", self.run_id, message)

    async def cancelled(self, records_synced: int) -> None:
        # Stopped on shutdown; the run neither succeeded nor failed.
        self.records_synced = records_synced
        await self._update(
            status=SYNC_CANCELLED,
            records_synced=records_synced,
            error_message="cancelled before the feeds were drained",
            completed_at=utc_now(),
        )
        logger.warning("sync_run_cancelled run_id=%s records=%s", self.run_id, records_synced)

    async def log_call(self, record: CallRecord) -> None:
        await record_call(record, service_id=self.service_id, sync_run_id=self.run_id)

    async def _update(self, **values: Any) -> None:
        if self.run_id is None:
            return
        async with SessionLocal() as session:
            try:
                await session.execute(update(SyncRun).where(SyncRun.id == self.run_id).values(**values))
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("sync_run_update_failed run_id=%s", self.run_id, exc_info=exc)
