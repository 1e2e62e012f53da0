from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from legalhub.core.errors import VendorConfigError
from legalhub.domain.kinds import RESOURCE_STATUS_PENDING, SYNC_IN_PROGRESS


# JSONB on Postgres, plain JSON elsewhere (SQLite test runs).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    return str(uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on read; treat stored naive values as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class VendorService(Base):
    __tablename__ = "vendor_services"
    __table_args__ = (
        Index("ix_vendor_services_kind_active", "kind", "is_active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String)
    # Record kind this endpoint feeds (processes/distributions/publications).
    kind: Mapped[str] = mapped_column(String)
    # soap or rest.
    protocol: Mapped[str] = mapped_column(String)
    base_url: Mapped[str] = mapped_column(String)
    relational_name: Mapped[str] = mapped_column(String)
    token: Mapped[str] = mapped_column(String)
    # REST dialect: credentials as query params instead of headers.
    auth_in_query: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # SOAP dialect: explicit XML namespace when it differs from the endpoint.
    namespace: Mapped[str | None] = mapped_column(String, nullable=True)
    office_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    config_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def validate(self) -> None:
        # URL and credential pair must be present before any outbound call.
        missing = [
            name
            for name, value in (
                ("base_url", self.base_url),
                ("relational_name", self.relational_name),
                ("token", self.token),
            )
            if not (value or "").strip()
        ]
        if missing:
            raise VendorConfigError(
                f"Vendor service {self.name or self.id} is missing: {', '.join(missing)}"
            )


class ClientSystem(Base):
    __tablename__ = "client_systems"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ClientServiceEntitlement(Base):
    __tablename__ = "client_service_entitlements"
    __table_args__ = (
        UniqueConstraint("client_id", "service_id", name="uq_client_service_entitlements"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("client_systems.id"), index=True)
    service_id: Mapped[str] = mapped_column(String, ForeignKey("vendor_services.id"), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ApiToken(Base):
    __tablename__ = "api_tokens"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("client_systems.id"), index=True)
    # Short prefix for operator display; the secret itself is never stored.
    key_prefix: Mapped[str] = mapped_column(String)
    token_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    blocked_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Per-token requests/window override; None uses the system default.
    rate_limit_override: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Optional explicit allow-list of caller IPs.
    allowed_ips_json: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class IpRule(Base):
    __tablename__ = "ip_rules"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # Exact address, CIDR, or dotted wildcard prefix ("10.1.*").
    ip_pattern: Mapped[str] = mapped_column(String)
    rule_type: Mapped[str] = mapped_column(String)
    # Null client_id means the rule is global.
    client_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("client_systems.id"), nullable=True, index=True
    )
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class SecurityEvent(Base):
    __tablename__ = "security_events"
    __table_args__ = (
        Index("ix_security_events_reason_occurred", "reason", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    token_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    endpoint: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    method: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)


class ApiRequest(Base):
    __tablename__ = "api_requests"
    __table_args__ = (
        Index("ix_api_requests_token_requested", "token_id", "requested_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    token_id: Mapped[str | None] = mapped_column(String, nullable=True)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    endpoint: Mapped[str] = mapped_column(String)
    method: Mapped[str] = mapped_column(String)
    # Null until the response is known; the row is reserved at rate-limit time.
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    # Only requests admitted past the rate check consume the token's window.
    counts_toward_limit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class MonitoredResource(Base):
    __tablename__ = "monitored_resources"
    __table_args__ = (
        UniqueConstraint(
            "service_id", "resource_type", "natural_key", name="uq_monitored_resources_natural_key"
        ),
        Index("ix_monitored_resources_vendor_code", "resource_type", "vendor_code"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    service_id: Mapped[str] = mapped_column(String, ForeignKey("vendor_services.id"), index=True)
    # case / distribution_term / publication_term; the term type is part of the natural key.
    resource_type: Mapped[str] = mapped_column(String)
    # Case number for cases, term text for terms.
    natural_key: Mapped[str] = mapped_column(String)
    # Vendor-assigned code (codProcesso / codNome); set after registration succeeds.
    vendor_code: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default=RESOURCE_STATUS_PENDING)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Case attributes used by client-facing filters.
    tribunal: Mapped[str | None] = mapped_column(String, nullable=True)
    instance: Mapped[str | None] = mapped_column(String, nullable=True)
    uf: Mapped[str | None] = mapped_column(String, nullable=True)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # Vendor-side case status (codStatus / descricaoStatus), refreshed on demand.
    vendor_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    vendor_status: Mapped[str | None] = mapped_column(String, nullable=True)
    status_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    removed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ClientLink(Base):
    __tablename__ = "client_links"
    __table_args__ = (
        UniqueConstraint("client_id", "resource_id", name="uq_client_links_client_resource"),
    )

    # One row per (client, resource); the row count per resource is the refcount.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("client_systems.id"), index=True)
    resource_id: Mapped[str] = mapped_column(String, ForeignKey("monitored_resources.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class DeliveryCursor(Base):
    __tablename__ = "delivery_cursors"
    __table_args__ = (
        UniqueConstraint("client_id", "kind", name="uq_delivery_cursors_client_kind"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("client_systems.id"), index=True)
    kind: Mapped[str] = mapped_column(String)
    last_delivered_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pending_confirmation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_delivered: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    batch_size: Mapped[int | None] = mapped_column(Integer, nullable=True)


class ProcessMovement(Base):
    __tablename__ = "process_movements"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # codAndamento; the upsert key, so vendor redelivery is idempotent.
    vendor_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    service_id: Mapped[str] = mapped_column(String, ForeignKey("vendor_services.id"), index=True)
    vendor_case_code: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Back-filled by orphan linking when the case arrives after the movement.
    process_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("monitored_resources.id"), nullable=True, index=True
    )
    movement_type: Mapped[str | None] = mapped_column(String, nullable=True)
    movement_date: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    raw_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ProcessDocument(Base):
    __tablename__ = "process_documents"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # codDocumento.
    vendor_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    service_id: Mapped[str] = mapped_column(String, ForeignKey("vendor_services.id"), index=True)
    vendor_case_code: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    vendor_movement_code: Mapped[str | None] = mapped_column(String, nullable=True)
    process_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("monitored_resources.id"), nullable=True, index=True
    )
    movement_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("process_movements.id"), nullable=True
    )
    document_type: Mapped[str | None] = mapped_column(String, nullable=True)
    file_name: Mapped[str | None] = mapped_column(String, nullable=True)
    document_url: Mapped[str | None] = mapped_column(String, nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    raw_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Distribution(Base):
    __tablename__ = "distributions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # codDistribuicao.
    vendor_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    service_id: Mapped[str] = mapped_column(String, ForeignKey("vendor_services.id"), index=True)
    term: Mapped[str | None] = mapped_column(String, nullable=True)
    # Parent term; null until the term exists locally.
    term_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("monitored_resources.id"), nullable=True, index=True
    )
    process_number: Mapped[str | None] = mapped_column(String, nullable=True)
    tribunal: Mapped[str | None] = mapped_column(String, nullable=True)
    distribution_date: Mapped[str | None] = mapped_column(String, nullable=True)
    is_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    raw_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Publication(Base):
    __tablename__ = "publications"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # codPublicacao.
    vendor_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    service_id: Mapped[str] = mapped_column(String, ForeignKey("vendor_services.id"), index=True)
    gazette_name: Mapped[str | None] = mapped_column(String, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    publication_date: Mapped[str | None] = mapped_column(String, nullable=True)
    is_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    raw_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class PublicationTermMatch(Base):
    __tablename__ = "publication_term_matches"
    __table_args__ = (
        UniqueConstraint("publication_id", "term_id", name="uq_publication_term_matches"),
    )

    # Publications are visible to clients through the terms they matched.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    publication_id: Mapped[str] = mapped_column(String, ForeignKey("publications.id"), index=True)
    term_id: Mapped[str] = mapped_column(String, ForeignKey("monitored_resources.id"), index=True)


class SyncRun(Base):
    __tablename__ = "sync_runs"
    __table_args__ = (
        Index("ix_sync_runs_service_started", "service_id", "started_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    service_id: Mapped[str | None] = mapped_column(String, nullable=True)
    sync_type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default=SYNC_IN_PROGRESS)
    records_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CallLog(Base):
    __tablename__ = "call_logs"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    sync_run_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    service_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # REST or SOAP.
    call_type: Mapped[str] = mapped_column(String)
    method: Mapped[str] = mapped_column(String)
    url: Mapped[str] = mapped_column(String)
    request_headers_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    request_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_status_text: Mapped[str | None] = mapped_column(String, nullable=True)
    # Byte and item counts only; bodies are never persisted.
    response_summary: Mapped[str | None] = mapped_column(String, nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
