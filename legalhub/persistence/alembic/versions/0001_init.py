"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "vendor_services",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("protocol", sa.String(), nullable=False),
        sa.Column("base_url", sa.String(), nullable=False),
        sa.Column("relational_name", sa.String(), nullable=False),
        sa.Column("token", sa.String(), nullable=False),
        sa.Column("auth_in_query", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("namespace", sa.String(), nullable=True),
        sa.Column("office_code", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("last_sync_at"),
        sa.Column("config_json", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_vendor_services_kind_active", "vendor_services", ["kind", "is_active"])

    op.create_table(
        "client_systems",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )

    op.create_table(
        "client_service_entitlements",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("client_id", sa.String(), sa.ForeignKey("client_systems.id"), nullable=False),
        sa.Column("service_id", sa.String(), sa.ForeignKey("vendor_services.id"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.UniqueConstraint("client_id", "service_id", name="uq_client_service_entitlements"),
    )
    op.create_index("ix_client_service_entitlements_client_id", "client_service_entitlements", ["client_id"])
    op.create_index("ix_client_service_entitlements_service_id", "client_service_entitlements", ["service_id"])

    op.create_table(
        "api_tokens",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("client_id", sa.String(), sa.ForeignKey("client_systems.id"), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("token_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("blocked_reason", sa.String(), nullable=True),
        _ts("expires_at"),
        sa.Column("rate_limit_override", sa.Integer(), nullable=True),
        sa.Column("allowed_ips_json", postgresql.JSONB(), nullable=True),
        _ts("last_used_at"),
        _created_at(),
    )
    op.create_index("ix_api_tokens_client_id", "api_tokens", ["client_id"])
    op.create_index("ix_api_tokens_token_hash", "api_tokens", ["token_hash"], unique=True)

    op.create_table(
        "ip_rules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("ip_pattern", sa.String(), nullable=False),
        sa.Column("rule_type", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), sa.ForeignKey("client_systems.id"), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("expires_at"),
        _created_at(),
    )
    op.create_index("ix_ip_rules_client_id", "ip_rules", ["client_id"])

    op.create_table(
        "security_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _ts("occurred_at", nullable=False),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("token_id", sa.String(), nullable=True),
        sa.Column("client_id", sa.String(), nullable=True),
        sa.Column("endpoint", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_security_events_token_id", "security_events", ["token_id"])
    op.create_index("ix_security_events_client_id", "security_events", ["client_id"])
    op.create_index("ix_security_events_reason_occurred", "security_events", ["reason", "occurred_at"])

    op.create_table(
        "api_requests",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("token_id", sa.String(), nullable=True),
        sa.Column("client_id", sa.String(), nullable=True),
        sa.Column("endpoint", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("response_time_ms", sa.Float(), nullable=True),
        sa.Column("counts_toward_limit", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        _ts("requested_at", nullable=False),
    )
    op.create_index("ix_api_requests_client_id", "api_requests", ["client_id"])
    # The sliding rate window counts by token over requested_at.
    op.create_index("ix_api_requests_token_requested", "api_requests", ["token_id", "requested_at"])

    op.create_table(
        "monitored_resources",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("service_id", sa.String(), sa.ForeignKey("vendor_services.id"), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("natural_key", sa.String(), nullable=False),
        sa.Column("vendor_code", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("tribunal", sa.String(), nullable=True),
        sa.Column("instance", sa.String(), nullable=True),
        sa.Column("uf", sa.String(), nullable=True),
        sa.Column("payload_json", postgresql.JSONB(), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        _ts("removed_at"),
        sa.UniqueConstraint(
            "service_id", "resource_type", "natural_key", name="uq_monitored_resources_natural_key"
        ),
    )
    op.create_index("ix_monitored_resources_service_id", "monitored_resources", ["service_id"])
    op.create_index("ix_monitored_resources_vendor_code", "monitored_resources", ["resource_type", "vendor_code"])

    op.create_table(
        "client_links",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("client_id", sa.String(), sa.ForeignKey("client_systems.id"), nullable=False),
        sa.Column("resource_id", sa.String(), sa.ForeignKey("monitored_resources.id"), nullable=False),
        _created_at(),
        sa.UniqueConstraint("client_id", "resource_id", name="uq_client_links_client_resource"),
    )
    op.create_index("ix_client_links_client_id", "client_links", ["client_id"])
    op.create_index("ix_client_links_resource_id", "client_links", ["resource_id"])

    op.create_table(
        "delivery_cursors",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("client_id", sa.String(), sa.ForeignKey("client_systems.id"), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("last_delivered_id", sa.String(), nullable=True),
        _ts("last_delivered_at"),
        sa.Column("pending_confirmation", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("confirmed_at"),
        sa.Column("total_delivered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("batch_size", sa.Integer(), nullable=True),
        sa.UniqueConstraint("client_id", "kind", name="uq_delivery_cursors_client_kind"),
    )
    op.create_index("ix_delivery_cursors_client_id", "delivery_cursors", ["client_id"])

    op.create_table(
        "process_movements",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("vendor_id", sa.BigInteger(), nullable=False),
        sa.Column("service_id", sa.String(), sa.ForeignKey("vendor_services.id"), nullable=False),
        sa.Column("vendor_case_code", sa.String(), nullable=True),
        sa.Column("process_id", sa.String(), sa.ForeignKey("monitored_resources.id"), nullable=True),
        sa.Column("movement_type", sa.String(), nullable=True),
        sa.Column("movement_date", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("raw_json", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_process_movements_vendor_id", "process_movements", ["vendor_id"], unique=True)
    op.create_index("ix_process_movements_service_id", "process_movements", ["service_id"])
    op.create_index("ix_process_movements_vendor_case_code", "process_movements", ["vendor_case_code"])
    op.create_index("ix_process_movements_process_id", "process_movements", ["process_id"])

    op.create_table(
        "process_documents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("vendor_id", sa.BigInteger(), nullable=False),
        sa.Column("service_id", sa.String(), sa.ForeignKey("vendor_services.id"), nullable=False),
        sa.Column("vendor_case_code", sa.String(), nullable=True),
        sa.Column("vendor_movement_code", sa.String(), nullable=True),
        sa.Column("process_id", sa.String(), sa.ForeignKey("monitored_resources.id"), nullable=True),
        sa.Column("movement_id", sa.String(), sa.ForeignKey("process_movements.id"), nullable=True),
        sa.Column("document_type", sa.String(), nullable=True),
        sa.Column("file_name", sa.String(), nullable=True),
        sa.Column("document_url", sa.String(), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("is_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("raw_json", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_process_documents_vendor_id", "process_documents", ["vendor_id"], unique=True)
    op.create_index("ix_process_documents_service_id", "process_documents", ["service_id"])
    op.create_index("ix_process_documents_vendor_case_code", "process_documents", ["vendor_case_code"])
    op.create_index("ix_process_documents_process_id", "process_documents", ["process_id"])

    op.create_table(
        "distributions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("vendor_id", sa.BigInteger(), nullable=False),
        sa.Column("service_id", sa.String(), sa.ForeignKey("vendor_services.id"), nullable=False),
        sa.Column("term", sa.String(), nullable=True),
        sa.Column("term_id", sa.String(), sa.ForeignKey("monitored_resources.id"), nullable=True),
        sa.Column("process_number", sa.String(), nullable=True),
        sa.Column("tribunal", sa.String(), nullable=True),
        sa.Column("distribution_date", sa.String(), nullable=True),
        sa.Column("is_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("raw_json", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_distributions_vendor_id", "distributions", ["vendor_id"], unique=True)
    op.create_index("ix_distributions_service_id", "distributions", ["service_id"])
    op.create_index("ix_distributions_term_id", "distributions", ["term_id"])

    op.create_table(
        "publications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("vendor_id", sa.BigInteger(), nullable=False),
        sa.Column("service_id", sa.String(), sa.ForeignKey("vendor_services.id"), nullable=False),
        sa.Column("gazette_name", sa.String(), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("publication_date", sa.String(), nullable=True),
        sa.Column("is_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("raw_json", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_publications_vendor_id", "publications", ["vendor_id"], unique=True)
    op.create_index("ix_publications_service_id", "publications", ["service_id"])

    op.create_table(
        "publication_term_matches",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("publication_id", sa.String(), sa.ForeignKey("publications.id"), nullable=False),
        sa.Column("term_id", sa.String(), sa.ForeignKey("monitored_resources.id"), nullable=False),
        sa.UniqueConstraint("publication_id", "term_id", name="uq_publication_term_matches"),
    )
    op.create_index("ix_publication_term_matches_publication_id", "publication_term_matches", ["publication_id"])
    op.create_index("ix_publication_term_matches_term_id", "publication_term_matches", ["term_id"])

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("service_id", sa.String(), nullable=True),
        sa.Column("sync_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("records_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        _ts("started_at", nullable=False),
        _ts("completed_at"),
    )
    op.create_index("ix_sync_runs_service_started", "sync_runs", ["service_id", "started_at"])

    op.create_table(
        "call_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("sync_run_id", sa.String(), nullable=True),
        sa.Column("service_id", sa.String(), nullable=True),
        sa.Column("call_type", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("request_headers_json", postgresql.JSONB(), nullable=True),
        sa.Column("request_body", sa.Text(), nullable=True),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("response_status_text", sa.String(), nullable=True),
        sa.Column("response_summary", sa.String(), nullable=True),
        sa.Column("duration_ms", sa.Float(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_call_logs_sync_run_id", "call_logs", ["sync_run_id"])
    op.create_index("ix_call_logs_service_id", "call_logs", ["service_id"])


def downgrade() -> None:
    for table in (
        "call_logs",
        "sync_runs",
        "publication_term_matches",
        "publications",
        "distributions",
        "process_documents",
        "process_movements",
        "delivery_cursors",
        "client_links",
        "monitored_resources",
        "api_requests",
        "security_events",
        "ip_rules",
        "api_tokens",
        "client_service_entitlements",
        "client_systems",
        "vendor_services",
    ):
        op.drop_table(table)
