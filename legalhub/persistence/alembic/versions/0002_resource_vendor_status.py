"""add vendor status fields to monitored resources

Revision ID: 0002_resource_vendor_status
Revises: 0001_init
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_resource_vendor_status"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Case status as last reported by the vendor (codStatus / descricaoStatus).
    op.add_column("monitored_resources", sa.Column("vendor_status_code", sa.Integer(), nullable=True))
    op.add_column("monitored_resources", sa.Column("vendor_status", sa.String(), nullable=True))
    op.add_column(
        "monitored_resources", sa.Column("status_checked_at", sa.DateTime(timezone=True), nullable=True)
    )


def downgrade() -> None:
    op.drop_column("monitored_resources", "status_checked_at")
    op.drop_column("monitored_resources", "vendor_status")
    op.drop_column("monitored_resources", "vendor_status_code")
