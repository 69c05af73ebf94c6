"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


_BLOCKING = "status IN ('Submitted', 'UnderReview', 'Approved', 'Fulfilled', 'Active')"


def upgrade() -> None:
    op.create_table(
        "institutions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("purview_account_name", sa.String(), nullable=True),
        sa.Column("fabric_workspace_id", sa.String(), nullable=True),
        sa.Column("consortium_domain_ids", sa.String(), nullable=True),
        sa.Column("primary_contact_email", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("admin_consent_granted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_institutions_tenant_id", "institutions", ["tenant_id"], unique=True)

    op.create_table(
        "data_products",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column(
            "institution_id",
            sa.String(),
            sa.ForeignKey("institutions.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("qualified_name", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("owner", sa.String(), nullable=True),
        sa.Column("owner_email", sa.String(), nullable=True),
        sa.Column("source_system", sa.String(), nullable=True),
        sa.Column("sensitivity_label", sa.String(), nullable=True),
        sa.Column("classifications_json", sa.JSON(), nullable=True),
        sa.Column("glossary_terms_json", sa.JSON(), nullable=True),
        sa.Column("governance_domain", sa.String(), nullable=True),
        sa.Column("asset_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("catalog_status", sa.String(), nullable=True),
        sa.Column("data_product_type", sa.String(), nullable=True),
        sa.Column("endorsed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("business_use", sa.Text(), nullable=True),
        sa.Column("update_frequency", sa.String(), nullable=True),
        sa.Column("documentation", sa.Text(), nullable=True),
        sa.Column("is_listed", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("source_lakehouse_id", sa.String(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_last_modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("institution_id", "qualified_name", name="uq_data_products_institution_qn"),
    )
    op.create_index("ix_data_products_institution_id", "data_products", ["institution_id"])
    op.create_index("ix_data_products_institution_listed", "data_products", ["institution_id", "is_listed"])

    op.create_table(
        "access_requests",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "data_product_id",
            sa.String(),
            sa.ForeignKey("data_products.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("requesting_user_id", sa.String(), nullable=False),
        sa.Column("requesting_user_email", sa.String(), nullable=False),
        sa.Column("requesting_user_name", sa.String(), nullable=False),
        sa.Column(
            "requesting_institution_id",
            sa.String(),
            sa.ForeignKey("institutions.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("requesting_tenant_id", sa.String(), nullable=True),
        sa.Column("target_workspace_id", sa.String(), nullable=True),
        sa.Column("target_lakehouse_id", sa.String(), nullable=True),
        sa.Column("business_justification", sa.Text(), nullable=False),
        sa.Column("requested_duration_days", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_changed_by", sa.String(), nullable=True),
        sa.Column("external_share_id", sa.String(), nullable=True),
        sa.Column("shortcut_name", sa.String(), nullable=True),
        sa.Column("shortcut_created", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fulfillment_error", sa.Text(), nullable=True),
        sa.Column("workflow_run_id", sa.String(), nullable=True),
        sa.Column("workflow_status", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_access_requests_data_product_id", "access_requests", ["data_product_id"])
    op.create_index("ix_access_requests_user_status", "access_requests", ["requesting_user_id", "status"])
    op.create_index("ix_access_requests_workflow_run", "access_requests", ["workflow_run_id"])
    # One in-flight request per user and product, enforced by storage.
    op.create_index(
        "uq_access_requests_active_user_product",
        "access_requests",
        ["requesting_user_id", "data_product_id"],
        unique=True,
        postgresql_where=sa.text(_BLOCKING),
    )

    op.create_table(
        "sync_history",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "institution_id",
            sa.String(),
            sa.ForeignKey("institutions.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("products_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("products_added", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("products_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("products_delisted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_details", sa.Text(), nullable=True),
    )
    op.create_index("ix_sync_history_institution_started", "sync_history", ["institution_id", "started_at"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("user_email", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=True),
        sa.Column("entity_id", sa.String(), nullable=True),
        sa.Column("details_json", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
    )
    op.create_index("ix_audit_events_action", "audit_events", ["action"])
    op.create_index("ix_audit_events_entity", "audit_events", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_entity", table_name="audit_events")
    op.drop_index("ix_audit_events_action", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_sync_history_institution_started", table_name="sync_history")
    op.drop_table("sync_history")
    op.drop_index("uq_access_requests_active_user_product", table_name="access_requests")
    op.drop_index("ix_access_requests_workflow_run", table_name="access_requests")
    op.drop_index("ix_access_requests_user_status", table_name="access_requests")
    op.drop_index("ix_access_requests_data_product_id", table_name="access_requests")
    op.drop_table("access_requests")
    op.drop_index("ix_data_products_institution_listed", table_name="data_products")
    op.drop_index("ix_data_products_institution_id", table_name="data_products")
    op.drop_table("data_products")
    op.drop_index("ix_institutions_tenant_id", table_name="institutions")
    op.drop_table("institutions")
