from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Statuses that block a second request for the same user and product.
BLOCKING_STATUS_SQL = "'Submitted', 'UnderReview', 'Approved', 'Fulfilled', 'Active'"


class Base(DeclarativeBase):
    pass


class Institution(Base):
    __tablename__ = "institutions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Empty when the institution has not connected its external catalog yet.
    purview_account_name: Mapped[str | None] = mapped_column(String, nullable=True)
    fabric_workspace_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Comma-separated governance domain ids that are visible to the consortium.
    consortium_domain_ids: Mapped[str | None] = mapped_column(String, nullable=True)
    primary_contact_email: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    admin_consent_granted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class DataProduct(Base):
    __tablename__ = "data_products"
    __table_args__ = (
        UniqueConstraint("institution_id", "qualified_name", name="uq_data_products_institution_qn"),
        Index("ix_data_products_institution_listed", "institution_id", "is_listed"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Products are delisted, never deleted, while requests reference them.
    institution_id: Mapped[str] = mapped_column(
        String, ForeignKey("institutions.id", ondelete="RESTRICT"), index=True
    )
    qualified_name: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner: Mapped[str | None] = mapped_column(String, nullable=True)
    owner_email: Mapped[str | None] = mapped_column(String, nullable=True)
    source_system: Mapped[str | None] = mapped_column(String, nullable=True)
    sensitivity_label: Mapped[str | None] = mapped_column(String, nullable=True)
    classifications_json: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    glossary_terms_json: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    governance_domain: Mapped[str | None] = mapped_column(String, nullable=True)
    asset_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    catalog_status: Mapped[str | None] = mapped_column(String, nullable=True)
    data_product_type: Mapped[str | None] = mapped_column(String, nullable=True)
    endorsed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    business_use: Mapped[str | None] = mapped_column(Text, nullable=True)
    update_frequency: Mapped[str | None] = mapped_column(String, nullable=True)
    documentation: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_listed: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Required for automated fulfillment; set by operators, never by catalog sync.
    source_lakehouse_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    external_last_modified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AccessRequest(Base):
    __tablename__ = "access_requests"
    __table_args__ = (
        # Storage-level guard for one in-flight request per user and product.
        Index(
            "uq_access_requests_active_user_product",
            "requesting_user_id",
            "data_product_id",
            unique=True,
            postgresql_where=text(f"status IN ({BLOCKING_STATUS_SQL})"),
            sqlite_where=text(f"status IN ({BLOCKING_STATUS_SQL})"),
        ),
        Index("ix_access_requests_user_status", "requesting_user_id", "status"),
        Index("ix_access_requests_workflow_run", "workflow_run_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    data_product_id: Mapped[str] = mapped_column(
        String, ForeignKey("data_products.id", ondelete="RESTRICT"), index=True
    )
    requesting_user_id: Mapped[str] = mapped_column(String)
    requesting_user_email: Mapped[str] = mapped_column(String)
    requesting_user_name: Mapped[str] = mapped_column(String)
    requesting_institution_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("institutions.id", ondelete="RESTRICT"), nullable=True
    )
    # Snapshot of the caller's tenant at submission time.
    requesting_tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_workspace_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_lakehouse_id: Mapped[str | None] = mapped_column(String, nullable=True)
    business_justification: Mapped[str] = mapped_column(Text)
    requested_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String)
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status_changed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    external_share_id: Mapped[str | None] = mapped_column(String, nullable=True)
    shortcut_name: Mapped[str | None] = mapped_column(String, nullable=True)
    shortcut_created: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Last automation diagnostic so operators can see how far fulfillment got.
    fulfillment_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_run_id: Mapped[str | None] = mapped_column(String, nullable=True)
    workflow_status: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SyncHistory(Base):
    __tablename__ = "sync_history"
    __table_args__ = (Index("ix_sync_history_institution_started", "institution_id", "started_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    institution_id: Mapped[str] = mapped_column(String, ForeignKey("institutions.id", ondelete="RESTRICT"))
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String)
    products_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    products_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    products_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    products_delisted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_details: Mapped[str | None] = mapped_column(Text, nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (Index("ix_audit_events_entity", "entity_type", "entity_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    user_email: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
