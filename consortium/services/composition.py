from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from consortium.core.config import Settings, get_settings
from consortium.persistence.db import SessionLocal
from consortium.persistence.repos.access_requests import SqlAccessRequestRepository
from consortium.persistence.repos.data_products import SqlDataProductRepository
from consortium.persistence.repos.institutions import SqlInstitutionRepository
from consortium.persistence.repos.base import SyncHistoryRepository
from consortium.persistence.repos.sync_history import SqlSyncHistoryRepository
from consortium.providers.factory import get_catalog_scanner, get_shortcut_service, get_workflow_service
from consortium.services.access_requests import AccessRequestService
from consortium.services.audit import AuditLog, SqlAuditLog
from consortium.services.catalog_sync import CatalogSyncOrchestrator
from consortium.services.fulfillment import FulfillmentOptions, FulfillmentOrchestrator
from consortium.services.notifications import LoggingNotificationService
from consortium.services.reconciliation import ReconciliationOptions, WorkflowReconciler


@dataclass(frozen=True)
class Services:
    access_requests: AccessRequestService
    reconciler: WorkflowReconciler
    fulfillment: FulfillmentOrchestrator
    catalog_sync: CatalogSyncOrchestrator
    history: SyncHistoryRepository
    audit: AuditLog


def build_services(session: AsyncSession, settings: Settings | None = None) -> Services:
    # Settings are read once here and passed down as plain values.
    settings = settings or get_settings()
    requests = SqlAccessRequestRepository(session)
    products = SqlDataProductRepository(session)
    institutions = SqlInstitutionRepository(session)
    history = SqlSyncHistoryRepository(session)
    audit = SqlAuditLog(SessionLocal)
    notifications = LoggingNotificationService(webhook_url=settings.notification_webhook_url)
    shortcuts = get_shortcut_service()
    workflow = get_workflow_service()

    fulfillment = FulfillmentOrchestrator(
        requests=requests,
        products=products,
        institutions=institutions,
        shortcuts=shortcuts,
        notifications=notifications,
        audit=audit,
        options=FulfillmentOptions(source_item_override=settings.fulfillment_source_item_override),
    )
    reconciler = WorkflowReconciler(
        requests=requests,
        products=products,
        institutions=institutions,
        workflow=workflow,
        fulfillment=fulfillment,
        audit=audit,
        options=ReconciliationOptions(
            auto_fulfill=settings.auto_fulfill_on_approval,
            approve_on_missing_outcome=settings.approve_on_missing_outcome,
        ),
    )
    access_requests = AccessRequestService(
        requests=requests,
        products=products,
        institutions=institutions,
        workflow=workflow,
        shortcuts=shortcuts,
        notifications=notifications,
        audit=audit,
        reconciler=reconciler,
        fulfillment=fulfillment,
        workflow_submission_enabled=settings.workflow_submission_enabled,
        reconcile_on_list=settings.reconcile_on_list,
    )
    catalog_sync = CatalogSyncOrchestrator(
        institutions=institutions,
        products=products,
        history=history,
        scanner=get_catalog_scanner(),
    )
    return Services(
        access_requests=access_requests,
        reconciler=reconciler,
        fulfillment=fulfillment,
        catalog_sync=catalog_sync,
        history=history,
        audit=audit,
    )


@asynccontextmanager
async def service_scope() -> AsyncIterator[Services]:
    # Background jobs get their own session; request-scoped sessions are closed by then.
    async with SessionLocal() as session:
        yield build_services(session)
