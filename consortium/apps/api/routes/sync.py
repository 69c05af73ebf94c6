from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict

from consortium.apps.api.deps import get_services, require_admin
from consortium.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from consortium.apps.api.response import SuccessEnvelope, success_response
from consortium.domain.state import AuditAction
from consortium.services import jobs
from consortium.services.access_requests import Caller
from consortium.services.composition import Services


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class SyncTriggerRequest(BaseModel):
    # Omit institution_id to scan every eligible institution.
    institution_id: str | None = None

    model_config = {"extra": "forbid"}


class ReconcileTriggerRequest(BaseModel):
    # Omit user_id to sweep every in-flight request.
    user_id: str | None = None

    model_config = {"extra": "forbid"}


class JobAccepted(BaseModel):
    job_id: str
    status: str


class SyncHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    institution_id: str
    started_at: datetime
    ended_at: datetime | None
    status: str
    products_found: int
    products_added: int
    products_updated: int
    products_delisted: int
    error_details: str | None


class SourceLakehouseUpdate(BaseModel):
    source_lakehouse_id: str | None = None

    model_config = {"extra": "forbid"}


class DataProductSourceResponse(BaseModel):
    id: str
    institution_id: str
    name: str
    source_lakehouse_id: str | None


@router.post(
    "/sync/trigger",
    status_code=202,
    response_model=SuccessEnvelope[JobAccepted] | JobAccepted,
)
async def trigger_sync(
    request: Request,
    payload: SyncTriggerRequest | None = None,
    caller: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
) -> dict:
    # Snapshot everything the detached job needs; the request scope ends first.
    institution_id = payload.institution_id if payload else None
    job_payload = jobs.ScanJobPayload(
        institution_id=institution_id,
        user_credential=caller.credential,
        requested_by=caller.user_id,
    )
    job_id = await jobs.dispatch_scan(job_payload)
    await services.audit.log(
        AuditAction.TRIGGER_SCAN.value,
        user_id=caller.user_id,
        user_email=caller.email,
        entity_type="Institution",
        entity_id=institution_id or "all",
        details={"job_id": job_id},
        ip_address=caller.ip_address,
    )
    logger.info(
        "catalog_sync_triggered job_id=%s institution_id=%s actor=%s",
        job_id,
        institution_id or "all",
        caller.user_id,
    )
    return success_response(request=request, data=JobAccepted(job_id=job_id, status="accepted"))


@router.get(
    "/sync/history",
    response_model=SuccessEnvelope[list[SyncHistoryResponse]] | list[SyncHistoryResponse],
)
async def sync_history(
    request: Request,
    institution_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    caller: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
) -> dict:
    records = await services.history.list_recent(institution_id=institution_id, limit=limit)
    return success_response(
        request=request,
        data=[SyncHistoryResponse.model_validate(record) for record in records],
    )


@router.post(
    "/requests/reconcile",
    status_code=202,
    response_model=SuccessEnvelope[JobAccepted] | JobAccepted,
)
async def trigger_reconcile(
    request: Request,
    payload: ReconcileTriggerRequest | None = None,
    caller: Caller = Depends(require_admin),
) -> dict:
    job_payload = jobs.ReconcileJobPayload(
        user_id=payload.user_id if payload else None,
        user_credential=caller.credential,
        requested_by=caller.user_id,
    )
    job_id = await jobs.dispatch_reconcile(job_payload)
    logger.info("reconcile_triggered job_id=%s actor=%s", job_id, caller.user_id)
    return success_response(request=request, data=JobAccepted(job_id=job_id, status="accepted"))


@router.put(
    "/data-products/{product_id}/source-lakehouse",
    response_model=SuccessEnvelope[DataProductSourceResponse] | DataProductSourceResponse,
)
async def set_source_lakehouse(
    request: Request,
    product_id: str,
    payload: SourceLakehouseUpdate,
    caller: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
) -> dict:
    product = await services.catalog_sync.assign_source_lakehouse(product_id, payload.source_lakehouse_id)
    logger.info(
        "source_lakehouse_assigned product_id=%s lakehouse_id=%s actor=%s",
        product.id,
        product.source_lakehouse_id,
        caller.user_id,
    )
    return success_response(
        request=request,
        data=DataProductSourceResponse(
            id=product.id,
            institution_id=product.institution_id,
            name=product.name,
            source_lakehouse_id=product.source_lakehouse_id,
        ),
    )
