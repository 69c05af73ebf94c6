from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from consortium.apps.api.deps import get_current_caller, get_services
from consortium.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from consortium.apps.api.response import SuccessEnvelope, success_response
from consortium.domain.models import AccessRequest
from consortium.services.access_requests import Caller, NewAccessRequest
from consortium.services.composition import Services
from consortium.services.fulfillment import FulfillmentOutcome


router = APIRouter(prefix="/requests", tags=["access-requests"], responses=DEFAULT_ERROR_RESPONSES)


class AccessRequestCreate(BaseModel):
    data_product_id: str = Field(min_length=1)
    business_justification: str = Field(min_length=1)
    target_workspace_id: str | None = None
    target_lakehouse_id: str | None = None
    requested_duration_days: int | None = None

    # Identity comes from gateway headers, never from the body.
    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "examples": [
                {
                    "data_product_id": "dp_4f1c",
                    "business_justification": "Cohort study on regional enrollment trends.",
                    "target_workspace_id": "ws-research",
                    "target_lakehouse_id": "lh-shared",
                    "requested_duration_days": 90,
                }
            ]
        },
    }


class StatusUpdateRequest(BaseModel):
    status: str = Field(min_length=1)
    comment: str | None = None
    # Recorded when an operator fulfils a request by hand.
    external_share_id: str | None = None

    model_config = {"extra": "forbid"}


class AccessRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    data_product_id: str
    requesting_user_id: str
    requesting_user_email: str
    requesting_user_name: str
    requesting_institution_id: str | None
    requesting_tenant_id: str | None
    target_workspace_id: str | None
    target_lakehouse_id: str | None
    business_justification: str
    requested_duration_days: int | None
    status: str
    status_changed_at: datetime | None
    status_changed_by: str | None
    external_share_id: str | None
    shortcut_name: str | None
    shortcut_created: bool
    fulfillment_error: str | None
    workflow_run_id: str | None
    workflow_status: str | None
    expires_at: datetime | None
    created_at: datetime | None


class FulfillmentOutcomeResponse(BaseModel):
    outcome: str
    fulfilled: bool
    message: str
    share_id: str | None = None
    shortcut_name: str | None = None


class FulfillmentDetailsResponse(BaseModel):
    request_id: str
    data_product_name: str
    source_institution_name: str
    source_workspace_id: str | None
    recipient_tenant_id: str
    recipient_user_email: str
    target_workspace_id: str | None
    target_lakehouse_id: str | None
    external_share_id: str | None
    shortcut_created: bool
    fulfillment_error: str | None
    steps: list[str]


class RequestSummaryResponse(BaseModel):
    pending: int
    active: int
    by_status: dict[str, int]


def _to_response(request: AccessRequest) -> AccessRequestResponse:
    return AccessRequestResponse.model_validate(request)


def _outcome_response(outcome: FulfillmentOutcome) -> FulfillmentOutcomeResponse:
    return FulfillmentOutcomeResponse(
        outcome=outcome.outcome,
        fulfilled=outcome.fulfilled,
        message=outcome.message,
        share_id=outcome.share_id,
        shortcut_name=outcome.shortcut_name,
    )


@router.post(
    "",
    status_code=201,
    response_model=SuccessEnvelope[AccessRequestResponse] | AccessRequestResponse,
)
async def create_access_request(
    request: Request,
    payload: AccessRequestCreate,
    caller: Caller = Depends(get_current_caller),
    services: Services = Depends(get_services),
) -> dict:
    created = await services.access_requests.create(
        caller,
        NewAccessRequest(
            data_product_id=payload.data_product_id,
            business_justification=payload.business_justification,
            target_workspace_id=payload.target_workspace_id,
            target_lakehouse_id=payload.target_lakehouse_id,
            requested_duration_days=payload.requested_duration_days,
        ),
    )
    return success_response(request=request, data=_to_response(created))


@router.get(
    "",
    response_model=SuccessEnvelope[list[AccessRequestResponse]] | list[AccessRequestResponse],
)
async def list_access_requests(
    request: Request,
    status: str | None = Query(default=None),
    data_product_id: str | None = Query(default=None),
    caller: Caller = Depends(get_current_caller),
    services: Services = Depends(get_services),
) -> dict:
    # Listing first pulls in approval decisions for the caller's in-flight requests.
    results = await services.access_requests.list_for_user(
        caller, status=status, data_product_id=data_product_id
    )
    return success_response(request=request, data=[_to_response(item) for item in results])


@router.get(
    "/summary",
    response_model=SuccessEnvelope[RequestSummaryResponse] | RequestSummaryResponse,
)
async def request_summary(
    request: Request,
    caller: Caller = Depends(get_current_caller),
    services: Services = Depends(get_services),
) -> dict:
    summary = await services.access_requests.summary(caller)
    payload = RequestSummaryResponse(
        pending=summary.pending, active=summary.active, by_status=summary.by_status
    )
    return success_response(request=request, data=payload)


@router.get(
    "/{request_id}",
    response_model=SuccessEnvelope[AccessRequestResponse] | AccessRequestResponse,
)
async def get_access_request(
    request: Request,
    request_id: str,
    caller: Caller = Depends(get_current_caller),
    services: Services = Depends(get_services),
) -> dict:
    found = await services.access_requests.get(caller, request_id)
    return success_response(request=request, data=_to_response(found))


@router.delete(
    "/{request_id}",
    response_model=SuccessEnvelope[AccessRequestResponse] | AccessRequestResponse,
)
async def cancel_access_request(
    request: Request,
    request_id: str,
    caller: Caller = Depends(get_current_caller),
    services: Services = Depends(get_services),
) -> dict:
    cancelled = await services.access_requests.cancel(caller, request_id)
    return success_response(request=request, data=_to_response(cancelled))


@router.patch(
    "/{request_id}/status",
    response_model=SuccessEnvelope[AccessRequestResponse] | AccessRequestResponse,
)
async def update_access_request_status(
    request: Request,
    request_id: str,
    payload: StatusUpdateRequest,
    caller: Caller = Depends(get_current_caller),
    services: Services = Depends(get_services),
) -> dict:
    updated = await services.access_requests.update_status(
        caller,
        request_id,
        payload.status,
        comment=payload.comment,
        external_share_id=payload.external_share_id,
    )
    return success_response(request=request, data=_to_response(updated))


@router.post(
    "/{request_id}/retry-fulfillment",
    response_model=SuccessEnvelope[FulfillmentOutcomeResponse] | FulfillmentOutcomeResponse,
)
async def retry_fulfillment(
    request: Request,
    request_id: str,
    caller: Caller = Depends(get_current_caller),
    services: Services = Depends(get_services),
) -> dict:
    # Failed automation is reported in the body, not as an HTTP error.
    outcome = await services.access_requests.retry_fulfillment(caller, request_id)
    return success_response(request=request, data=_outcome_response(outcome))


@router.get(
    "/{request_id}/fulfillment",
    response_model=SuccessEnvelope[FulfillmentDetailsResponse] | FulfillmentDetailsResponse,
)
async def get_fulfillment_details(
    request: Request,
    request_id: str,
    caller: Caller = Depends(get_current_caller),
    services: Services = Depends(get_services),
) -> dict:
    details = await services.access_requests.get_fulfillment_details(caller, request_id)
    payload = FulfillmentDetailsResponse(
        request_id=details.request_id,
        data_product_name=details.data_product_name,
        source_institution_name=details.source_institution_name,
        source_workspace_id=details.source_workspace_id,
        recipient_tenant_id=details.recipient_tenant_id,
        recipient_user_email=details.recipient_user_email,
        target_workspace_id=details.target_workspace_id,
        target_lakehouse_id=details.target_lakehouse_id,
        external_share_id=details.external_share_id,
        shortcut_created=details.shortcut_created,
        fulfillment_error=details.fulfillment_error,
        steps=details.steps,
    )
    return success_response(request=request, data=payload)
