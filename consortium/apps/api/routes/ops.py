from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from consortium.apps.api.deps import require_admin
from consortium.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from consortium.apps.api.response import SuccessEnvelope, success_response
from consortium.services.access_requests import Caller
from consortium.services.telemetry import metrics_snapshot


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class MetricsResponse(BaseModel):
    window_s: int
    availability: float | None
    integrations: dict[str, dict[str, Any]]
    counters: dict[str, int]


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse] | MetricsResponse)
async def metrics(
    request: Request,
    window_s: int = Query(default=300, ge=10, le=86400),
    caller: Caller = Depends(require_admin),
) -> dict:
    snapshot = metrics_snapshot(window_s=window_s)
    payload = MetricsResponse(
        window_s=window_s,
        availability=snapshot["availability"],
        integrations=snapshot["integrations"],
        counters=snapshot["counters"],
    )
    return success_response(request=request, data=payload)
