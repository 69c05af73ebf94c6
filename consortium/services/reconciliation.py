from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

from consortium.core.errors import ConsortiumError, WorkflowServiceError
from consortium.domain.models import AccessRequest
from consortium.domain.state import (
    RequestStatus,
    WORKFLOW_ACTOR,
    apply_transition,
    audit_action_for,
    current_status,
    utc_now,
)
from consortium.persistence.repos.base import (
    AccessRequestRepository,
    DataProductRepository,
    InstitutionRepository,
)
from consortium.providers.workflow.base import (
    ApprovalWorkflowService,
    is_rejection,
    is_terminal_run_status,
)
from consortium.services.audit import AuditLog
from consortium.services.fulfillment import FulfillmentOrchestrator
from consortium.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationOptions:
    auto_fulfill: bool = True
    # A completed run without an outcome counts as approved when set.
    approve_on_missing_outcome: bool = True


@dataclass
class ReconciliationReport:
    examined: int = 0
    changed: int = 0
    skipped: int = 0
    failed: int = 0
    transitions: dict[str, str] = field(default_factory=dict)


def needs_workflow_sync(request: AccessRequest) -> bool:
    return bool(request.workflow_run_id) and not is_terminal_run_status(request.workflow_status)


class WorkflowReconciler:
    """Fold external approval-workflow state back into local requests.

    Each request is handled independently: a failed poll is logged and the
    request is left untouched, and nothing is written unless the run status
    or the local status actually changed.
    """

    def __init__(
        self,
        *,
        requests: AccessRequestRepository,
        products: DataProductRepository,
        institutions: InstitutionRepository,
        workflow: ApprovalWorkflowService,
        fulfillment: FulfillmentOrchestrator,
        audit: AuditLog,
        options: ReconciliationOptions | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._requests = requests
        self._products = products
        self._institutions = institutions
        self._workflow = workflow
        self._fulfillment = fulfillment
        self._audit = audit
        self._options = options or ReconciliationOptions()
        self._clock = clock

    async def _account_for(self, request: AccessRequest) -> tuple[str, str] | None:
        product = await self._products.get(request.data_product_id)
        if product is None:
            return None
        institution = await self._institutions.get(product.institution_id)
        if institution is None or not institution.purview_account_name:
            return None
        return institution.purview_account_name, institution.tenant_id

    def _target_for(self, run_status: str | None, outcome: str | None, request: AccessRequest) -> RequestStatus | None:
        if current_status(request) is not RequestStatus.SUBMITTED or not run_status:
            return None
        normalized = run_status.strip().lower()
        if normalized == "completed":
            if is_rejection(outcome):
                return RequestStatus.DENIED
            if not outcome:
                if not self._options.approve_on_missing_outcome:
                    logger.warning("workflow_outcome_missing_left_pending request_id=%s", request.id)
                    return None
                logger.warning("workflow_outcome_missing_treated_as_approved request_id=%s", request.id)
            return RequestStatus.APPROVED
        if normalized == "canceled":
            return RequestStatus.CANCELLED
        return None

    async def reconcile_one(self, request: AccessRequest, user_credential: str | None = None) -> bool:
        """Reconcile one request; return True when something was written."""
        if not needs_workflow_sync(request):
            return False
        account = await self._account_for(request)
        if account is None:
            logger.debug("workflow_sync_skipped_no_account request_id=%s", request.id)
            return False
        account_name, tenant_id = account

        try:
            run = await self._workflow.poll_status(
                account_name, tenant_id, request.workflow_run_id, user_credential
            )
        except WorkflowServiceError as exc:
            increment_counter("workflow_poll_failed_total")
            logger.warning(
                "workflow_poll_failed request_id=%s run_id=%s error=%s",
                request.id,
                request.workflow_run_id,
                exc,
            )
            return False

        changed = False
        if run.run_status and run.run_status != request.workflow_status:
            logger.info(
                "workflow_status_changed request_id=%s from=%s to=%s",
                request.id,
                request.workflow_status,
                run.run_status,
            )
            request.workflow_status = run.run_status
            changed = True

        target = self._target_for(run.run_status, run.approval_outcome, request)
        if target is not None:
            apply_transition(request, target, actor=WORKFLOW_ACTOR, now=self._clock())
            increment_counter(f"workflow_transition_total.{target.value}")
            logger.info(
                "workflow_transition request_id=%s to=%s outcome=%s",
                request.id,
                target.value,
                run.approval_outcome or "(none)",
            )
            changed = True

        if not changed:
            return False
        await self._requests.save(request)

        if target is not None:
            await self._audit.log(
                audit_action_for(target).value,
                user_id=WORKFLOW_ACTOR,
                entity_type="AccessRequest",
                entity_id=request.id,
                details={"workflow_run_id": request.workflow_run_id, "outcome": run.approval_outcome},
            )
        if target is RequestStatus.APPROVED and self._options.auto_fulfill:
            # Fulfillment failures never revert the approval.
            try:
                await self._fulfillment.fulfill(request, actor=WORKFLOW_ACTOR)
            except ConsortiumError as exc:
                logger.warning("auto_fulfillment_skipped request_id=%s reason=%s", request.id, exc)
            except Exception as exc:  # noqa: BLE001 - approval is already committed
                logger.error("auto_fulfillment_failed request_id=%s", request.id, exc_info=exc)
        return True

    async def reconcile_many(
        self, requests: Iterable[AccessRequest], user_credential: str | None = None
    ) -> ReconciliationReport:
        report = ReconciliationReport()
        # Reload by id: a rolled-back failure expires every row loaded before it.
        request_ids = [request.id for request in requests]
        for request_id in request_ids:
            report.examined += 1
            try:
                request = await self._requests.get(request_id)
                if request is None:
                    report.skipped += 1
                    continue
                previous = request.status
                if await self.reconcile_one(request, user_credential):
                    report.changed += 1
                    current = await self._requests.get(request_id)
                    if current is not None and current.status != previous:
                        report.transitions[request_id] = current.status
                else:
                    report.skipped += 1
            except Exception as exc:  # noqa: BLE001 - one request must not stop the sweep
                report.failed += 1
                logger.error("workflow_reconcile_failed request_id=%s", request_id, exc_info=exc)
        return report

    async def reconcile_for_user(self, user_id: str, user_credential: str | None = None) -> ReconciliationReport:
        pending = await self._requests.list_needing_workflow_sync(user_id)
        return await self.reconcile_many(pending, user_credential)

    async def reconcile_all(self, user_credential: str | None = None) -> ReconciliationReport:
        pending = await self._requests.list_needing_workflow_sync()
        report = await self.reconcile_many(pending, user_credential)
        logger.info(
            "workflow_reconcile_completed examined=%s changed=%s failed=%s",
            report.examined,
            report.changed,
            report.failed,
        )
        return report
