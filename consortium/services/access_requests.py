from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from consortium.core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
    WorkflowServiceError,
)
from consortium.domain.models import AccessRequest, DataProduct, Institution
from consortium.domain.state import (
    GRANTED_STATUSES,
    INITIAL_STATUS,
    PENDING_STATUSES,
    RequestStatus,
    SYSTEM_ACTOR,
    AuditAction,
    apply_transition,
    audit_action_for,
    can_cancel,
    current_status,
    utc_now,
)
from consortium.persistence.repos.base import (
    AccessRequestRepository,
    DataProductRepository,
    InstitutionRepository,
)
from consortium.providers.shortcuts.base import ShortcutService
from consortium.providers.workflow.base import ApprovalWorkflowService
from consortium.services.audit import AuditLog
from consortium.services.fulfillment import FulfillmentOrchestrator, FulfillmentOutcome
from consortium.services.notifications import NotificationService
from consortium.services.reconciliation import WorkflowReconciler
from consortium.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset({"admin", "consortium_admin", "institution_admin"})
MAX_DURATION_DAYS = 3650

FULFILLMENT_DETAIL_STATUSES = frozenset({RequestStatus.APPROVED, RequestStatus.FULFILLED})


@dataclass(frozen=True)
class Caller:
    user_id: str
    email: str | None = None
    name: str | None = None
    tenant_id: str | None = None
    role: str | None = None
    # Opaque bearer credential forwarded to external collaborators.
    credential: str | None = None
    ip_address: str | None = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() in ADMIN_ROLES


@dataclass(frozen=True)
class NewAccessRequest:
    data_product_id: str
    business_justification: str
    target_workspace_id: str | None = None
    target_lakehouse_id: str | None = None
    requested_duration_days: int | None = None


@dataclass(frozen=True)
class FulfillmentDetails:
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


@dataclass(frozen=True)
class RequestSummary:
    pending: int
    active: int
    by_status: dict[str, int]


class AccessRequestService:
    """User-facing lifecycle operations on access requests."""

    def __init__(
        self,
        *,
        requests: AccessRequestRepository,
        products: DataProductRepository,
        institutions: InstitutionRepository,
        workflow: ApprovalWorkflowService,
        shortcuts: ShortcutService,
        notifications: NotificationService,
        audit: AuditLog,
        reconciler: WorkflowReconciler,
        fulfillment: FulfillmentOrchestrator,
        workflow_submission_enabled: bool = True,
        reconcile_on_list: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._requests = requests
        self._products = products
        self._institutions = institutions
        self._workflow = workflow
        self._shortcuts = shortcuts
        self._notifications = notifications
        self._audit = audit
        self._reconciler = reconciler
        self._fulfillment = fulfillment
        self._workflow_submission_enabled = workflow_submission_enabled
        self._reconcile_on_list = reconcile_on_list
        self._clock = clock

    async def _product_and_owner(self, product_id: str) -> tuple[DataProduct, Institution | None]:
        product = await self._products.get(product_id)
        if product is None:
            raise NotFoundError(f"Data product {product_id} not found.")
        return product, await self._institutions.get(product.institution_id)

    async def _audit_entry(
        self, action: AuditAction, caller: Caller | None, request: AccessRequest, **details: Any
    ) -> None:
        await self._audit.log(
            action.value,
            user_id=caller.user_id if caller else SYSTEM_ACTOR,
            user_email=caller.email if caller else None,
            entity_type="AccessRequest",
            entity_id=request.id,
            details=details or None,
            ip_address=caller.ip_address if caller else None,
        )

    def _validate(self, payload: NewAccessRequest) -> None:
        if not payload.data_product_id or not payload.data_product_id.strip():
            raise ValidationFailedError("data_product_id is required.")
        if not payload.business_justification or not payload.business_justification.strip():
            raise ValidationFailedError("A business justification is required.")
        days = payload.requested_duration_days
        if days is not None and not (1 <= days <= MAX_DURATION_DAYS):
            raise ValidationFailedError(f"requested_duration_days must be between 1 and {MAX_DURATION_DAYS}.")

    async def _submit_workflow(
        self, request: AccessRequest, product: DataProduct, owner: Institution | None, caller: Caller
    ) -> None:
        # Best effort: the request stays Submitted without a run id when submission fails.
        if not self._workflow_submission_enabled or owner is None or not owner.purview_account_name:
            return
        try:
            result = await self._workflow.submit(
                owner.purview_account_name,
                owner.tenant_id,
                product.name,
                request.business_justification,
                caller.credential,
            )
        except WorkflowServiceError as exc:
            increment_counter("workflow_submit_failed_total")
            logger.warning("workflow_submit_failed request_id=%s error=%s", request.id, exc)
            return
        except Exception as exc:  # noqa: BLE001 - submission never fails the create
            logger.warning("workflow_submit_failed request_id=%s", request.id, exc_info=exc)
            return
        request.workflow_run_id = result.run_id
        await self._requests.save(request)
        logger.info("workflow_run_recorded request_id=%s run_id=%s", request.id, result.run_id)

    async def create(self, caller: Caller, payload: NewAccessRequest) -> AccessRequest:
        self._validate(payload)
        product, owner = await self._product_and_owner(payload.data_product_id)
        if not product.is_listed:
            raise NotFoundError("Data product not found or not available.")

        existing = await self._requests.get_blocking(caller.user_id, product.id)
        if existing is not None:
            raise ConflictError(
                f"You already have an active request (status: {existing.status}) for this data product."
            )

        requesting = await self._institutions.get_by_tenant(caller.tenant_id) if caller.tenant_id else None
        now = self._clock()
        request = AccessRequest(
            id=uuid4().hex,
            data_product_id=product.id,
            requesting_user_id=caller.user_id,
            requesting_user_email=caller.email or "unknown",
            requesting_user_name=caller.name or "Unknown User",
            requesting_institution_id=requesting.id if requesting else None,
            requesting_tenant_id=caller.tenant_id,
            target_workspace_id=payload.target_workspace_id,
            target_lakehouse_id=payload.target_lakehouse_id,
            business_justification=payload.business_justification.strip(),
            requested_duration_days=payload.requested_duration_days,
            status=INITIAL_STATUS.value,
            status_changed_at=now,
            status_changed_by=caller.user_id,
            shortcut_created=False,
            created_at=now,
        )
        # The storage-level unique index turns a lost race into ConflictError here.
        await self._requests.add(request)
        increment_counter("access_requests_created_total")
        logger.info(
            "access_request_created request_id=%s product_id=%s user_id=%s",
            request.id,
            product.id,
            caller.user_id,
        )

        await self._submit_workflow(request, product, owner, caller)
        if owner is not None:
            try:
                await self._notifications.send_access_request_notification(
                    owner.primary_contact_email,
                    product.name,
                    request.requesting_user_name,
                    request.business_justification,
                )
            except Exception as exc:  # noqa: BLE001 - notifications are best effort
                logger.warning("owner_notification_failed request_id=%s", request.id, exc_info=exc)
        await self._audit_entry(AuditAction.REQUEST_ACCESS, caller, request, data_product_id=product.id)
        return request

    async def list_for_user(
        self,
        caller: Caller,
        *,
        status: str | None = None,
        data_product_id: str | None = None,
    ) -> list[AccessRequest]:
        status_filter = None
        if status:
            try:
                status_filter = RequestStatus.parse(status)
            except ValueError as exc:
                raise ValidationFailedError(str(exc)) from exc
        if self._reconcile_on_list:
            await self._reconciler.reconcile_for_user(caller.user_id, caller.credential)
        results = await self._requests.list_by_user(caller.user_id)
        if status_filter is not None:
            results = [item for item in results if item.status == status_filter.value]
        if data_product_id:
            results = [item for item in results if item.data_product_id == data_product_id]
        return results

    async def get(self, caller: Caller, request_id: str) -> AccessRequest:
        request = await self._requests.get(request_id)
        # Hide other users' requests behind the same not-found answer.
        if request is None or (request.requesting_user_id != caller.user_id and not caller.is_admin):
            raise NotFoundError(f"Access request {request_id} not found.")
        return request

    def _require_reviewer(self, caller: Caller, request: AccessRequest) -> None:
        # Only consortium operators move a request outside the approval workflow.
        if not caller.is_admin:
            logger.warning(
                "status_change_forbidden request_id=%s actor=%s", request.id, caller.user_id
            )
            raise ForbiddenError("Only an administrator can change the status of this request.")

    async def cancel(self, caller: Caller, request_id: str) -> AccessRequest:
        request = await self._requests.get(request_id)
        if request is None:
            raise NotFoundError(f"Access request {request_id} not found.")
        if request.requesting_user_id != caller.user_id:
            raise ForbiddenError("Only the original requester can cancel this request.")
        if not can_cancel(request, caller.user_id):
            raise InvalidTransitionError(
                request.status,
                RequestStatus.CANCELLED.value,
                "Only pending requests can be cancelled.",
            )
        apply_transition(request, RequestStatus.CANCELLED, actor=caller.user_id, now=self._clock())
        await self._requests.save(request)
        await self._audit_entry(AuditAction.CANCEL_REQUEST, caller, request)
        return request

    async def _revoke_share(self, request: AccessRequest) -> None:
        # Best effort: the local revocation stands even when the external share survives.
        if not request.external_share_id:
            return
        product, owner = await self._product_and_owner(request.data_product_id)
        source_item = product.source_lakehouse_id
        if owner is None or not owner.fabric_workspace_id or not source_item:
            logger.warning("share_revoke_skipped request_id=%s reason=missing_source", request.id)
            return
        try:
            revoked = await self._shortcuts.revoke_share(
                owner.fabric_workspace_id, source_item, request.external_share_id, owner.tenant_id
            )
        except Exception as exc:  # noqa: BLE001 - revocation failures must not block the transition
            logger.warning("share_revoke_failed request_id=%s", request.id, exc_info=exc)
            return
        if not revoked:
            logger.warning(
                "share_revoke_failed request_id=%s share_id=%s", request.id, request.external_share_id
            )

    async def update_status(
        self,
        caller: Caller,
        request_id: str,
        new_status: str,
        *,
        comment: str | None = None,
        external_share_id: str | None = None,
    ) -> AccessRequest:
        try:
            target = RequestStatus.parse(new_status)
        except ValueError as exc:
            raise ValidationFailedError(str(exc)) from exc
        if target is RequestStatus.CANCELLED:
            # Cancellation keeps its own requester-only rules.
            return await self.cancel(caller, request_id)
        request = await self.get(caller, request_id)
        self._require_reviewer(caller, request)

        previous = apply_transition(request, target, actor=caller.user_id or SYSTEM_ACTOR, now=self._clock())
        if target is RequestStatus.FULFILLED and external_share_id:
            request.external_share_id = external_share_id
        await self._requests.save(request)
        increment_counter(f"status_transition_total.{target.value}")
        logger.info(
            "access_request_status_changed request_id=%s from=%s to=%s actor=%s",
            request.id,
            previous.value,
            target.value,
            caller.user_id,
        )

        if target is RequestStatus.REVOKED:
            await self._revoke_share(request)

        product = await self._products.get(request.data_product_id)
        try:
            await self._notifications.send_status_change_notification(
                request.requesting_user_email,
                product.name if product else request.data_product_id,
                target.value,
                comment,
            )
        except Exception as exc:  # noqa: BLE001 - notifications are best effort
            logger.warning("status_notification_failed request_id=%s", request.id, exc_info=exc)
        await self._audit_entry(
            audit_action_for(target), caller, request, previous_status=previous.value, comment=comment
        )
        return request

    async def retry_fulfillment(self, caller: Caller, request_id: str) -> FulfillmentOutcome:
        request = await self.get(caller, request_id)
        self._require_reviewer(caller, request)
        if request.shortcut_created:
            return FulfillmentOutcome(
                outcome="already_fulfilled",
                message="The shortcut has already been created for this request.",
                share_id=request.external_share_id,
                shortcut_name=request.shortcut_name,
            )
        status = current_status(request)
        if status is not RequestStatus.APPROVED:
            raise InvalidTransitionError(
                status.value,
                RequestStatus.FULFILLED.value,
                f"Fulfillment can only be retried for approved requests (current status: {status.value}).",
            )
        await self._audit_entry(AuditAction.RETRY_FULFILLMENT, caller, request)
        return await self._fulfillment.fulfill(request, actor=caller.user_id)

    async def get_fulfillment_details(self, caller: Caller, request_id: str) -> FulfillmentDetails:
        request = await self.get(caller, request_id)
        status = current_status(request)
        if status not in FULFILLMENT_DETAIL_STATUSES:
            raise ValidationFailedError("Fulfillment details are only available for approved requests.")
        product, source = await self._product_and_owner(request.data_product_id)
        recipient_tenant = request.requesting_tenant_id
        if not recipient_tenant and request.requesting_institution_id:
            requesting = await self._institutions.get(request.requesting_institution_id)
            recipient_tenant = requesting.tenant_id if requesting else None
        recipient_tenant = recipient_tenant or "(unknown tenant)"
        source_workspace = source.fabric_workspace_id if source else None

        steps = [
            "1. Open the Fabric portal (https://app.fabric.microsoft.com)",
            f"2. Navigate to workspace: {source_workspace or '(configure workspace ID)'}",
            f"3. Find the data item for '{product.name}'",
            "4. Click 'Share' -> 'External data share'",
            f"5. Enter recipient tenant: {recipient_tenant}",
            f"6. Enter recipient email: {request.requesting_user_email}",
            "7. Set appropriate permissions and confirm the share",
            f"8. The recipient should create a shortcut in their lakehouse: {request.target_lakehouse_id or '(not specified)'}",
            f"9. Target workspace: {request.target_workspace_id or '(not specified)'}",
            "10. Return to this portal and mark the request as 'Fulfilled' with the share ID",
        ]
        return FulfillmentDetails(
            request_id=request.id,
            data_product_name=product.name,
            source_institution_name=source.name if source else "Unknown",
            source_workspace_id=source_workspace,
            recipient_tenant_id=recipient_tenant,
            recipient_user_email=request.requesting_user_email,
            target_workspace_id=request.target_workspace_id,
            target_lakehouse_id=request.target_lakehouse_id,
            external_share_id=request.external_share_id,
            shortcut_created=bool(request.shortcut_created),
            fulfillment_error=request.fulfillment_error,
            steps=steps,
        )

    async def expire_due_requests(self, now: datetime | None = None) -> list[str]:
        moment = now or self._clock()
        expired: list[str] = []
        due_ids = [request.id for request in await self._requests.list_expired(moment)]
        for request_id in due_ids:
            try:
                request = await self._requests.get(request_id)
                if request is None:
                    continue
                apply_transition(request, RequestStatus.EXPIRED, actor=SYSTEM_ACTOR, now=moment)
                await self._requests.save(request)
                await self._revoke_share(request)
                await self._audit_entry(AuditAction.EXPIRE_ACCESS, None, request)
            except Exception as exc:  # noqa: BLE001 - one request must not stop the sweep
                logger.error("access_expiry_failed request_id=%s", request_id, exc_info=exc)
                continue
            expired.append(request_id)
        if expired:
            logger.info("access_requests_expired count=%s", len(expired))
        return expired

    async def summary(self, caller: Caller) -> RequestSummary:
        counts = await self._requests.count_by_status(caller.user_id)
        pending = sum(counts.get(status.value, 0) for status in PENDING_STATUSES)
        active = sum(counts.get(status.value, 0) for status in GRANTED_STATUSES)
        return RequestSummary(pending=pending, active=active, by_status=counts)
