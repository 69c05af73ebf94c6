from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from consortium.core.errors import (
    FulfillmentPreconditionError,
    InvalidTransitionError,
    NotFoundError,
    ShortcutServiceError,
)
from consortium.domain.models import AccessRequest, DataProduct, Institution
from consortium.domain.state import (
    RequestStatus,
    SYSTEM_ACTOR,
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
from consortium.providers.shortcuts.base import ShareTarget, ShortcutService, build_shortcut_name
from consortium.services.audit import AuditLog
from consortium.services.notifications import NotificationService
from consortium.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FulfillmentOptions:
    # Used when a product has no source lakehouse recorded.
    source_item_override: str | None = None


@dataclass(frozen=True)
class FulfillmentOutcome:
    outcome: str
    message: str
    share_id: str | None = None
    shortcut_name: str | None = None

    @property
    def fulfilled(self) -> bool:
        return self.outcome in {"fulfilled", "already_fulfilled"}


@dataclass(frozen=True)
class _Context:
    product: DataProduct
    source: Institution
    target: ShareTarget


class FulfillmentOrchestrator:
    """Provision the cross-tenant share and shortcut for an approved request.

    Outcomes are recorded on the request itself so an operator can see how
    far automation got: a failed share leaves only ``fulfillment_error``, a
    failed shortcut keeps the share id and the request stays Approved, and a
    full success drives the request to Fulfilled.
    """

    def __init__(
        self,
        *,
        requests: AccessRequestRepository,
        products: DataProductRepository,
        institutions: InstitutionRepository,
        shortcuts: ShortcutService,
        notifications: NotificationService,
        audit: AuditLog,
        options: FulfillmentOptions | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._requests = requests
        self._products = products
        self._institutions = institutions
        self._shortcuts = shortcuts
        self._notifications = notifications
        self._audit = audit
        self._options = options or FulfillmentOptions()
        self._clock = clock

    async def _resolve(self, request: AccessRequest) -> _Context:
        # Every identifier is checked before any external call is made.
        product = await self._products.get(request.data_product_id)
        if product is None:
            raise NotFoundError(f"Data product {request.data_product_id} not found.")
        source = await self._institutions.get(product.institution_id)
        if source is None or not source.fabric_workspace_id:
            raise FulfillmentPreconditionError(
                "source_workspace_missing",
                "The owning institution has no workspace configured for sharing.",
            )
        if not (source.is_active and source.admin_consent_granted):
            raise FulfillmentPreconditionError(
                "source_institution_unavailable",
                "The owning institution is inactive or has not granted consent.",
            )
        if not request.target_workspace_id or not request.target_lakehouse_id:
            raise FulfillmentPreconditionError(
                "target_missing",
                "The request needs a target workspace and lakehouse for automated fulfillment.",
            )
        recipient_tenant = request.requesting_tenant_id
        if not recipient_tenant and request.requesting_institution_id:
            requesting = await self._institutions.get(request.requesting_institution_id)
            recipient_tenant = requesting.tenant_id if requesting is not None else None
        if not recipient_tenant:
            raise FulfillmentPreconditionError(
                "recipient_tenant_missing",
                "The recipient tenant could not be determined for this request.",
            )
        source_item = product.source_lakehouse_id or self._options.source_item_override
        if not source_item:
            raise FulfillmentPreconditionError(
                "source_item_missing",
                "The data product has no source lakehouse recorded.",
            )
        return _Context(
            product=product,
            source=source,
            target=ShareTarget(
                source_workspace_id=source.fabric_workspace_id,
                source_item_id=source_item,
                source_tenant_id=source.tenant_id,
                recipient_tenant_id=recipient_tenant,
                recipient_email=request.requesting_user_email,
                target_workspace_id=request.target_workspace_id,
                target_lakehouse_id=request.target_lakehouse_id,
                display_name=product.name,
            ),
        )

    async def fulfill(self, request: AccessRequest, *, actor: str = SYSTEM_ACTOR) -> FulfillmentOutcome:
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
                f"Only approved requests can be fulfilled (current status: {status.value}).",
            )

        context = await self._resolve(request)
        if request.external_share_id:
            # A previous attempt already created the share; only the shortcut is left.
            share_id = request.external_share_id
            try:
                shortcut_name = await self._shortcuts.create_shortcut(context.target, share_id)
            except ShortcutServiceError as exc:
                return await self._record_partial(request, share_id, f"Shortcut creation failed: {exc}")
            return await self._record_success(request, context, share_id, shortcut_name, actor)

        result = await self._shortcuts.create_cross_tenant_share(context.target)
        if result.success and result.share_id:
            shortcut_name = result.shortcut_name or build_shortcut_name(context.product.name)
            return await self._record_success(request, context, result.share_id, shortcut_name, actor)
        if result.partial_success and result.share_id:
            return await self._record_partial(request, result.share_id, result.error or "Shortcut creation failed.")
        return await self._record_failure(request, result.error or "External data share creation failed.")

    async def _record_failure(self, request: AccessRequest, message: str) -> FulfillmentOutcome:
        request.fulfillment_error = message
        await self._requests.save(request)
        increment_counter("fulfillment_failed_total")
        logger.error("fulfillment_failed request_id=%s error=%s", request.id, message)
        return FulfillmentOutcome(outcome="failed", message=message)

    async def _record_partial(self, request: AccessRequest, share_id: str, message: str) -> FulfillmentOutcome:
        request.external_share_id = share_id
        request.shortcut_created = False
        request.fulfillment_error = message
        await self._requests.save(request)
        increment_counter("fulfillment_partial_total")
        logger.warning(
            "fulfillment_partial request_id=%s share_id=%s error=%s", request.id, share_id, message
        )
        return FulfillmentOutcome(outcome="partial", message=message, share_id=share_id)

    async def _record_success(
        self,
        request: AccessRequest,
        context: _Context,
        share_id: str,
        shortcut_name: str,
        actor: str,
    ) -> FulfillmentOutcome:
        apply_transition(request, RequestStatus.FULFILLED, actor=actor, now=self._clock())
        request.external_share_id = share_id
        request.shortcut_name = shortcut_name
        request.shortcut_created = True
        request.fulfillment_error = None
        await self._requests.save(request)
        increment_counter("fulfillment_succeeded_total")
        logger.info(
            "fulfillment_succeeded request_id=%s share_id=%s shortcut=%s",
            request.id,
            share_id,
            shortcut_name,
        )

        try:
            await self._notifications.send_status_change_notification(
                request.requesting_user_email,
                context.product.name,
                RequestStatus.FULFILLED.value,
                f"Shortcut '{shortcut_name}' is available in your lakehouse.",
            )
        except Exception as exc:  # noqa: BLE001 - notifications must not undo fulfillment
            logger.warning("fulfillment_notification_failed request_id=%s", request.id, exc_info=exc)
        await self._audit.log(
            audit_action_for(RequestStatus.FULFILLED).value,
            user_id=actor,
            entity_type="AccessRequest",
            entity_id=request.id,
            details={"share_id": share_id, "shortcut_name": shortcut_name, "automated": True},
        )
        return FulfillmentOutcome(
            outcome="fulfilled",
            message="Cross-tenant share and shortcut created.",
            share_id=share_id,
            shortcut_name=shortcut_name,
        )
