"""Access request lifecycle.

Submitted -> UnderReview -> Approved -> Fulfilled -> Active -> Revoked/Expired,
with Denied and Cancelled as terminal branches off the early states. Every
transition goes through :func:`apply_transition`, which either mutates the
record completely or raises and leaves it untouched.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum

from consortium.core.errors import InvalidTransitionError
from consortium.domain.models import AccessRequest


class RequestStatus(str, Enum):
    SUBMITTED = "Submitted"
    UNDER_REVIEW = "UnderReview"
    APPROVED = "Approved"
    DENIED = "Denied"
    FULFILLED = "Fulfilled"
    ACTIVE = "Active"
    REVOKED = "Revoked"
    EXPIRED = "Expired"
    CANCELLED = "Cancelled"

    @classmethod
    def parse(cls, value: str) -> "RequestStatus":
        # Accept any casing so API callers and stored rows normalize identically.
        for member in cls:
            if member.value.lower() == str(value).strip().lower():
                return member
        raise ValueError(f"Unknown request status: {value}")


class AuditAction(str, Enum):
    REQUEST_ACCESS = "RequestAccess"
    CANCEL_REQUEST = "CancelRequest"
    REVIEW_REQUEST = "ReviewRequest"
    APPROVE_REQUEST = "ApproveRequest"
    DENY_REQUEST = "DenyRequest"
    FULFILL_REQUEST = "FulfillRequest"
    ACTIVATE_ACCESS = "ActivateAccess"
    REVOKE_ACCESS = "RevokeAccess"
    EXPIRE_ACCESS = "ExpireAccess"
    RETRY_FULFILLMENT = "RetryFulfillment"
    TRIGGER_SCAN = "TriggerScan"


# Synthetic actors for automated transitions.
SYSTEM_ACTOR = "system"
WORKFLOW_ACTOR = "purview-workflow"

INITIAL_STATUS = RequestStatus.SUBMITTED
TERMINAL_STATUSES = frozenset(
    {RequestStatus.DENIED, RequestStatus.CANCELLED, RequestStatus.REVOKED, RequestStatus.EXPIRED}
)
BLOCKING_STATUSES = frozenset(
    {
        RequestStatus.SUBMITTED,
        RequestStatus.UNDER_REVIEW,
        RequestStatus.APPROVED,
        RequestStatus.FULFILLED,
        RequestStatus.ACTIVE,
    }
)
PENDING_STATUSES = frozenset({RequestStatus.SUBMITTED, RequestStatus.UNDER_REVIEW})
GRANTED_STATUSES = frozenset({RequestStatus.FULFILLED, RequestStatus.ACTIVE})

VALID_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.SUBMITTED: frozenset(
        {
            RequestStatus.UNDER_REVIEW,
            RequestStatus.APPROVED,
            RequestStatus.DENIED,
            RequestStatus.CANCELLED,
        }
    ),
    RequestStatus.UNDER_REVIEW: frozenset(
        {RequestStatus.APPROVED, RequestStatus.DENIED, RequestStatus.CANCELLED}
    ),
    RequestStatus.APPROVED: frozenset({RequestStatus.FULFILLED, RequestStatus.DENIED}),
    RequestStatus.FULFILLED: frozenset({RequestStatus.ACTIVE, RequestStatus.REVOKED}),
    RequestStatus.ACTIVE: frozenset({RequestStatus.REVOKED, RequestStatus.EXPIRED}),
    RequestStatus.DENIED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
    RequestStatus.REVOKED: frozenset(),
    RequestStatus.EXPIRED: frozenset(),
}

STATUS_AUDIT_ACTIONS: dict[RequestStatus, AuditAction] = {
    RequestStatus.SUBMITTED: AuditAction.REQUEST_ACCESS,
    RequestStatus.UNDER_REVIEW: AuditAction.REVIEW_REQUEST,
    RequestStatus.APPROVED: AuditAction.APPROVE_REQUEST,
    RequestStatus.DENIED: AuditAction.DENY_REQUEST,
    RequestStatus.FULFILLED: AuditAction.FULFILL_REQUEST,
    RequestStatus.ACTIVE: AuditAction.ACTIVATE_ACCESS,
    RequestStatus.REVOKED: AuditAction.REVOKE_ACCESS,
    RequestStatus.EXPIRED: AuditAction.EXPIRE_ACCESS,
    RequestStatus.CANCELLED: AuditAction.CANCEL_REQUEST,
}


def _check_tables() -> None:
    # Fail at import time if a new status is added without table entries.
    missing_actions = [status.value for status in RequestStatus if status not in STATUS_AUDIT_ACTIONS]
    missing_transitions = [status.value for status in RequestStatus if status not in VALID_TRANSITIONS]
    if missing_actions or missing_transitions:
        raise RuntimeError(
            f"status tables incomplete actions={missing_actions} transitions={missing_transitions}"
        )
    for status in TERMINAL_STATUSES:
        if VALID_TRANSITIONS[status]:
            raise RuntimeError(f"terminal status {status.value} must not have outgoing transitions")


_check_tables()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def current_status(request: AccessRequest) -> RequestStatus:
    return RequestStatus.parse(request.status)


def is_valid_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def audit_action_for(status: RequestStatus) -> AuditAction:
    return STATUS_AUDIT_ACTIONS[status]


def _as_aware(value: datetime) -> datetime:
    # Some drivers hand back naive datetimes; treat them as UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def apply_transition(
    request: AccessRequest,
    target: RequestStatus,
    *,
    actor: str,
    now: datetime | None = None,
) -> RequestStatus:
    """Move ``request`` to ``target`` and return the previous status.

    Sets the status, the change timestamp and the acting identity. Reaching
    Fulfilled with a requested duration also sets the expiration. Raises
    :class:`InvalidTransitionError` without touching the record when the
    pair is not in :data:`VALID_TRANSITIONS`.
    """
    previous = current_status(request)
    if not is_valid_transition(previous, target):
        raise InvalidTransitionError(previous.value, target.value)

    changed_at = _as_aware(now or utc_now())
    if request.status_changed_at is not None:
        last = _as_aware(request.status_changed_at)
        if changed_at <= last:
            # Keep change timestamps strictly increasing even on coarse clocks.
            changed_at = last + timedelta(microseconds=1)

    request.status = target.value
    request.status_changed_at = changed_at
    request.status_changed_by = actor or SYSTEM_ACTOR
    if target is RequestStatus.FULFILLED and request.requested_duration_days:
        request.expires_at = changed_at + timedelta(days=int(request.requested_duration_days))
    return previous


def can_cancel(request: AccessRequest, user_id: str | None) -> bool:
    return bool(user_id) and request.requesting_user_id == user_id and current_status(request) in PENDING_STATUSES
