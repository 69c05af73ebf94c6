from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from consortium.core.errors import InvalidTransitionError
from consortium.domain.models import AccessRequest
from consortium.domain.state import (
    STATUS_AUDIT_ACTIONS,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    AuditAction,
    RequestStatus,
    apply_transition,
    audit_action_for,
    can_cancel,
    is_valid_transition,
)


T0 = datetime(2025, 1, 10, 9, 0, tzinfo=timezone.utc)


def _request(status: RequestStatus, **overrides) -> AccessRequest:
    values = {
        "id": "req-1",
        "data_product_id": "dp-1",
        "requesting_user_id": "user-1",
        "requesting_user_email": "user-1@example.org",
        "requesting_user_name": "User One",
        "business_justification": "Research",
        "status": status.value,
        "status_changed_at": T0,
        "status_changed_by": "user-1",
        "shortcut_created": False,
    }
    values.update(overrides)
    return AccessRequest(**values)


def test_every_status_has_transition_and_audit_entries() -> None:
    assert set(VALID_TRANSITIONS) == set(RequestStatus)
    assert set(STATUS_AUDIT_ACTIONS) == set(RequestStatus)
    for status in TERMINAL_STATUSES:
        assert VALID_TRANSITIONS[status] == frozenset()


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (RequestStatus.SUBMITTED, RequestStatus.UNDER_REVIEW),
        (RequestStatus.SUBMITTED, RequestStatus.APPROVED),
        (RequestStatus.UNDER_REVIEW, RequestStatus.DENIED),
        (RequestStatus.APPROVED, RequestStatus.FULFILLED),
        (RequestStatus.APPROVED, RequestStatus.DENIED),
        (RequestStatus.FULFILLED, RequestStatus.ACTIVE),
        (RequestStatus.FULFILLED, RequestStatus.REVOKED),
        (RequestStatus.ACTIVE, RequestStatus.EXPIRED),
    ],
)
def test_allowed_transitions(current: RequestStatus, target: RequestStatus) -> None:
    assert is_valid_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (RequestStatus.SUBMITTED, RequestStatus.FULFILLED),
        (RequestStatus.APPROVED, RequestStatus.CANCELLED),
        (RequestStatus.ACTIVE, RequestStatus.APPROVED),
        (RequestStatus.DENIED, RequestStatus.SUBMITTED),
        (RequestStatus.EXPIRED, RequestStatus.ACTIVE),
        (RequestStatus.SUBMITTED, RequestStatus.SUBMITTED),
    ],
)
def test_rejected_transitions(current: RequestStatus, target: RequestStatus) -> None:
    assert not is_valid_transition(current, target)


def test_apply_transition_sets_actor_and_timestamp() -> None:
    request = _request(RequestStatus.SUBMITTED)
    moment = T0 + timedelta(hours=1)

    previous = apply_transition(request, RequestStatus.APPROVED, actor="reviewer", now=moment)

    assert previous is RequestStatus.SUBMITTED
    assert request.status == "Approved"
    assert request.status_changed_at == moment
    assert request.status_changed_by == "reviewer"


def test_invalid_transition_leaves_record_untouched() -> None:
    request = _request(RequestStatus.DENIED)

    with pytest.raises(InvalidTransitionError) as excinfo:
        apply_transition(request, RequestStatus.APPROVED, actor="reviewer", now=T0 + timedelta(hours=1))

    assert excinfo.value.current == "Denied"
    assert excinfo.value.target == "Approved"
    assert request.status == "Denied"
    assert request.status_changed_at == T0
    assert request.status_changed_by == "user-1"


def test_fulfilled_sets_expiration_from_duration() -> None:
    request = _request(RequestStatus.APPROVED, requested_duration_days=30)
    moment = T0 + timedelta(days=2)

    apply_transition(request, RequestStatus.FULFILLED, actor="system", now=moment)

    assert request.expires_at == moment + timedelta(days=30)


def test_fulfilled_without_duration_never_expires() -> None:
    request = _request(RequestStatus.APPROVED, requested_duration_days=None)

    apply_transition(request, RequestStatus.FULFILLED, actor="system", now=T0 + timedelta(days=1))

    assert request.expires_at is None


def test_change_timestamp_strictly_increases_on_equal_clock() -> None:
    request = _request(RequestStatus.SUBMITTED)

    apply_transition(request, RequestStatus.UNDER_REVIEW, actor="reviewer", now=T0)

    assert request.status_changed_at > T0


def test_naive_stored_timestamp_treated_as_utc() -> None:
    request = _request(RequestStatus.SUBMITTED, status_changed_at=T0.replace(tzinfo=None))

    apply_transition(request, RequestStatus.APPROVED, actor="reviewer", now=T0 + timedelta(minutes=5))

    assert request.status_changed_at == T0 + timedelta(minutes=5)


def test_status_parse_is_case_insensitive() -> None:
    assert RequestStatus.parse("underreview") is RequestStatus.UNDER_REVIEW
    assert RequestStatus.parse(" APPROVED ") is RequestStatus.APPROVED
    with pytest.raises(ValueError):
        RequestStatus.parse("Pending")


def test_audit_actions_follow_target_status() -> None:
    assert audit_action_for(RequestStatus.APPROVED) is AuditAction.APPROVE_REQUEST
    assert audit_action_for(RequestStatus.REVOKED) is AuditAction.REVOKE_ACCESS
    assert audit_action_for(RequestStatus.CANCELLED) is AuditAction.CANCEL_REQUEST


def test_can_cancel_only_pending_requests_of_the_requester() -> None:
    assert can_cancel(_request(RequestStatus.SUBMITTED), "user-1")
    assert can_cancel(_request(RequestStatus.UNDER_REVIEW), "user-1")
    assert not can_cancel(_request(RequestStatus.APPROVED), "user-1")
    assert not can_cancel(_request(RequestStatus.SUBMITTED), "someone-else")
    assert not can_cancel(_request(RequestStatus.SUBMITTED), None)
