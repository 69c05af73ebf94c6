from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient

from consortium.apps.api.deps import get_services
from consortium.apps.api.main import create_app
from consortium.domain.state import RequestStatus
from consortium.tests.utils.fakes import World, sharing_world


def _headers(user_id: str = "user-1", *, role: str = "user", tenant_id: str = "tenant-south") -> dict[str, str]:
    return {
        "X-User-Id": user_id,
        "X-User-Email": f"{user_id}@south.example",
        "X-User-Name": "Robin Reyes",
        "X-Tenant-Id": tenant_id,
        "X-Role": role,
        "Authorization": "Bearer user-token",
    }


@asynccontextmanager
async def _client(world: World) -> AsyncIterator[AsyncClient]:
    app = create_app()
    app.dependency_overrides[get_services] = world.services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def _create_body(**overrides) -> dict:
    body = {
        "data_product_id": "dp-1",
        "business_justification": "Cohort study on regional enrollment.",
        "target_workspace_id": "ws-target",
        "target_lakehouse_id": "lh-target",
    }
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_create_request_returns_envelope_and_submits_workflow() -> None:
    world = sharing_world()
    async with _client(world) as client:
        response = await client.post(
            "/v1/requests",
            json=_create_body(),
            headers={**_headers(), "X-Request-Id": "req-abc"},
        )

    assert response.status_code == 201
    body = response.json()
    assert body["meta"] == {"request_id": "req-abc", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-abc"
    data = body["data"]
    assert data["status"] == "Submitted"
    assert data["requesting_user_id"] == "user-1"
    assert data["requesting_tenant_id"] == "tenant-south"
    assert data["workflow_run_id"] == "run-1"
    assert data["shortcut_created"] is False
    assert world.audit.actions() == ["RequestAccess"]
    assert world.audit.entries[0]["ip_address"] == "127.0.0.1"


@pytest.mark.asyncio
async def test_missing_identity_header_is_unauthorized() -> None:
    async with _client(sharing_world()) as client:
        response = await client.get("/v1/requests")

    assert response.status_code == 401
    error = response.json()["error"]
    assert error["code"] == "AUTH_UNAUTHORIZED"
    assert error["message"] == "X-User-Id header is required"


@pytest.mark.asyncio
async def test_malformed_bearer_token_is_unauthorized() -> None:
    async with _client(sharing_world()) as client:
        response = await client.get("/v1/requests", headers={**_headers(), "Authorization": "Token abc"})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_duplicate_active_request_conflicts() -> None:
    world = sharing_world()
    async with _client(world) as client:
        first = await client.post("/v1/requests", json=_create_body(), headers=_headers())
        second = await client.post("/v1/requests", json=_create_body(), headers=_headers())

    assert first.status_code == 201
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "CONFLICT"
    assert len(world.requests.items) == 1


@pytest.mark.asyncio
async def test_unknown_or_delisted_product_is_not_found() -> None:
    world = sharing_world()
    world.add_product("dp-hidden", "north", is_listed=False)
    async with _client(world) as client:
        missing = await client.post("/v1/requests", json=_create_body(data_product_id="dp-x"), headers=_headers())
        hidden = await client.post(
            "/v1/requests", json=_create_body(data_product_id="dp-hidden"), headers=_headers()
        )

    assert missing.status_code == 404
    assert hidden.status_code == 404
    assert hidden.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_body_validation_errors() -> None:
    async with _client(sharing_world()) as client:
        extra_field = await client.post(
            "/v1/requests",
            json=_create_body(requesting_user_id="someone-else"),
            headers=_headers(),
        )
        bad_duration = await client.post(
            "/v1/requests", json=_create_body(requested_duration_days=0), headers=_headers()
        )

    assert extra_field.status_code == 422
    assert extra_field.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert bad_duration.status_code == 400
    assert bad_duration.json()["error"]["code"] == "VALIDATION_FAILED"


@pytest.mark.asyncio
async def test_invalid_transition_reports_both_statuses() -> None:
    world = sharing_world()
    pending = world.add_request(product_id="dp-1")
    async with _client(world) as client:
        response = await client.patch(
            f"/v1/requests/{pending.id}/status",
            json={"status": "Active"},
            headers=_headers("owner-admin", role="admin"),
        )

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "INVALID_TRANSITION"
    assert error["details"] == {"current_status": "Submitted", "requested_status": "Active"}
    assert world.requests.items[pending.id].status == "Submitted"


@pytest.mark.asyncio
async def test_manual_status_updates_and_revocation() -> None:
    world = sharing_world()
    request = world.add_request(product_id="dp-1", status=RequestStatus.APPROVED)
    admin = _headers("owner-admin", role="admin")
    async with _client(world) as client:
        fulfilled = await client.patch(
            f"/v1/requests/{request.id}/status",
            json={"status": "fulfilled", "external_share_id": "share-manual"},
            headers=admin,
        )
        revoked = await client.patch(
            f"/v1/requests/{request.id}/status",
            json={"status": "Revoked", "comment": "Study ended"},
            headers=admin,
        )

    assert fulfilled.status_code == 200
    assert fulfilled.json()["data"]["external_share_id"] == "share-manual"
    assert revoked.json()["data"]["status"] == "Revoked"
    assert revoked.json()["data"]["status_changed_by"] == "owner-admin"
    assert world.shortcuts.revoked == ["share-manual"]
    assert world.notifications.status_changes[-1] == (
        "user-1@south.example",
        "Enrollment Trends",
        "Revoked",
        "Study ended",
    )


@pytest.mark.asyncio
async def test_cancel_is_limited_to_the_requester() -> None:
    world = sharing_world()
    pending = world.add_request(product_id="dp-1")
    async with _client(world) as client:
        stranger = await client.delete(f"/v1/requests/{pending.id}", headers=_headers("user-2"))
        owner = await client.delete(f"/v1/requests/{pending.id}", headers=_headers())
        again = await client.delete(f"/v1/requests/{pending.id}", headers=_headers())

    assert stranger.status_code == 403
    assert owner.status_code == 200
    assert owner.json()["data"]["status"] == "Cancelled"
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "INVALID_TRANSITION"


@pytest.mark.asyncio
async def test_other_users_requests_are_hidden() -> None:
    world = sharing_world()
    request = world.add_request(product_id="dp-1")
    async with _client(world) as client:
        stranger = await client.get(f"/v1/requests/{request.id}", headers=_headers("user-2"))
        admin = await client.get(f"/v1/requests/{request.id}", headers=_headers("ops", role="admin"))
        missing = await client.get("/v1/requests/nope", headers=_headers())

    assert stranger.status_code == 404
    assert admin.status_code == 200
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_listing_pulls_in_approval_and_fulfills() -> None:
    world = sharing_world()
    async with _client(world) as client:
        created = await client.post("/v1/requests", json=_create_body(), headers=_headers())
        world.workflow.complete(created.json()["data"]["workflow_run_id"], "Approved")
        listed = await client.get("/v1/requests", headers=_headers())
        filtered = await client.get("/v1/requests?status=submitted", headers=_headers())
        bad_filter = await client.get("/v1/requests?status=Pending", headers=_headers())

    items = listed.json()["data"]
    assert len(items) == 1
    assert items[0]["status"] == "Fulfilled"
    assert items[0]["workflow_status"] == "Completed"
    assert items[0]["shortcut_created"] is True
    assert items[0]["shortcut_name"] == "Enrollment_Trends"
    assert filtered.json()["data"] == []
    assert bad_filter.status_code == 400


@pytest.mark.asyncio
async def test_retry_fulfillment_reports_outcome_in_body() -> None:
    world = sharing_world()
    world.products.items["dp-1"].source_lakehouse_id = None
    request = world.add_request(product_id="dp-1", status=RequestStatus.APPROVED)
    admin = _headers("owner-admin", role="admin")
    async with _client(world) as client:
        precondition = await client.post(f"/v1/requests/{request.id}/retry-fulfillment", headers=admin)
        world.products.items["dp-1"].source_lakehouse_id = "lh-source"
        world.shortcuts.fail_share = True
        failed = await client.post(f"/v1/requests/{request.id}/retry-fulfillment", headers=admin)
        world.shortcuts.fail_share = False
        succeeded = await client.post(f"/v1/requests/{request.id}/retry-fulfillment", headers=admin)
        repeated = await client.post(f"/v1/requests/{request.id}/retry-fulfillment", headers=admin)

    assert precondition.status_code == 400
    assert precondition.json()["error"]["code"] == "FULFILLMENT_PRECONDITION_FAILED"
    assert precondition.json()["error"]["details"] == {"reason": "source_item_missing"}
    assert failed.status_code == 200
    assert failed.json()["data"]["fulfilled"] is False
    assert failed.json()["data"]["outcome"] == "failed"
    assert succeeded.json()["data"]["outcome"] == "fulfilled"
    assert repeated.json()["data"]["outcome"] == "already_fulfilled"
    assert len(world.shortcuts.shares) == 1


@pytest.mark.asyncio
async def test_fulfillment_details_and_summary() -> None:
    world = sharing_world()
    approved = world.add_request(product_id="dp-1", status=RequestStatus.APPROVED)
    world.add_product("dp-2", "north", name="Retention")
    world.add_request(product_id="dp-2")
    async with _client(world) as client:
        details = await client.get(f"/v1/requests/{approved.id}/fulfillment", headers=_headers())
        summary = await client.get("/v1/requests/summary", headers=_headers())

    data = details.json()["data"]
    assert data["source_workspace_id"] == "ws-north"
    assert data["recipient_tenant_id"] == "tenant-south"
    assert data["source_institution_name"] == "North University"
    assert len(data["steps"]) == 10
    assert summary.json()["data"] == {
        "pending": 1,
        "active": 0,
        "by_status": {"Approved": 1, "Submitted": 1},
    }


@pytest.mark.asyncio
async def test_status_changes_require_an_administrator() -> None:
    world = sharing_world()
    own = world.add_request(product_id="dp-1")
    approved = world.add_request(product_id="dp-1", user_id="user-3", status=RequestStatus.APPROVED)
    async with _client(world) as client:
        self_approve = await client.patch(
            f"/v1/requests/{own.id}/status", json={"status": "Approved"}, headers=_headers()
        )
        stranger = await client.patch(
            f"/v1/requests/{own.id}/status", json={"status": "Denied"}, headers=_headers("user-2")
        )
        retry = await client.post(f"/v1/requests/{approved.id}/retry-fulfillment", headers=_headers("user-3"))

    assert self_approve.status_code == 403
    assert self_approve.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert stranger.status_code == 404
    assert retry.status_code == 403
    assert world.requests.items[own.id].status == "Submitted"
    assert world.requests.items[approved.id].status == "Approved"
    assert world.shortcuts.shares == []
