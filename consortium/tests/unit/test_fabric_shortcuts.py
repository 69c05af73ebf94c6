from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from consortium.core.config import get_settings
from consortium.providers.identity import StaticTokenProvider
from consortium.providers.shortcuts.base import ShareTarget, TwoPhaseShortcutService
from consortium.providers.shortcuts.fabric import FabricShortcutService


@pytest.fixture(autouse=True)
def _fast_retries(monkeypatch) -> None:
    monkeypatch.setenv("EXT_RETRY_BACKOFF_MS", "1")
    monkeypatch.setenv("EXT_RETRY_MAX_ATTEMPTS", "2")
    get_settings.cache_clear()


def _target() -> ShareTarget:
    return ShareTarget(
        source_workspace_id="ws-north",
        source_item_id="lh-source",
        source_tenant_id="tenant-north",
        recipient_tenant_id="tenant-south",
        recipient_email="user-1@south.example",
        target_workspace_id="ws-target",
        target_lakehouse_id="lh-target",
        display_name="Enrollment Trends (2024)",
    )


def _service(handler, tokens: StaticTokenProvider | None = None) -> FabricShortcutService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FabricShortcutService(tokens or StaticTokenProvider("fabric-token"), client=client)


@pytest.mark.asyncio
async def test_cross_tenant_share_creates_share_then_shortcut() -> None:
    seen: list[tuple[str, str, dict]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, json.loads(request.content)))
        if request.url.path.endswith("/externalDataShares"):
            return httpx.Response(201, json={"id": "share-42"})
        return httpx.Response(201, json={})

    tokens = StaticTokenProvider("fabric-token")
    result = await _service(handler, tokens).create_cross_tenant_share(_target())

    assert result.success is True
    assert result.share_id == "share-42"
    assert result.shortcut_name == "Enrollment_Trends_2024"
    share_call, shortcut_call = seen
    assert share_call[1] == "/v1/workspaces/ws-north/items/lh-source/externalDataShares"
    assert share_call[2]["recipient"] == {
        "tenantId": "tenant-south",
        "userPrincipalName": "user-1@south.example",
    }
    assert shortcut_call[1] == "/v1/workspaces/ws-target/items/lh-target/shortcuts"
    assert shortcut_call[2]["path"] == "Tables/Enrollment_Trends_2024"
    assert shortcut_call[2]["target"]["oneLake"]["itemId"] == "lh-source"
    # Share runs in the owner's tenant, the shortcut in the recipient's.
    assert [call[0] for call in tokens.calls] == ["tenant-north", "tenant-south"]


@pytest.mark.asyncio
async def test_shortcut_failure_reports_partial_success() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/externalDataShares"):
            return httpx.Response(201, json={"id": "share-42"})
        return httpx.Response(403, text="workspace access denied")

    result = await _service(handler).create_cross_tenant_share(_target())

    assert result.success is False
    assert result.partial_success is True
    assert result.share_id == "share-42"
    assert result.shortcut_name is None
    assert "shortcut creation failed" in (result.error or "")


@pytest.mark.asyncio
async def test_share_failure_reports_plain_failure() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(400, text="external sharing disabled")

    result = await _service(handler).create_cross_tenant_share(_target())

    assert result.success is False
    assert result.partial_success is False
    assert result.share_id is None
    assert "External data share creation failed" in (result.error or "")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_share_response_without_id_is_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"status": "created"})

    result = await _service(handler).create_cross_tenant_share(_target())

    assert result.success is False
    assert "did not include an id" in (result.error or "")


@pytest.mark.asyncio
async def test_revoke_share_returns_bool() -> None:
    def ok(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        assert request.url.path.endswith("/externalDataShares/share-42")
        return httpx.Response(204)

    def denied(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="missing")

    assert await _service(ok).revoke_share("ws-north", "lh-source", "share-42", "tenant-north") is True
    assert await _service(denied).revoke_share("ws-north", "lh-source", "share-42", "tenant-north") is False


@pytest.mark.asyncio
async def test_shortcut_timeout_keeps_created_share(monkeypatch) -> None:
    monkeypatch.setenv("EXT_CALL_TIMEOUT_MS", "50")
    get_settings.cache_clear()
    shares: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/externalDataShares"):
            shares.append(request.url.path)
            return httpx.Response(201, json={"id": "share-1"})
        await asyncio.sleep(0.5)
        return httpx.Response(201, json={})

    result = await _service(handler).create_cross_tenant_share(_target())

    assert result.success is False
    assert result.partial_success is True
    assert result.share_id == "share-1"
    assert "TimeoutError" in result.error
    assert len(shares) == 1


@pytest.mark.asyncio
async def test_share_timeout_is_reported_as_failure(monkeypatch) -> None:
    monkeypatch.setenv("EXT_CALL_TIMEOUT_MS", "50")
    get_settings.cache_clear()

    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.5)
        return httpx.Response(201, json={"id": "share-late"})

    result = await _service(handler).create_cross_tenant_share(_target())

    assert result.success is False
    assert result.partial_success is False
    assert result.share_id is None
    assert result.error.startswith("External data share creation failed")


def test_two_phase_service_requires_both_calls() -> None:
    class ShareOnly(TwoPhaseShortcutService):
        async def create_external_share(self, target: ShareTarget) -> str:
            return "share-1"

    with pytest.raises(TypeError):
        ShareOnly()
