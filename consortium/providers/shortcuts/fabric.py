from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from consortium.core.config import get_settings
from consortium.core.errors import ShortcutServiceError, TokenAcquisitionError
from consortium.providers.identity import TokenProvider
from consortium.providers.shortcuts.base import ShareTarget, TwoPhaseShortcutService, build_shortcut_name
from consortium.services.resilience import retry_async
from consortium.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "shortcuts.fabric"


class FabricShortcutService(TwoPhaseShortcutService):
    def __init__(self, tokens: TokenProvider, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._tokens = tokens
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    def _url(self, path: str) -> str:
        return f"{self._settings.fabric_base_url.rstrip('/')}{path}"

    async def _send(
        self, method: str, url: str, tenant_id: str, body: dict[str, Any] | None = None
    ) -> httpx.Response:
        # Fabric calls always run with the app identity in the owning tenant.
        try:
            token = await self._tokens.get_token(tenant_id, self._settings.fabric_scope)
        except TokenAcquisitionError as exc:
            raise ShortcutServiceError(f"Could not obtain a Fabric token for tenant {tenant_id}: {exc}") from exc

        client = self._get_client()
        start = time.monotonic()

        async def _call() -> httpx.Response:
            response = await client.request(
                method, url, json=body, headers={"Authorization": f"Bearer {token}"}
            )
            if response.status_code >= 500 or response.status_code == 429:
                response.raise_for_status()
            return response

        try:
            response = await retry_async(_call)
        except (httpx.HTTPError, TimeoutError) as exc:
            record_external_call(
                integration=_INTEGRATION, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise ShortcutServiceError(f"Fabric API call failed: {type(exc).__name__}: {exc}") from exc

        success = response.status_code < 400
        record_external_call(
            integration=_INTEGRATION, latency_ms=(time.monotonic() - start) * 1000.0, success=success
        )
        if not success:
            raise ShortcutServiceError(f"Fabric API error ({response.status_code}): {response.text[:500]}")
        return response

    async def create_external_share(self, target: ShareTarget) -> str:
        url = self._url(
            f"/workspaces/{target.source_workspace_id}/items/{target.source_item_id}/externalDataShares"
        )
        body = {
            "paths": [{"path": "/"}],
            "recipient": {
                "tenantId": target.recipient_tenant_id,
                "userPrincipalName": target.recipient_email,
            },
        }
        response = await self._send("POST", url, target.source_tenant_id, body)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ShortcutServiceError("Fabric share response was not JSON.") from exc
        share_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(share_id, str) or not share_id:
            raise ShortcutServiceError("Fabric share response did not include an id.")
        return share_id

    async def create_shortcut(self, target: ShareTarget, share_id: str) -> str:
        # The share id is implied by the cross-tenant target; the call only needs the source item.
        shortcut_name = build_shortcut_name(target.display_name)
        url = self._url(f"/workspaces/{target.target_workspace_id}/items/{target.target_lakehouse_id}/shortcuts")
        body = {
            "name": shortcut_name,
            "path": f"Tables/{shortcut_name}",
            "target": {
                "oneLake": {
                    "workspaceId": target.source_workspace_id,
                    "itemId": target.source_item_id,
                    "path": "/",
                }
            },
        }
        logger.info("shortcut_create_started share_id=%s shortcut=%s", share_id, shortcut_name)
        await self._send("POST", url, target.recipient_tenant_id, body)
        return shortcut_name

    async def revoke_share(
        self, source_workspace_id: str, source_item_id: str, share_id: str, source_tenant_id: str
    ) -> bool:
        url = self._url(
            f"/workspaces/{source_workspace_id}/items/{source_item_id}/externalDataShares/{share_id}"
        )
        try:
            await self._send("DELETE", url, source_tenant_id)
        except ShortcutServiceError as exc:
            logger.error("share_revoke_failed share_id=%s error=%s", share_id, exc)
            return False
        logger.info("share_revoked share_id=%s", share_id)
        return True
