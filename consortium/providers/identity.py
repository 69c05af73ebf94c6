from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import httpx

from consortium.core.config import get_settings
from consortium.core.errors import TokenAcquisitionError
from consortium.services.resilience import retry_async
from consortium.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
# Refresh cached tokens a little before they actually expire.
_EXPIRY_SKEW_S = 60.0


class TokenProvider(Protocol):
    async def get_token(self, tenant_id: str, scope: str, user_assertion: str | None = None) -> str:
        ...


@dataclass(frozen=True)
class _CachedToken:
    value: str
    expires_at: float


class ClientCredentialTokenProvider:
    """Tokens for calls into an institution's tenant.

    With a user assertion the provider first tries the on-behalf-of exchange
    so calls run with the signed-in user's rights, and falls back to the
    app's own client credentials when that exchange is refused. Client
    credential tokens are cached per tenant and scope.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._settings = get_settings()
        self._client = client
        self._time = time_source or time.monotonic
        self._cache: dict[tuple[str, str], _CachedToken] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    def _token_url(self, tenant_id: str) -> str:
        authority = self._settings.identity_authority_host.rstrip("/")
        return f"{authority}/{tenant_id}/oauth2/v2.0/token"

    async def _request_token(self, tenant_id: str, form: dict[str, str]) -> tuple[str, float]:
        client = self._get_client()
        start = time.monotonic()

        async def _call() -> httpx.Response:
            return await client.post(self._token_url(tenant_id), data=form)

        try:
            response = await retry_async(_call)
        except (httpx.HTTPError, TimeoutError) as exc:
            record_external_call(
                integration="identity", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise TokenAcquisitionError(f"Token endpoint unreachable for tenant {tenant_id}.") from exc

        success = response.status_code < 400
        record_external_call(
            integration="identity", latency_ms=(time.monotonic() - start) * 1000.0, success=success
        )
        if not success:
            raise TokenAcquisitionError(
                f"Token request for tenant {tenant_id} failed with status {response.status_code}."
            )
        payload = response.json()
        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            raise TokenAcquisitionError(f"Token response for tenant {tenant_id} had no access_token.")
        expires_in = payload.get("expires_in") or 3600
        return token, float(expires_in)

    def _credentials(self) -> tuple[str, str]:
        client_id = self._settings.identity_client_id
        client_secret = self._settings.identity_client_secret
        if not client_id or not client_secret:
            raise TokenAcquisitionError("IDENTITY_CLIENT_ID and IDENTITY_CLIENT_SECRET are required.")
        return client_id, client_secret

    async def _on_behalf_of(self, tenant_id: str, scope: str, user_assertion: str) -> str:
        client_id, client_secret = self._credentials()
        token, _ = await self._request_token(
            tenant_id,
            {
                "grant_type": _JWT_BEARER_GRANT,
                "client_id": client_id,
                "client_secret": client_secret,
                "assertion": user_assertion,
                "scope": scope,
                "requested_token_use": "on_behalf_of",
            },
        )
        return token

    async def _client_credentials(self, tenant_id: str, scope: str) -> str:
        key = (tenant_id, scope)
        cached = self._cache.get(key)
        now = self._time()
        if cached is not None and cached.expires_at > now:
            return cached.value
        client_id, client_secret = self._credentials()
        token, expires_in = await self._request_token(
            tenant_id,
            {
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret,
                "scope": scope,
            },
        )
        self._cache[key] = _CachedToken(token, now + max(expires_in - _EXPIRY_SKEW_S, 0.0))
        return token

    async def get_token(self, tenant_id: str, scope: str, user_assertion: str | None = None) -> str:
        if user_assertion:
            try:
                return await self._on_behalf_of(tenant_id, scope, user_assertion)
            except TokenAcquisitionError as exc:
                logger.warning(
                    "obo_token_failed tenant_id=%s error=%s falling_back=client_credentials",
                    tenant_id,
                    exc,
                )
        try:
            return await self._client_credentials(tenant_id, scope)
        except TokenAcquisitionError:
            logger.error(
                "client_credentials_token_failed tenant_id=%s hint=admin_consent_required",
                tenant_id,
            )
            raise


class StaticTokenProvider:
    # Fixed token for local development and tests.
    def __init__(self, token: str = "fake-token") -> None:
        self._token = token
        self.calls: list[tuple[str, str, str | None]] = []

    async def get_token(self, tenant_id: str, scope: str, user_assertion: str | None = None) -> str:
        self.calls.append((tenant_id, scope, user_assertion))
        return self._token
