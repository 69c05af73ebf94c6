from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest

from consortium.core.config import get_settings
from consortium.core.errors import TokenAcquisitionError
from consortium.providers.identity import ClientCredentialTokenProvider


SCOPE = "https://purview.azure.net/.default"


@pytest.fixture
def credentials(monkeypatch) -> None:
    monkeypatch.setenv("IDENTITY_CLIENT_ID", "hub-app")
    monkeypatch.setenv("IDENTITY_CLIENT_SECRET", "hub-secret")
    monkeypatch.setenv("EXT_RETRY_BACKOFF_MS", "1")
    get_settings.cache_clear()


def _form(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


def _provider(handler, now: list[float] | None = None) -> ClientCredentialTokenProvider:
    clock = now if now is not None else [0.0]
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ClientCredentialTokenProvider(client=client, time_source=lambda: clock[0])


@pytest.mark.asyncio
async def test_on_behalf_of_exchange_uses_user_assertion(credentials) -> None:
    forms: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/tenant-north/oauth2/v2.0/token"
        forms.append(_form(request))
        return httpx.Response(200, json={"access_token": "obo-token", "expires_in": 3600})

    token = await _provider(handler).get_token("tenant-north", SCOPE, "user-jwt")

    assert token == "obo-token"
    assert forms[0]["grant_type"] == "urn:ietf:params:oauth:grant-type:jwt-bearer"
    assert forms[0]["assertion"] == "user-jwt"
    assert forms[0]["requested_token_use"] == "on_behalf_of"


@pytest.mark.asyncio
async def test_refused_exchange_falls_back_to_client_credentials(credentials) -> None:
    grants: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        form = _form(request)
        grants.append(form["grant_type"])
        if form["grant_type"] != "client_credentials":
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(200, json={"access_token": "app-token", "expires_in": 3600})

    token = await _provider(handler).get_token("tenant-north", SCOPE, "user-jwt")

    assert token == "app-token"
    assert grants == ["urn:ietf:params:oauth:grant-type:jwt-bearer", "client_credentials"]


@pytest.mark.asyncio
async def test_client_credential_tokens_are_cached_until_near_expiry(credentials) -> None:
    issued: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        issued.append(f"token-{len(issued) + 1}")
        return httpx.Response(200, json={"access_token": issued[-1], "expires_in": 600})

    now = [0.0]
    provider = _provider(handler, now)

    assert await provider.get_token("tenant-north", SCOPE) == "token-1"
    now[0] = 500.0
    assert await provider.get_token("tenant-north", SCOPE) == "token-1"
    # Cached entries are dropped one minute ahead of the real expiry.
    now[0] = 541.0
    assert await provider.get_token("tenant-north", SCOPE) == "token-2"
    assert await provider.get_token("tenant-south", SCOPE) == "token-3"


@pytest.mark.asyncio
async def test_missing_app_credentials_raise(monkeypatch) -> None:
    monkeypatch.delenv("IDENTITY_CLIENT_ID", raising=False)
    monkeypatch.delenv("IDENTITY_CLIENT_SECRET", raising=False)
    get_settings.cache_clear()

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no token request expected")

    with pytest.raises(TokenAcquisitionError):
        await _provider(handler).get_token("tenant-north", SCOPE)


@pytest.mark.asyncio
async def test_token_response_without_access_token_raises(credentials) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"token_type": "Bearer"})

    with pytest.raises(TokenAcquisitionError) as excinfo:
        await _provider(handler).get_token("tenant-north", SCOPE)

    assert "access_token" in str(excinfo.value)
