from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from consortium.core.config import get_settings
from consortium.persistence.db import get_session
from consortium.services.access_requests import Caller
from consortium.services.composition import Services, build_services


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_services(db: AsyncSession = Depends(get_db)) -> Services:
    return build_services(db)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    # The token is opaque here; it is only forwarded to external services.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _caller_from_gateway_headers(request: Request) -> Caller:
    # The upstream gateway authenticates the user and forwards identity headers.
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise _auth_error("X-User-Id header is required")
    return Caller(
        user_id=user_id,
        email=request.headers.get("X-User-Email"),
        name=request.headers.get("X-User-Name"),
        tenant_id=request.headers.get("X-Tenant-Id"),
        role=(request.headers.get("X-Role") or "user").strip().lower(),
        credential=_parse_bearer_token(request.headers.get("Authorization")),
        ip_address=request.client.host if request.client else None,
    )


async def get_current_caller(request: Request) -> Caller:
    if not get_settings().auth_dev_headers_enabled:
        raise _auth_error("Gateway identity headers are disabled")
    caller = _caller_from_gateway_headers(request)
    request.state.user_id = caller.user_id
    return caller


async def require_admin(caller: Caller = Depends(get_current_caller)) -> Caller:
    if not caller.is_admin:
        raise _forbidden_error("Insufficient role for this operation")
    return caller
