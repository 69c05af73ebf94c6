from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from consortium.domain.models import AuditEvent


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "credential", "assertion"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


class AuditLog(Protocol):
    async def log(
        self,
        action: str,
        *,
        user_id: str | None,
        user_email: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> None:
        ...


class SqlAuditLog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        # Audit rows use their own session so a failed write never rolls back the caller's work.
        self._session_factory = session_factory

    async def log(
        self,
        action: str,
        *,
        user_id: str | None,
        user_email: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> None:
        # Write audit rows in a best-effort manner to avoid breaking user flows.
        event = AuditEvent(
            id=uuid4().hex,
            occurred_at=datetime.now(timezone.utc),
            user_id=user_id,
            user_email=user_email,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details_json=sanitize_metadata(details or {}),
            ip_address=ip_address,
        )
        async with self._session_factory() as session:
            try:
                session.add(event)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning(
                    "audit_event_write_failed action=%s entity_id=%s", action, entity_id, exc_info=exc
                )
