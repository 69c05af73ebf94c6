from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consortium.domain.models import AccessRequest, DataProduct, Institution, SyncHistory


class AccessRequestRepository(Protocol):
    async def get(self, request_id: str) -> AccessRequest | None:
        ...

    async def list_by_user(self, user_id: str) -> list[AccessRequest]:
        ...

    async def list_all(self) -> list[AccessRequest]:
        ...

    async def get_blocking(self, user_id: str, data_product_id: str) -> AccessRequest | None:
        ...

    async def list_needing_workflow_sync(self, user_id: str | None = None) -> list[AccessRequest]:
        ...

    async def list_expired(self, now: datetime) -> list[AccessRequest]:
        ...

    async def count_by_status(self, user_id: str | None = None) -> dict[str, int]:
        ...

    async def add(self, request: AccessRequest) -> AccessRequest:
        ...

    async def save(self, request: AccessRequest) -> AccessRequest:
        ...


class DataProductRepository(Protocol):
    async def get(self, product_id: str) -> DataProduct | None:
        ...

    async def get_by_qualified_name(self, institution_id: str, qualified_name: str) -> DataProduct | None:
        ...

    async def list_by_institution(self, institution_id: str) -> list[DataProduct]:
        ...

    async def add(self, product: DataProduct) -> DataProduct:
        ...

    async def save(self, product: DataProduct) -> DataProduct:
        ...

    async def delist_except(self, institution_id: str, qualified_names: Iterable[str]) -> int:
        ...


class InstitutionRepository(Protocol):
    async def get(self, institution_id: str) -> Institution | None:
        ...

    async def get_by_tenant(self, tenant_id: str) -> Institution | None:
        ...

    async def list_all(self, *, active_only: bool = False) -> list[Institution]:
        ...


class SyncHistoryRepository(Protocol):
    async def add(self, record: SyncHistory) -> SyncHistory:
        ...

    async def save(self, record: SyncHistory) -> SyncHistory:
        ...

    async def list_recent(self, *, institution_id: str | None = None, limit: int = 50) -> list[SyncHistory]:
        ...


async def commit_or_rollback(session: AsyncSession) -> None:
    # A failed flush leaves the session unusable until it is rolled back.
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        raise
