from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consortium.domain.models import Institution


class SqlInstitutionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, institution_id: str) -> Institution | None:
        return await self._session.get(Institution, institution_id)

    async def get_by_tenant(self, tenant_id: str) -> Institution | None:
        result = await self._session.execute(select(Institution).where(Institution.tenant_id == tenant_id))
        return result.scalar_one_or_none()

    async def list_all(self, *, active_only: bool = False) -> list[Institution]:
        stmt = select(Institution)
        if active_only:
            stmt = stmt.where(Institution.is_active.is_(True))
        result = await self._session.execute(stmt.order_by(Institution.name, Institution.id))
        return list(result.scalars().all())
