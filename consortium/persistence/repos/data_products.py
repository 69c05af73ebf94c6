from __future__ import annotations

from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consortium.domain.models import DataProduct
from consortium.persistence.repos.base import commit_or_rollback


class SqlDataProductRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, product_id: str) -> DataProduct | None:
        return await self._session.get(DataProduct, product_id)

    async def get_by_qualified_name(self, institution_id: str, qualified_name: str) -> DataProduct | None:
        result = await self._session.execute(
            select(DataProduct).where(
                DataProduct.institution_id == institution_id,
                DataProduct.qualified_name == qualified_name,
            )
        )
        return result.scalar_one_or_none()

    async def list_by_institution(self, institution_id: str) -> list[DataProduct]:
        result = await self._session.execute(
            select(DataProduct)
            .where(DataProduct.institution_id == institution_id)
            .order_by(DataProduct.name, DataProduct.id)
        )
        return list(result.scalars().all())

    async def add(self, product: DataProduct) -> DataProduct:
        self._session.add(product)
        await commit_or_rollback(self._session)
        return product

    async def save(self, product: DataProduct) -> DataProduct:
        self._session.add(product)
        await commit_or_rollback(self._session)
        return product

    async def delist_except(self, institution_id: str, qualified_names: Iterable[str]) -> int:
        # Delist instead of delete; access requests keep referencing the row.
        keep = sorted(set(qualified_names))
        stmt = update(DataProduct).where(
            DataProduct.institution_id == institution_id,
            DataProduct.is_listed.is_(True),
        )
        if keep:
            stmt = stmt.where(DataProduct.qualified_name.not_in(keep))
        try:
            result = await self._session.execute(stmt.values(is_listed=False))
        except SQLAlchemyError:
            await self._session.rollback()
            raise
        await commit_or_rollback(self._session)
        return int(result.rowcount or 0)
