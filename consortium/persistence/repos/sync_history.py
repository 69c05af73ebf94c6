from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consortium.domain.models import SyncHistory
from consortium.persistence.repos.base import commit_or_rollback


class SqlSyncHistoryRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, record: SyncHistory) -> SyncHistory:
        # Commit immediately so a running scan is visible to operators.
        self._session.add(record)
        await commit_or_rollback(self._session)
        return record

    async def save(self, record: SyncHistory) -> SyncHistory:
        self._session.add(record)
        await commit_or_rollback(self._session)
        return record

    async def list_recent(self, *, institution_id: str | None = None, limit: int = 50) -> list[SyncHistory]:
        stmt = select(SyncHistory)
        if institution_id:
            stmt = stmt.where(SyncHistory.institution_id == institution_id)
        result = await self._session.execute(
            stmt.order_by(SyncHistory.started_at.desc(), SyncHistory.id).limit(max(1, limit))
        )
        return list(result.scalars().all())
