from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from consortium.core.errors import ConflictError
from consortium.domain.models import AccessRequest
from consortium.domain.state import BLOCKING_STATUSES, RequestStatus
from consortium.persistence.repos.base import commit_or_rollback
from consortium.providers.workflow.base import TERMINAL_RUN_STATUSES


_BLOCKING_VALUES = [status.value for status in BLOCKING_STATUSES]


class SqlAccessRequestRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, request_id: str) -> AccessRequest | None:
        return await self._session.get(AccessRequest, request_id)

    async def list_by_user(self, user_id: str) -> list[AccessRequest]:
        # Newest first so dashboards show recent activity at the top.
        result = await self._session.execute(
            select(AccessRequest)
            .where(AccessRequest.requesting_user_id == user_id)
            .order_by(AccessRequest.created_at.desc(), AccessRequest.id)
        )
        return list(result.scalars().all())

    async def list_all(self) -> list[AccessRequest]:
        result = await self._session.execute(
            select(AccessRequest).order_by(AccessRequest.created_at.desc(), AccessRequest.id)
        )
        return list(result.scalars().all())

    async def get_blocking(self, user_id: str, data_product_id: str) -> AccessRequest | None:
        result = await self._session.execute(
            select(AccessRequest)
            .where(
                AccessRequest.requesting_user_id == user_id,
                AccessRequest.data_product_id == data_product_id,
                AccessRequest.status.in_(_BLOCKING_VALUES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_needing_workflow_sync(self, user_id: str | None = None) -> list[AccessRequest]:
        # Runs with a terminal workflow status have nothing left to report.
        stmt = select(AccessRequest).where(
            AccessRequest.workflow_run_id.is_not(None),
            AccessRequest.workflow_run_id != "",
            or_(
                AccessRequest.workflow_status.is_(None),
                func.lower(AccessRequest.workflow_status).not_in(sorted(TERMINAL_RUN_STATUSES)),
            ),
        )
        if user_id:
            stmt = stmt.where(AccessRequest.requesting_user_id == user_id)
        result = await self._session.execute(stmt.order_by(AccessRequest.created_at, AccessRequest.id))
        return list(result.scalars().all())

    async def list_expired(self, now: datetime) -> list[AccessRequest]:
        result = await self._session.execute(
            select(AccessRequest).where(
                AccessRequest.status == RequestStatus.ACTIVE.value,
                AccessRequest.expires_at.is_not(None),
                AccessRequest.expires_at <= now,
            )
        )
        return list(result.scalars().all())

    async def count_by_status(self, user_id: str | None = None) -> dict[str, int]:
        stmt = select(AccessRequest.status, func.count()).group_by(AccessRequest.status)
        if user_id:
            stmt = stmt.where(AccessRequest.requesting_user_id == user_id)
        result = await self._session.execute(stmt)
        return {status: int(count) for status, count in result.all()}

    async def add(self, request: AccessRequest) -> AccessRequest:
        # The partial unique index rejects a second in-flight request for the same product.
        self._session.add(request)
        try:
            await commit_or_rollback(self._session)
        except IntegrityError as exc:
            raise ConflictError(
                "An active access request already exists for this data product."
            ) from exc
        return request

    async def save(self, request: AccessRequest) -> AccessRequest:
        self._session.add(request)
        await commit_or_rollback(self._session)
        return request
