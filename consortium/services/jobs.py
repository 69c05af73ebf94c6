from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, ConfigDict, Field

from consortium.core.config import get_settings
from consortium.services.composition import service_scope


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Strong references keep detached inline tasks alive until they finish.
_background_tasks: set[asyncio.Task] = set()


def _new_job_id() -> str:
    return uuid4().hex


class ScanJobPayload(BaseModel):
    # Immutable snapshot handed from the request scope to the detached job.
    model_config = ConfigDict(frozen=True)

    job_id: str = Field(default_factory=_new_job_id)
    institution_id: str | None = None
    user_credential: str | None = None
    requested_by: str | None = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ReconcileJobPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str = Field(default_factory=_new_job_id)
    user_id: str | None = None
    user_credential: str | None = None
    requested_by: str | None = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def _inline_mode() -> bool:
    return get_settings().jobs_execution_mode.lower() == "inline"


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.jobs_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def run_scan_job(payload: ScanJobPayload) -> dict:
    # Shared by inline tasks and the arq worker so both behave identically.
    async with service_scope() as services:
        if payload.institution_id:
            counts = await services.catalog_sync.scan_institution(
                payload.institution_id, payload.user_credential
            )
            result = {"institution_id": payload.institution_id, "scanned": counts is not None}
        else:
            summary = await services.catalog_sync.scan_all(payload.user_credential)
            result = {
                "scanned": len(summary.scanned),
                "skipped": len(summary.skipped),
                "failed": len(summary.failed),
            }
    logger.info("scan_job_completed job_id=%s result=%s", payload.job_id, result)
    return result


async def run_reconcile_job(payload: ReconcileJobPayload) -> dict:
    async with service_scope() as services:
        if payload.user_id:
            report = await services.reconciler.reconcile_for_user(payload.user_id, payload.user_credential)
        else:
            report = await services.reconciler.reconcile_all(payload.user_credential)
    result = {"examined": report.examined, "changed": report.changed, "failed": report.failed}
    logger.info("reconcile_job_completed job_id=%s result=%s", payload.job_id, result)
    return result


async def run_expiry_job() -> list[str]:
    async with service_scope() as services:
        return await services.access_requests.expire_due_requests()


def _spawn(name: str, job_id: str, coro) -> None:
    task = asyncio.create_task(coro, name=f"{name}:{job_id}")
    _background_tasks.add(task)

    def _done(finished: asyncio.Task) -> None:
        _background_tasks.discard(finished)
        if finished.cancelled():
            logger.warning("background_job_cancelled job=%s job_id=%s", name, job_id)
            return
        exc = finished.exception()
        if exc is not None:
            logger.error("background_job_failed job=%s job_id=%s", name, job_id, exc_info=exc)

    task.add_done_callback(_done)


async def dispatch_scan(payload: ScanJobPayload) -> str:
    # Return immediately; the scan reports completion through logs and sync history.
    if _inline_mode():
        _spawn("scan", payload.job_id, run_scan_job(payload))
        return payload.job_id
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "scan_catalog",
        payload.model_dump(mode="json"),
        _job_id=payload.job_id,
        _queue_name=get_settings().jobs_queue_name,
    )
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else payload.job_id


async def dispatch_reconcile(payload: ReconcileJobPayload) -> str:
    if _inline_mode():
        _spawn("reconcile", payload.job_id, run_reconcile_job(payload))
        return payload.job_id
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "reconcile_requests",
        payload.model_dump(mode="json"),
        _job_id=payload.job_id,
        _queue_name=get_settings().jobs_queue_name,
    )
    return job.job_id if job else payload.job_id


async def cancel_background_jobs() -> int:
    # Propagate shutdown into running inline jobs so they stop issuing external calls.
    tasks = list(_background_tasks)
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    return len(tasks)
