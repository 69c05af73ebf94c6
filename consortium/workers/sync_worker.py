from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from consortium.core.config import get_settings
from consortium.core.logging import configure_logging
from consortium.services.jobs import (
    ReconcileJobPayload,
    ScanJobPayload,
    run_expiry_job,
    run_reconcile_job,
    run_scan_job,
)


logger = logging.getLogger(__name__)


async def scan_catalog(ctx, payload: dict) -> dict:
    # Validate in the worker so a malformed enqueue fails loudly here.
    job_payload = ScanJobPayload.model_validate(payload)
    logger.info(
        "scan_job_started job_id=%s attempt=%s institution_id=%s",
        ctx.get("job_id") or job_payload.job_id,
        ctx.get("job_try", 1),
        job_payload.institution_id or "all",
    )
    return await run_scan_job(job_payload)


async def reconcile_requests(ctx, payload: dict) -> dict:
    job_payload = ReconcileJobPayload.model_validate(payload)
    return await run_reconcile_job(job_payload)


async def expire_requests(ctx) -> int:
    expired = await run_expiry_job()
    return len(expired)


async def scheduled_scan(ctx) -> dict:
    # Cron scans run without a user credential; the identity provider uses client credentials.
    return await run_scan_job(ScanJobPayload(requested_by="cron"))


async def scheduled_reconcile(ctx) -> dict:
    return await run_reconcile_job(ReconcileJobPayload(requested_by="cron"))


def _every(step: int, span: int) -> set[int]:
    step = max(1, min(int(step), span))
    return set(range(0, span, step))


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("sync_worker_started queue=%s", get_settings().jobs_queue_name)


async def _shutdown(ctx) -> None:
    logger.info("sync_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.jobs_queue_name
    functions = [scan_catalog, reconcile_requests, expire_requests]
    cron_jobs = [
        cron(scheduled_scan, hour=_every(settings.scan_cron_hours, 24), minute=0, run_at_startup=False),
        cron(scheduled_reconcile, minute=_every(settings.reconcile_cron_minutes, 60)),
        cron(expire_requests, hour=2, minute=30),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
