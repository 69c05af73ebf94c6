from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from consortium.services import jobs


def test_job_payloads_are_frozen_snapshots() -> None:
    payload = jobs.ScanJobPayload(institution_id="inst-north", user_credential="user-token", requested_by="admin")

    with pytest.raises(ValidationError):
        payload.user_credential = "other"

    dumped = payload.model_dump(mode="json")
    assert jobs.ScanJobPayload.model_validate(dumped) == payload
    assert jobs.ScanJobPayload().job_id != jobs.ScanJobPayload().job_id


@pytest.mark.asyncio
async def test_inline_dispatch_returns_before_job_finishes(monkeypatch) -> None:
    started = asyncio.Event()
    release = asyncio.Event()
    seen: list[jobs.ScanJobPayload] = []

    async def _fake_run(payload: jobs.ScanJobPayload) -> dict:
        seen.append(payload)
        started.set()
        await release.wait()
        return {"scanned": 1}

    monkeypatch.setattr(jobs, "run_scan_job", _fake_run)
    payload = jobs.ScanJobPayload(institution_id="inst-north", user_credential="user-token")

    job_id = await jobs.dispatch_scan(payload)

    assert job_id == payload.job_id
    await asyncio.wait_for(started.wait(), timeout=1)
    assert seen == [payload]
    release.set()
    for _ in range(5):
        await asyncio.sleep(0)
    assert await jobs.cancel_background_jobs() == 0


@pytest.mark.asyncio
async def test_cancel_background_jobs_stops_running_work(monkeypatch) -> None:
    cancelled = asyncio.Event()

    async def _fake_run(payload: jobs.ReconcileJobPayload) -> dict:
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return {}

    monkeypatch.setattr(jobs, "run_reconcile_job", _fake_run)
    await jobs.dispatch_reconcile(jobs.ReconcileJobPayload(user_id="user-1"))
    await asyncio.sleep(0)

    assert await jobs.cancel_background_jobs() == 1
    assert cancelled.is_set()
