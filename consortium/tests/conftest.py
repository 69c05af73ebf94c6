from __future__ import annotations

import pytest

from consortium.core.config import get_settings
from consortium.providers.factory import reset_providers
from consortium.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def _reset_process_state(monkeypatch) -> None:
    # Tests never reach live integrations or a real queue.
    monkeypatch.setenv("INTEGRATIONS_MODE", "fake")
    monkeypatch.setenv("JOBS_EXECUTION_MODE", "inline")
    get_settings.cache_clear()
    reset_providers()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_providers()
    reset_telemetry()
