from __future__ import annotations

import json

import httpx
import pytest

from consortium.core.errors import NotificationError
from consortium.services.audit import sanitize_metadata
from consortium.services.notifications import LoggingNotificationService
from consortium.services.telemetry import external_stats_by_integration


def test_sanitize_metadata_redacts_nested_sensitive_keys() -> None:
    details = {
        "job_id": "job-1",
        "user_credential": "eyJ...",
        "headers": {"Authorization": "Bearer abc", "X-Request-Id": "req-1"},
        "attempts": [{"access_token": "t"}, {"comment": "ok"}],
    }

    sanitized = sanitize_metadata(details)

    assert sanitized["job_id"] == "job-1"
    assert sanitized["user_credential"] == "[REDACTED]"
    assert sanitized["headers"] == {"Authorization": "[REDACTED]", "X-Request-Id": "req-1"}
    assert sanitized["attempts"] == [{"access_token": "[REDACTED]"}, {"comment": "ok"}]
    # The input is left untouched.
    assert details["user_credential"] == "eyJ..."


@pytest.mark.asyncio
async def test_notifications_without_webhook_only_log(caplog) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no webhook configured")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = LoggingNotificationService(client=client, webhook_url="")

    with caplog.at_level("INFO", logger="consortium.services.notifications"):
        await service.send_status_change_notification("user-1@south.example", "Enrollment", "Approved")

    assert "notification_status_change" in caplog.text
    assert "status=Approved" in caplog.text


@pytest.mark.asyncio
async def test_notifications_are_mirrored_to_webhook() -> None:
    posted: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(json.loads(request.content))
        return httpx.Response(202)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = LoggingNotificationService(client=client, webhook_url="https://hooks.example/consortium")

    await service.send_access_request_notification(
        "owner@north.example", "Enrollment", "Robin Reyes", "Cohort study"
    )

    assert posted == [
        {
            "type": "access_request",
            "recipient": "owner@north.example",
            "data_product": "Enrollment",
            "requesting_user": "Robin Reyes",
            "justification": "Cohort study",
        }
    ]
    assert external_stats_by_integration(300)["notifications.webhook"]["failures"] == 0


@pytest.mark.asyncio
async def test_webhook_failure_raises_notification_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = LoggingNotificationService(client=client, webhook_url="https://hooks.example/consortium")

    with pytest.raises(NotificationError):
        await service.send_status_change_notification("user-1@south.example", "Enrollment", "Denied", "Out of scope")

    assert external_stats_by_integration(300)["notifications.webhook"]["failures"] == 1
