from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import httpx

from consortium.core.config import get_settings
from consortium.core.errors import NotificationError
from consortium.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class NotificationService(Protocol):
    async def send_access_request_notification(
        self, recipient_email: str, product_name: str, requesting_user: str, justification: str
    ) -> None:
        ...

    async def send_status_change_notification(
        self, recipient_email: str, product_name: str, new_status: str, comment: str | None = None
    ) -> None:
        ...


class LoggingNotificationService:
    """Notifications as structured log lines, optionally mirrored to a webhook.

    Webhook delivery failures raise :class:`NotificationError`; callers treat
    notifications as best-effort and decide whether to log or surface them.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, webhook_url: str | None = None) -> None:
        settings = get_settings()
        self._client = client
        self._webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self._timeout_s = settings.notification_timeout_ms / 1000.0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def _deliver(self, payload: dict[str, Any]) -> None:
        if not self._webhook_url:
            return
        start = time.monotonic()
        try:
            response = await self._get_client().post(self._webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            record_external_call(
                integration="notifications.webhook",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise NotificationError(f"Notification webhook delivery failed: {exc}") from exc
        record_external_call(
            integration="notifications.webhook",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )

    async def send_access_request_notification(
        self, recipient_email: str, product_name: str, requesting_user: str, justification: str
    ) -> None:
        logger.info(
            "notification_access_request product=%s requester=%s recipient=%s",
            product_name,
            requesting_user,
            recipient_email,
        )
        await self._deliver(
            {
                "type": "access_request",
                "recipient": recipient_email,
                "data_product": product_name,
                "requesting_user": requesting_user,
                "justification": justification,
            }
        )

    async def send_status_change_notification(
        self, recipient_email: str, product_name: str, new_status: str, comment: str | None = None
    ) -> None:
        logger.info(
            "notification_status_change product=%s status=%s recipient=%s comment=%s",
            product_name,
            new_status,
            recipient_email,
            comment or "(none)",
        )
        await self._deliver(
            {
                "type": "status_change",
                "recipient": recipient_email,
                "data_product": product_name,
                "status": new_status,
                "comment": comment,
            }
        )
