"""Notification emitters for run completion events."""

from __future__ import annotations

import logging

import httpx

from report_orchestrator.reporting.models import NotificationEvent

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_USER_AGENT = "report-orchestrator/0.1"


class LoggingNotificationEmitter:
    """Write completion events to the application log."""

    def emit(self, event: NotificationEvent) -> None:
        logger.info(
            "Notification %s tenant=%s run=%s status=%s: %s",
            event.type,
            event.tenant_id,
            event.run_id,
            event.status.value,
            event.message,
        )


class WebhookNotificationEmitter:
    """POST completion events as JSON to a configured URL."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers={"User-Agent": DEFAULT_USER_AGENT},
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def emit(self, event: NotificationEvent) -> None:
        """Deliver one event; HTTP errors propagate to the caller."""

        response = self._client.post(self.url, json=event.to_dict())
        response.raise_for_status()
        logger.debug(
            "Webhook notification delivered run=%s status_code=%s",
            event.run_id,
            response.status_code,
        )
