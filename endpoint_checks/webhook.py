from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from endpoint_checks.models import AlertPayload, alert_payload_to_dict


LOGGER = logging.getLogger("endpoint-monitor")


@dataclass(frozen=True)
class WebhookConfig:
    url: str
    token: str | None = None
    timeout_seconds: float = 15.0


class WebhookAlertDispatcher:
    """
    POSTs the raw alert payload as JSON. Formatting and routing are the receiver's job.
    """

    def __init__(self, client: httpx.AsyncClient, config: WebhookConfig) -> None:
        self.client = client
        self.config = config

    async def deliver(self, payload: AlertPayload) -> None:
        headers = {"Content-Type": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        resp = await self.client.post(
            self.config.url,
            json=alert_payload_to_dict(payload),
            headers=headers,
            timeout=self.config.timeout_seconds,
        )
        resp.raise_for_status()


class LoggingAlertDispatcher:
    async def deliver(self, payload: AlertPayload) -> None:
        LOGGER.warning(
            "Alert type=%s id=%s name=%s status=%s error=%s",
            payload.type,
            payload.check.id,
            payload.check.name,
            payload.check_state.status,
            payload.result.error,
        )
