"""Notification channel adapters for fired alerts."""

import logging

import httpx

from loglens.core.models import AlertEvent, Level

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    Level.INFO: logging.INFO,
    Level.WARNING: logging.WARNING,
    Level.ERROR: logging.ERROR,
    Level.CRITICAL: logging.CRITICAL,
}


class InMemoryChannel:
    """Collects alerts in a list. Useful for testing and embedding."""

    def __init__(self) -> None:
        self.alerts: list[AlertEvent] = []

    async def send(self, alert: AlertEvent) -> None:
        self.alerts.append(alert)

    def clear(self) -> None:
        self.alerts.clear()


class LoggingChannel:
    """Writes alerts to a logger at the alert's severity."""

    def __init__(self, logger_name: str = "loglens.alerts") -> None:
        self._logger = logging.getLogger(logger_name)

    async def send(self, alert: AlertEvent) -> None:
        self._logger.log(
            _LOG_LEVELS[alert.severity],
            "[%s] %s: %s",
            alert.rule_id,
            alert.entity,
            alert.message,
            extra={"rule_id": alert.rule_id, "entity": alert.entity},
        )


class WebhookChannel:
    """POSTs each alert as JSON to a URL.

    Args:
        url: Webhook endpoint.
        client: Optional shared httpx.AsyncClient. One is created per send
            when omitted.
        timeout: Request timeout in seconds.
        headers: Extra request headers.

    Raises (from send):
        httpx.HTTPStatusError: If the endpoint answers with an error status.
    """

    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._url = url
        self._client = client
        self._timeout = timeout
        self._headers = headers or {}

    async def send(self, alert: AlertEvent) -> None:
        payload = alert.to_dict()
        if self._client is not None:
            response = await self._client.post(
                self._url, json=payload, headers=self._headers, timeout=self._timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=payload, headers=self._headers)
        response.raise_for_status()
        logger.debug("Delivered alert %s to %s", alert.rule_id, self._url)
