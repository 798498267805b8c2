"""CloudEvents webhook notification channel.

Sends notifications as CloudEvents v1.0 structured-mode HTTP POST requests to
a configurable webhook URL. The notification's message_id is used as the
CloudEvent id so receivers can de-duplicate redeliveries.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from shipgate.models import Notification
from shipgate.plugins.notification_channel import NotificationChannelPlugin

logger = structlog.get_logger(__name__)

CLOUDEVENTS_CONTENT_TYPE = "application/cloudevents+json"
CLOUDEVENTS_TYPE_PREFIX = "dev.shipgate"


class WebhookChannel(NotificationChannelPlugin):
    """CloudEvents v1.0 webhook channel.

    Configuration:
        webhook_url: Target URL for POST requests (required)
        timeout_seconds: HTTP request timeout (default 10)
    """

    def __init__(
        self,
        *,
        webhook_url: str = "",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout_seconds = timeout_seconds
        self._log = logger.bind(component="webhook_channel")

    @property
    def name(self) -> str:
        return "webhook"

    @property
    def version(self) -> str:
        return "1.0.0"

    def validate_config(self) -> list[str]:
        errors: list[str] = []
        if not self._webhook_url:
            errors.append("webhook_url is required")
        elif not self._webhook_url.startswith(("http://", "https://")):
            errors.append(f"webhook_url must be http(s): {self._webhook_url}")
        return errors

    async def send(self, notification: Notification) -> bool:
        """POST the notification as a CloudEvent.

        Returns:
            True on a 2xx/3xx response, False otherwise.
        """
        cloudevent = self._build_cloudevent(notification)

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self._webhook_url,
                    json=cloudevent,
                    headers={"Content-Type": CLOUDEVENTS_CONTENT_TYPE},
                    timeout=self._timeout_seconds,
                )

                if response.status_code >= 400:
                    self._log.warning(
                        "webhook_http_error",
                        status_code=response.status_code,
                        message_id=notification.message_id,
                    )
                    return False

                return True

        except (httpx.ConnectError, httpx.TimeoutException) as e:
            self._log.warning(
                "webhook_connection_error",
                error=str(e),
                message_id=notification.message_id,
            )
            return False
        except Exception as e:
            self._log.error(
                "webhook_unexpected_error",
                error=str(e),
                message_id=notification.message_id,
            )
            return False

    def _build_cloudevent(self, notification: Notification) -> dict[str, Any]:
        return {
            "specversion": "1.0",
            "type": f"{CLOUDEVENTS_TYPE_PREFIX}.{notification.kind.value}",
            "source": "/shipgate",
            "id": notification.message_id,
            "time": notification.timestamp.isoformat(),
            "subject": notification.deployment_id or notification.alarm_name,
            "datacontenttype": "application/json",
            "data": notification.model_dump(mode="json"),
        }


__all__ = ["WebhookChannel", "CLOUDEVENTS_CONTENT_TYPE"]
