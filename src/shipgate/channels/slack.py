"""Slack notification channel.

Sends notifications to Slack using Block Kit formatting via incoming webhooks.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from shipgate.models import Notification, NotificationSeverity
from shipgate.plugins.notification_channel import NotificationChannelPlugin

logger = structlog.get_logger(__name__)

SEVERITY_EMOJI: dict[NotificationSeverity, str] = {
    NotificationSeverity.INFO: ":information_source:",
    NotificationSeverity.WARNING: ":warning:",
    NotificationSeverity.CRITICAL: ":rotating_light:",
}


class SlackChannel(NotificationChannelPlugin):
    """Slack incoming webhook channel using Block Kit."""

    def __init__(
        self,
        *,
        webhook_url: str = "",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout_seconds = timeout_seconds
        self._log = logger.bind(component="slack_channel")

    @property
    def name(self) -> str:
        return "slack"

    @property
    def version(self) -> str:
        return "1.0.0"

    def validate_config(self) -> list[str]:
        errors: list[str] = []
        if not self._webhook_url:
            errors.append("webhook_url is required")
        return errors

    async def send(self, notification: Notification) -> bool:
        payload = self._build_payload(notification)
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self._webhook_url,
                    json=payload,
                    timeout=self._timeout_seconds,
                )
                if response.status_code >= 400:
                    self._log.warning(
                        "slack_http_error",
                        status_code=response.status_code,
                        message_id=notification.message_id,
                    )
                    return False
                return True
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            self._log.warning("slack_connection_error", error=str(e))
            return False
        except Exception as e:
            self._log.error("slack_unexpected_error", error=str(e))
            return False

    def _build_payload(self, notification: Notification) -> dict[str, Any]:
        emoji = SEVERITY_EMOJI.get(notification.severity, ":grey_question:")
        header_text = f"{emoji} {notification.subject}"

        fields: list[dict[str, Any]] = [
            {"type": "mrkdwn", "text": f"*Kind:*\n{notification.kind.value}"},
            {"type": "mrkdwn", "text": f"*Severity:*\n{notification.severity.value}"},
        ]
        if notification.deployment_id:
            fields.append({"type": "mrkdwn", "text": f"*Deployment:*\n{notification.deployment_id}"})
        if notification.alarm_name:
            fields.append({"type": "mrkdwn", "text": f"*Alarm:*\n{notification.alarm_name}"})

        blocks: list[dict[str, Any]] = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": header_text},
            },
            {"type": "section", "fields": fields},
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": notification.message},
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": f"Sent at: {notification.timestamp.isoformat()}",
                    },
                ],
            },
        ]

        return {"text": notification.subject, "blocks": blocks}


__all__ = ["SlackChannel", "SEVERITY_EMOJI"]
