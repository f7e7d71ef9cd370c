"""
Run notifications for backup, restore and verification runs.

Each configured channel (email, Slack, Discord, generic webhook) gets a
summary of the run. A channel that fails is logged and skipped; a broken
notification endpoint never changes the outcome of the run it reports on.
"""

import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

from django.core.mail import send_mail

import requests

from .artifacts import Outcome
from .exceptions import NotificationError

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 10
OK_STATUS_CODES = (200, 201, 202, 204)

SLACK_COLORS = {
    Outcome.SUCCESS: "#36a64f",
    Outcome.FAILURE: "#dc3545",
    Outcome.WARNING: "#ffc107",
}

DISCORD_COLORS = {
    Outcome.SUCCESS: 5814783,
    Outcome.FAILURE: 16007990,
    Outcome.WARNING: 16776960,
}


@dataclass
class RunSummary:
    """What happened in one run, in a form every channel can render."""

    operation: str
    outcome: Outcome
    database: str
    message: str
    artifact: Optional[str] = None
    step: Optional[str] = None
    environment: str = "production"
    details: Dict[str, object] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def title(self) -> str:
        return f"[{self.outcome.value.upper()}] Database {self.operation}: {self.database}"

    def fields(self) -> Dict[str, str]:
        fields = {
            "Database": self.database,
            "Type": self.operation,
            "Timestamp": self.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            "Environment": self.environment,
            "Host": socket.gethostname(),
        }
        if self.artifact:
            fields["Artifact"] = self.artifact
        if self.step:
            fields["Failed step"] = self.step
        for key, value in self.details.items():
            fields[str(key)] = str(value)
        return fields

    def to_payload(self) -> dict:
        return {
            "operation": self.operation,
            "outcome": self.outcome.value,
            "database": self.database,
            "artifact": self.artifact,
            "step": self.step,
            "message": self.message,
            "environment": self.environment,
            "details": {str(k): str(v) for k, v in self.details.items()},
            "timestamp": self.timestamp.isoformat(),
        }


def _post_json(url: str, payload: dict, channel: str) -> bool:
    """
    Raises:
        NotificationError: If the endpoint could not be reached
    """
    try:
        response = requests.post(
            url,
            json=payload,
            timeout=WEBHOOK_TIMEOUT,
            headers={"Content-Type": "application/json"},
        )
    except requests.RequestException as e:
        raise NotificationError(f"{channel} endpoint unreachable: {e}") from e
    if response.status_code in OK_STATUS_CODES:
        logger.info(f"{channel} notification sent")
        return True

    logger.warning(f"{channel} notification failed: status={response.status_code}")
    return False


def send_email_notification(summary: RunSummary, config) -> bool:
    body_lines = [summary.message, ""]
    body_lines.extend(f"{key}: {value}" for key, value in summary.fields().items())

    try:
        sent = send_mail(
            subject=summary.title,
            message="\n".join(body_lines),
            from_email=config.alert_email_from,
            recipient_list=[addr.strip() for addr in config.alert_email.split(",") if addr.strip()],
            fail_silently=False,
        )
    except OSError as e:
        # smtplib errors are OSError subclasses
        raise NotificationError(f"Email to {config.alert_email} failed: {e}") from e
    if sent:
        logger.info(f"Email notification sent to {config.alert_email}")
    return bool(sent)


def send_slack_notification(summary: RunSummary, config) -> bool:
    payload = {
        "attachments": [
            {
                "color": SLACK_COLORS[summary.outcome],
                "title": summary.title,
                "text": summary.message,
                "fields": [{"title": k, "value": v, "short": True} for k, v in summary.fields().items()],
                "footer": "dbvault",
                "ts": int(summary.timestamp.timestamp()),
            }
        ]
    }
    return _post_json(config.slack_webhook_url, payload, "Slack")


def send_discord_notification(summary: RunSummary, config) -> bool:
    payload = {
        "embeds": [
            {
                "title": summary.title,
                "description": summary.message,
                "color": DISCORD_COLORS[summary.outcome],
                "fields": [{"name": k, "value": v, "inline": True} for k, v in summary.fields().items()],
                "timestamp": summary.timestamp.isoformat(),
                "footer": {"text": "dbvault"},
            }
        ]
    }
    return _post_json(config.discord_webhook_url, payload, "Discord")


def send_webhook_notification(summary: RunSummary, config) -> bool:
    return _post_json(config.alert_webhook_url, summary.to_payload(), "Webhook")


CHANNELS: Dict[str, Callable[[RunSummary, object], bool]] = {
    "email": send_email_notification,
    "slack": send_slack_notification,
    "discord": send_discord_notification,
    "webhook": send_webhook_notification,
}


def dispatch(summary: RunSummary, config) -> Dict[str, bool]:
    """
    Send a run summary to every configured channel.

    Args:
        summary: Run summary
        config: Effective configuration, which names the channels

    Returns:
        Dictionary mapping each configured channel to whether it succeeded
    """
    results = {}
    for channel in config.notification_channels:
        try:
            results[channel] = CHANNELS[channel](summary, config)
        except NotificationError as e:
            logger.error(f"Failed to send {channel} notification for {summary.operation}: {e}")
            results[channel] = False
        except Exception as e:
            logger.error(f"Unexpected error in {channel} notification for {summary.operation}: {e}", exc_info=True)
            results[channel] = False

    if not results:
        logger.debug("No notification channels configured")
    return results
