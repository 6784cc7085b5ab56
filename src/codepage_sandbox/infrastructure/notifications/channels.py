"""Pluggable alert notification channels."""

import json
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Dict, Iterable, Optional

import requests
from loguru import logger

from codepage_sandbox.domains.monitoring.models import Alert


class NotificationChannel(ABC):
    name: str = "channel"

    @abstractmethod
    def send(self, alert: Alert) -> None:
        """Delivers the alert. Raises on delivery failure."""


class ConsoleChannel(NotificationChannel):
    name = "console"

    def send(self, alert: Alert) -> None:
        logger.warning(f"ALERT [{alert.severity.value.upper()}]: {alert.message}")


class LogChannel(NotificationChannel):
    """Structured alert record on the application log."""
    name = "log"

    def send(self, alert: Alert) -> None:
        record = {
            "type": "alert",
            "level": alert.severity.value,
            "message": alert.message,
            "alert_id": alert.id,
            "rule_id": alert.rule_id,
            "timestamp": alert.created_at.isoformat(),
            "metadata": alert.metadata,
        }
        logger.bind(alert_id=alert.id, rule_id=alert.rule_id).info(json.dumps(record, default=str))


class EmailChannel(NotificationChannel):
    name = "email"

    def __init__(self, host: Optional[str], port: int, sender: str, recipient: Optional[str]):
        self.host = host
        self.port = port
        self.sender = sender
        self.recipient = recipient

    def send(self, alert: Alert) -> None:
        if not self.host or not self.recipient:
            logger.debug(f"Email channel not configured, skipping alert {alert.id}")
            return

        message = EmailMessage()
        message["Subject"] = f"[{alert.severity.value.upper()}] {alert.rule_name}"
        message["From"] = self.sender
        message["To"] = self.recipient
        message.set_content(
            f"{alert.message}\n\nTrigger value: {alert.trigger_value}\n"
            f"Threshold: {alert.threshold}\nAlert id: {alert.id}\n"
        )
        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            smtp.send_message(message)
        logger.info(f"Email alert sent to {self.recipient}: {alert.message}")


class SlackChannel(NotificationChannel):
    name = "slack"

    def __init__(self, webhook_url: Optional[str], timeout: float = 5.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def send(self, alert: Alert) -> None:
        if not self.webhook_url:
            logger.debug(f"Slack channel not configured, skipping alert {alert.id}")
            return

        payload = {"text": f":rotating_light: *{alert.severity.value.upper()}* {alert.message}"}
        response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        logger.info(f"Slack alert sent: {alert.message}")


class NotificationDispatcher:
    """Routes an alert to named channels; each channel fails independently."""

    def __init__(self, channels: Optional[Iterable[NotificationChannel]] = None):
        self._channels: Dict[str, NotificationChannel] = {}
        for channel in channels or (ConsoleChannel(), LogChannel()):
            self.register(channel)

    @classmethod
    def from_settings(cls, settings) -> "NotificationDispatcher":
        return cls([
            ConsoleChannel(),
            LogChannel(),
            EmailChannel(settings.smtp_host, settings.smtp_port, settings.alert_email_from, settings.alert_email_to),
            SlackChannel(settings.slack_webhook_url),
        ])

    def register(self, channel: NotificationChannel) -> None:
        self._channels[channel.name] = channel

    @property
    def channel_names(self):
        return sorted(self._channels)

    def dispatch(self, alert: Alert, channel_names: Iterable[str]) -> Dict[str, bool]:
        """Sends to every named channel. Returns delivery success per channel."""
        delivered: Dict[str, bool] = {}
        for name in channel_names:
            channel = self._channels.get(name)
            if channel is None:
                logger.warning(f"Unknown notification channel: {name}")
                delivered[name] = False
                continue
            try:
                channel.send(alert)
                delivered[name] = True
            except Exception as e:
                logger.error(f"Error sending alert {alert.id} to {name}: {e}")
                delivered[name] = False
        return delivered
