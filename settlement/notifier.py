"""
Billing Event Notifications
===========================

In-process publish/subscribe for billing events, plus a Slack subscriber
that forwards anomalies to an operations channel.

Topics:
- billing.needsUpdate
- billing.chargeFailed
- billing.ledgerWriteFailed
- billing.runAborted
"""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlparse

import requests

logger = logging.getLogger(__name__)

NEEDS_UPDATE = "billing.needsUpdate"
CHARGE_FAILED = "billing.chargeFailed"
LEDGER_WRITE_FAILED = "billing.ledgerWriteFailed"
RUN_ABORTED = "billing.runAborted"

ANOMALY_TOPICS = (NEEDS_UPDATE, CHARGE_FAILED, LEDGER_WRITE_FAILED, RUN_ABORTED)

Handler = Callable[[str, Dict[str, Any]], None]


class EventNotifier(Protocol):
    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


class EventBus:
    """
    Synchronous event bus.

    Handlers run in subscription order. A failing handler is logged and does
    not prevent the others from running or propagate into the publisher.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._handlers[topic].append(handler)

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        logger.info("Event %s: %s", topic, payload)
        for handler in list(self._handlers.get(topic, [])):
            try:
                handler(topic, payload)
            except Exception as exc:
                logger.error("Event handler for %s failed: %s", topic, exc)


def _is_valid_webhook_url(url: Optional[str]) -> bool:
    """Only HTTPS hooks.slack.com URLs are accepted."""
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme == "https" and parsed.netloc.lower().endswith("hooks.slack.com")


class SlackAnomalySubscriber:
    """Posts billing anomalies to a Slack incoming webhook."""

    def __init__(self, webhook_url: Optional[str], timeout: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.enabled = _is_valid_webhook_url(webhook_url)
        if webhook_url and not self.enabled:
            logger.warning("Invalid Slack webhook URL; billing alerts disabled")

    def attach(self, bus: EventBus, topics=ANOMALY_TOPICS) -> None:
        for topic in topics:
            bus.subscribe(topic, self)

    def __call__(self, topic: str, payload: Dict[str, Any]) -> None:
        self.post(topic, payload)

    def post(self, topic: str, payload: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False

        severity = payload.get("severity", "medium")
        fields = [
            {"type": "mrkdwn", "text": f"*{key}:* {value}"}
            for key, value in payload.items()
            if key != "severity"
        ][:10]
        message = {
            "text": f":rotating_light: {topic} ({severity})",
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": f"Billing alert: {topic}"},
                },
                {"type": "section", "fields": fields or [{"type": "mrkdwn", "text": "-"}]},
            ],
        }

        try:
            response = requests.post(self.webhook_url, json=message, timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.RequestException as exc:
            logger.error("Slack alert for %s failed: %s", topic, exc)
            return False
