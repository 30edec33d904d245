"""
Notification dispatcher interface.

The engine hands reminders and review outcomes to a dispatcher and never
waits on delivery. Delivery is at-least-once, so every message carries a
``dedupeKey`` (instance id + fire time for reminders) that consumers use to
drop repeats.

Implementations:
  LoggingNotificationDispatcher — default; logs and de-duplicates in memory
  WebhookNotificationDispatcher — POSTs JSON to NOTIFICATION_WEBHOOK_URL

Testability: pass a mock ``session`` to WebhookNotificationDispatcher() in
tests instead of letting it create a real requests.Session.
"""

from __future__ import annotations

import logging
import threading

import requests
from flask import current_app

logger = logging.getLogger(__name__)

# ── Default request timeout (seconds) ──────────────────────────────────────
_DEFAULT_TIMEOUT = 10


class NotificationDispatchError(Exception):
    """Delivery failed; the caller records it and retries on the next tick."""


class NotificationDispatcher:
    def enqueue(self, message: dict) -> bool:
        """Queue a message. Returns False when it was recognised as a duplicate."""
        raise NotImplementedError


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes each message to the log once per dedupe key."""

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self._lock = threading.Lock()
        self.delivered: list[dict] = []

    def enqueue(self, message: dict) -> bool:
        key = message.get("dedupeKey") or f"{message.get('instanceId')}:{message.get('firesAt')}"
        with self._lock:
            if key in self._seen:
                logger.debug("Duplicate notification dropped: %s", key)
                return False
            self._seen.add(key)
            self.delivered.append(message)
        logger.info(
            "Notification %s for obligation %s via %s",
            message.get("type", "reminder"), message.get("instanceId"),
            message.get("channel", "email"),
            extra={"instance_id": message.get("instanceId"), "event_type": "notification"},
        )
        return True


class WebhookNotificationDispatcher(NotificationDispatcher):
    """POSTs each message as JSON; the dedupe key travels as ``Idempotency-Key``."""

    def __init__(self, url: str, timeout: int = _DEFAULT_TIMEOUT,
                 session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def enqueue(self, message: dict) -> bool:
        headers = {"Content-Type": "application/json"}
        if message.get("dedupeKey"):
            headers["Idempotency-Key"] = str(message["dedupeKey"])
        try:
            resp = self.session.post(self.url, json=message, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotificationDispatchError(f"Webhook unreachable: {e}") from e
        if resp.status_code == 409:
            # Receiver already has this dedupe key
            return False
        if not 200 <= resp.status_code < 300:
            raise NotificationDispatchError(
                f"Webhook returned HTTP {resp.status_code}: {resp.text[:200]}"
            )
        return True


def build_dispatcher(config) -> NotificationDispatcher:
    url = config.get("NOTIFICATION_WEBHOOK_URL")
    if url:
        return WebhookNotificationDispatcher(
            url, timeout=config.get("NOTIFICATION_WEBHOOK_TIMEOUT", _DEFAULT_TIMEOUT),
        )
    return LoggingNotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    return current_app.extensions["notification_dispatcher"]
