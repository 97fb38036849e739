"""
Notification Sink

Accepts Notification records from the dispatcher:
1. Persists them through the store (the record of truth for the inbox)
2. Pushes each new one to the registered delivery channels

IMPORTANT:
- Delivery failures are logged and counted, never raised
- A failed delivery never rolls back the entity change that caused it
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Callable, Iterable

import httpx

from .entity_model import Notification
from .entity_store import EntityStore

logger = logging.getLogger("notification_sink")

WEBHOOK_TIMEOUT_SECONDS = 10.0

Channel = Callable[[Notification], bool]


@dataclass(frozen=True)
class DeliveryReport:
    stored: int = 0
    delivered: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"stored": self.stored, "delivered": self.delivered, "failed": self.failed}


class NotificationSink:
    """
    Persist-then-deliver notification sink.

    Channels are plain callables returning True on success.
    """

    def __init__(self, store: EntityStore):
        self._store = store
        self._channels: Dict[str, Channel] = {}

    def register_channel(self, name: str, handler: Channel) -> None:
        """Register a notification delivery channel."""
        self._channels[name] = handler
        logger.info(f"Registered notification channel: {name}")

    @property
    def channel_names(self) -> List[str]:
        return sorted(self._channels)

    def deliver(self, notifications: Iterable[Notification]) -> DeliveryReport:
        stored = self._store.add_notifications(notifications)

        delivered = 0
        failed = 0
        for notification in stored:
            for name, handler in self._channels.items():
                try:
                    if handler(notification):
                        delivered += 1
                    else:
                        failed += 1
                        logger.error(f"Channel {name} did not deliver notification {notification.id}")
                except Exception as e:
                    failed += 1
                    logger.error(f"Channel {name} delivery failed for {notification.id}: {e}")

        return DeliveryReport(stored=len(stored), delivered=delivered, failed=failed)


# Webhook channel implementation
def make_webhook_channel(
    url: str,
    client: Optional[httpx.Client] = None,
    timeout: float = WEBHOOK_TIMEOUT_SECONDS,
) -> Channel:
    """
    Build a channel that POSTs each notification as JSON to `url`.

    `client` may be injected (tests pass one with a mock transport).
    Otherwise one pooled client is created here and shared by every send.
    """
    http = client if client is not None else httpx.Client(timeout=timeout)

    def webhook_channel(notification: Notification) -> bool:
        try:
            response = http.post(url, json=notification.to_dict(), timeout=timeout)
        except httpx.HTTPError as e:
            logger.error(f"Webhook send error for {notification.id}: {e}")
            return False

        if response.status_code >= 400:
            logger.error(f"Webhook rejected notification {notification.id}: HTTP {response.status_code}")
            return False
        return True

    return webhook_channel
