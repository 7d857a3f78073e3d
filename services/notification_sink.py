"""
Notification sink

Settlement summaries, retention warnings and downgrade notices are handed to a
sink and forgotten. Delivery (Telegram, email, ...) lives outside the core;
publish() must never be allowed to break the caller's transaction.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Fire-and-forget outbound event channel"""

    @abstractmethod
    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotificationSink(NotificationSink):
    """Default sink: writes every event to the log"""

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info(f"📣 NOTIFY: {event_type} {payload}")


class RecordingNotificationSink(NotificationSink):
    """Keeps published events in memory, for inspection by tests and admin tooling"""

    def __init__(self):
        self.events: List[tuple] = []

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        self.events.append((event_type, payload))


def safe_publish(sink: NotificationSink, event_type: str, payload: Dict[str, Any]) -> bool:
    """Publish and swallow sink failures; returns False if the sink raised"""
    try:
        sink.publish(event_type, payload)
        return True
    except Exception as e:
        logger.error(f"❌ NOTIFY: {event_type} delivery failed: {e}")
        return False
