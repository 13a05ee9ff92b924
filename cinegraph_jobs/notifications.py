from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .common import LOGGER, now_epoch


TOPIC_IMPORT_PROGRESS = "import_progress"
TOPIC_AWARD_IMPORTS = "award_imports"
TOPIC_FESTIVAL_IMPORTS = "festival_imports"
TOPIC_BACKFILL = "backfill"
TOPIC_YEAR_IMPORTS = "year_imports"
TOPIC_ALERTS = "alerts"


@dataclass
class Notification:
    topic: str
    event: Dict[str, Any]
    published_at: int = field(default_factory=now_epoch)


Subscriber = Callable[[Notification], None]


class NotificationSink:
    """Fire-and-forget in-process publish/subscribe for progress display."""

    def __init__(self, history: int = 50):
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._recent: deque[Notification] = deque(maxlen=max(1, history))
        self._latest: Dict[str, Notification] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, callback: Subscriber) -> None:
        """Use ``"*"`` to receive every topic."""
        with self._lock:
            self._subscribers.setdefault(topic, []).append(callback)

    def publish(self, topic: str, event: Dict[str, Any]) -> None:
        notification = Notification(topic=topic, event=dict(event))
        with self._lock:
            self._recent.append(notification)
            self._latest[topic] = notification
            callbacks = list(self._subscribers.get(topic, [])) + list(self._subscribers.get("*", []))
        for callback in callbacks:
            try:
                callback(notification)
            except Exception:
                LOGGER.warning("[Notify] Subscriber failed for topic %s; dropped.", topic, exc_info=True)

    def latest(self, topic: str) -> Optional[Notification]:
        with self._lock:
            return self._latest.get(topic)

    def latest_by_topic(self) -> Dict[str, Notification]:
        with self._lock:
            return dict(self._latest)

    def recent(self, limit: int = 10) -> List[Notification]:
        with self._lock:
            return list(self._recent)[-limit:]
