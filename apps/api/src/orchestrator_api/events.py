from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

TASK_CREATED = "task.created"
TASK_FINISHED = "task.finished"

Handler = Callable[[dict[str, Any]], None]


class MessageBus:
    """In-process publish/subscribe between the resource layer and the orchestrator.

    Handlers run synchronously on the publishing thread. A failing handler is
    logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._subscribers.setdefault(topic, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._subscribers.get(topic, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, topic: str, payload: dict[str, Any]) -> int:
        with self._lock:
            handlers = list(self._subscribers.get(topic, []))
        delivered = 0
        for handler in handlers:
            try:
                handler(dict(payload))
            except Exception:  # noqa: BLE001
                logger.exception("handler for '%s' failed", topic)
                continue
            delivered += 1
        return delivered
