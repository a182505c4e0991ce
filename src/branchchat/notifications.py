"""Fire-and-forget broadcasts consumed by list views and toasts."""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

CHAT_UPDATED = "chat-updated"
TOAST = "toast"


class Notifier:
    """A tiny topic broadcaster.

    Subscribers are plain callables. A failing subscriber is logged and
    skipped; it never breaks the emitter or the other subscribers.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[..., Any]]] = defaultdict(list)

    def subscribe(self, topic: str, callback: Callable[..., Any]) -> Callable[[], None]:
        """Registers ``callback`` for ``topic`` and returns an unsubscribe function."""
        self._subscribers[topic].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[topic]:
                self._subscribers[topic].remove(callback)

        return unsubscribe

    def emit(self, topic: str, *args: Any) -> None:
        for callback in list(self._subscribers[topic]):
            try:
                callback(*args)
            except Exception:
                logger.exception("Error in %s subscriber", topic)

    def chat_updated(self, chat_id: str) -> None:
        self.emit(CHAT_UPDATED, chat_id)

    def toast(self, message: str, level: str = "info") -> None:
        self.emit(TOAST, message, level)
