"""
CONFLUX™ — Subscription Registry
Key → callbacks fan-out used by push-capable adapters and the hub.
"""
from typing import Any, Callable, Dict, List

from conflux.utils.logger import get_logger

logger = get_logger("subscriptions")

Unsubscribe = Callable[[], None]


def noop_unsubscribe() -> None:
    """Returned by fetch-only vendors that never stream."""
    return None


class SubscriptionRegistry:
    """Callbacks grouped by key. A failing subscriber never blocks the others."""

    def __init__(self, name: str = "registry"):
        self.name = name
        self._subscribers: Dict[str, List[Callable[[Any], None]]] = {}

    def add(self, key: str, callback: Callable[[Any], None]) -> Unsubscribe:
        self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[key]

        return unsubscribe

    def publish(self, key: str, payload: Any) -> int:
        """Deliver `payload` to every callback on `key`. Returns the delivery count."""
        delivered = 0
        for callback in list(self._subscribers.get(key, ())):
            try:
                callback(payload)
                delivered += 1
            except Exception as e:
                logger.error("subscriber_error", registry=self.name, key=key, error=str(e))
        return delivered

    def has(self, key: str) -> bool:
        return bool(self._subscribers.get(key))

    def keys(self) -> List[str]:
        return list(self._subscribers)

    def count(self, key: str = None) -> int:
        if key is not None:
            return len(self._subscribers.get(key, ()))
        return sum(len(v) for v in self._subscribers.values())

    def clear(self) -> None:
        self._subscribers.clear()
