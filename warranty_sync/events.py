"""Listener registry and subscription handles."""
from typing import Any, Callable, List

from warranty_sync.logging_conf import logger

Handler = Callable[..., Any]


class Subscription:
    """Handle returned by ``subscribe``; unsubscribes once, also as a context manager."""

    def __init__(self, unsubscribe: Callable[[], None]):
        self._unsubscribe = unsubscribe
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._unsubscribe()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.unsubscribe()
        return False


class Listeners:
    """Ordered set of handlers notified with the same arguments.

    A failing handler is logged and skipped so the others still run.
    """

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Handler] = []

    def add(self, handler: Handler) -> Subscription:
        self._handlers.append(handler)
        return Subscription(lambda: self._remove(handler))

    def _remove(self, handler: Handler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def emit(self, *args) -> None:
        for handler in list(self._handlers):
            try:
                handler(*args)
            except Exception as e:
                logger.error(f"{self.name} handler failed: {e}", exc_info=True)

    def __len__(self):
        return len(self._handlers)
