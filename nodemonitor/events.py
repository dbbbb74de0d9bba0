"""Typed observer channels for nodemonitor components."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

H = TypeVar("H", bound=Callable[..., None])


class EventChannel(Generic[H]):
    """A named list of handlers notified in subscription order.

    Handlers run on the emitting thread. A handler that raises is logged
    and skipped so the remaining handlers still see the event.
    """

    def __init__(self, name: str):
        self.name = name
        self._handlers: list[H] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: H) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(handler)

        return unsubscribe

    def unsubscribe(self, handler: H) -> None:
        with self._lock:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

    def emit(self, *args) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(*args)
            except Exception:
                logger.warning("Handler for %s event failed", self.name, exc_info=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)
