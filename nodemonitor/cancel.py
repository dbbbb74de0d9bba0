"""Cooperative cancellation shared across threads and the event loop."""

from __future__ import annotations

import asyncio
import threading
from typing import Callable


class CancellationToken:
    """A one-shot cancellation flag.

    ``cancel()`` may be called from any thread, including signal handlers
    and UI callbacks. Async waiters are woken through their own loop.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Call ``callback`` once on cancellation. Returns a remover.

        If the token is already cancelled the callback runs immediately.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._remove(callback)
        callback()
        return lambda: None

    def _remove(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        loop = asyncio.get_running_loop()
        event = asyncio.Event()
        remove = self.add_callback(lambda: loop.call_soon_threadsafe(event.set))
        try:
            await event.wait()
        finally:
            remove()

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds. Returns False if cancelled first."""
        if self.cancelled:
            return False
        try:
            await asyncio.wait_for(self.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False
