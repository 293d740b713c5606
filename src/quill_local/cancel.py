"""Cooperative cancellation handle shared by downloads and completions."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class CancelToken:
    """A one-shot, thread-safe cancellation flag.

    Long-running calls poll :attr:`cancelled` (or block in :meth:`wait`)
    at transport and engine-call granularity.  Callbacks registered with
    :meth:`add_callback` run exactly once, on the thread that calls
    :meth:`cancel`, or immediately if the token is already cancelled.
    """

    def __init__(self) -> None:
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
            callbacks, self._callbacks = self._callbacks, []

        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("Cancel callback failed")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or *timeout* elapses; return the flag."""
        return self._event.wait(timeout)

    def add_callback(self, cb: Callable[[], None]) -> Callable[[], None]:
        """Register *cb*; return a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)
                return lambda: self._remove(cb)
        cb()
        return lambda: None

    def _remove(self, cb: Callable[[], None]) -> None:
        with self._lock:
            if cb in self._callbacks:
                self._callbacks.remove(cb)
