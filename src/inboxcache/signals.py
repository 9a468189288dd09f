"""CloseSignal: the channel a message detail view uses to ask to be dismissed.

The cache never emits it. A presentation layer subscribes a callback taking a
single ``animated`` flag; the detail view emits.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("inboxcache.signals")


class CloseSignal:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[bool], None]] = []

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Register callback; returns a function that unsubscribes it."""
        with self._lock:
            self._callbacks.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _unsubscribe

    def emit(self, animated: bool = True) -> int:
        """Call every subscriber with animated. Returns the number of subscribers called."""
        with self._lock:
            callbacks = list(self._callbacks)
        for cb in callbacks:
            try:
                cb(animated)
            except Exception:
                logger.exception("close callback failed: %r", cb)
        return len(callbacks)

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)
