"""
Per-job cancellation token.

Cooperative flag plus hard-stop callbacks. The worker polls the flag at
supervision boundaries; the process supervisor registers a callback that
kills the child process group so cancellation latency stays bounded even
while the worker is blocked on the process.
"""

import logging
import threading
from typing import Callable, List

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    One-shot cancellation signal.

    - cancel() sets the flag and runs every registered callback exactly once
    - register() on an already-cancelled token runs the callback immediately
    - wait() doubles as an interruptible sleep for backoff and timers
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """
        Signal cancellation.

        Returns:
            True if this call performed the cancellation, False if it was
            already cancelled
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            self._run(callback)
        return True

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a hard-stop callback.

        Returns:
            Callable that unregisters the callback
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return unregister

        self._run(callback)
        return lambda: None

    def wait(self, timeout: float) -> bool:
        """
        Sleep up to `timeout` seconds or until cancelled.

        Returns:
            True if cancelled
        """
        return self._event.wait(timeout)

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception(f"[Cancellation] Callback {callback!r} failed")
