"""Cooperative cancellation shared by every suspendable operation."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, TypeVar

ERROR_OPERATION_CANCELLED = "Operation cancelled by user."

LOGGER = logging.getLogger(__name__)
T = TypeVar("T")


class OperationCancelledError(RuntimeError):
    """Raised when a cancellation token fires during an operation."""

    def __init__(self, message: str = ERROR_OPERATION_CANCELLED) -> None:
        super().__init__(message)


class CancellationToken:
    """Thread-safe cancellation flag passed explicitly to suspendable calls."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """Raise the flag and notify registered callbacks exactly once."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:  # noqa: BLE001 - one failing listener must not block the rest
                LOGGER.exception("Cancellation callback failed")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""
        with self._lock:
            fire_now = self._event.is_set()
            if not fire_now:
                self._callbacks.append(callback)
        if fire_now:
            callback()

        def _unregister() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _unregister

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError()

    def sleep(self, seconds: float) -> None:
        """Wait for ``seconds`` unless cancelled first."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        if self._event.wait(seconds):
            raise OperationCancelledError()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return the flag state."""
        return self._event.wait(timeout)


def is_cancellation(error: BaseException) -> bool:
    """Return ``True`` when ``error`` represents a cancellation."""
    if isinstance(error, OperationCancelledError):
        return True
    return str(error).strip() == ERROR_OPERATION_CANCELLED


def run_cancellable(
    func: Callable[[], T],
    cancellation: CancellationToken,
    *,
    poll_interval: float = 0.05,
) -> T:
    """Run a blocking callable, abandoning the wait once ``cancellation`` fires."""
    cancellation.raise_if_cancelled()
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="planforge-race")
    try:
        future = pool.submit(func)
        while True:
            try:
                return future.result(timeout=poll_interval)
            except FutureTimeoutError:
                cancellation.raise_if_cancelled()
    finally:
        pool.shutdown(wait=False)


__all__ = [
    "CancellationToken",
    "ERROR_OPERATION_CANCELLED",
    "OperationCancelledError",
    "is_cancellation",
    "run_cancellable",
]
