"""Cooperative cancellation for in-flight requests.

A :class:`CancellationToken` is handed to ``HttpClient.send``. Cancelling it
runs every registered callback, which is how the executor aborts the
transport operation instead of waiting for it to finish on its own. Tokens
may be cancelled from any thread.
"""

from __future__ import annotations

import itertools
import threading
from typing import Callable

import structlog

from .errors import OperationCancelledError

logger = structlog.get_logger(__name__)


class CancellationRegistration:
    """Handle returned by :meth:`CancellationToken.register`.

    Usable as a context manager; leaving the block unregisters the callback.
    """

    def __init__(self, token: CancellationToken | None, key: int) -> None:
        self._token = token
        self._key = key

    def unregister(self) -> bool:
        """Remove the callback. Returns True if it was still registered."""
        token, self._token = self._token, None
        if token is None:
            return False
        return token._unregister(self._key)

    def __enter__(self) -> CancellationRegistration:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unregister()


class CancellationToken:
    """Signal that one or more operations should stop."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requested = False
        self._callbacks: dict[int, Callable[[], object]] = {}
        self._keys = itertools.count()
        self._timer: threading.Timer | None = None

    @property
    def is_cancellation_requested(self) -> bool:
        return self._requested

    def cancel(self) -> None:
        """Request cancellation and run registered callbacks once."""
        with self._lock:
            if self._requested:
                return
            self._requested = True
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        for callback in callbacks:
            self._invoke(callback)

    def cancel_after(self, seconds: float) -> None:
        """Schedule :meth:`cancel` after ``seconds``."""
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        timer = threading.Timer(seconds, self.cancel)
        timer.daemon = True
        with self._lock:
            if self._requested:
                return
            previous, self._timer = self._timer, timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def register(self, callback: Callable[[], object]) -> CancellationRegistration:
        """Run ``callback`` when cancellation is requested.

        If cancellation was already requested the callback runs immediately.
        """
        with self._lock:
            if not self._requested:
                key = next(self._keys)
                self._callbacks[key] = callback
                return CancellationRegistration(self, key)
        self._invoke(callback)
        return CancellationRegistration(None, -1)

    def raise_if_cancellation_requested(self) -> None:
        if self._requested:
            raise OperationCancelledError("the operation was cancelled")

    def _unregister(self, key: int) -> bool:
        with self._lock:
            return self._callbacks.pop(key, None) is not None

    @staticmethod
    def _invoke(callback: Callable[[], object]) -> None:
        try:
            callback()
        except Exception as exc:
            # An abort racing a completing operation may fail; the token
            # state is authoritative either way.
            logger.warning(
                "cancellation_callback_failed",
                callback=repr(callback),
                error=str(exc),
                exc_info=True,
            )

    def __repr__(self) -> str:
        state = "requested" if self._requested else "idle"
        return f"<CancellationToken {state}>"
