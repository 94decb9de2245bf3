"""
Explicit cancellation tokens.

The owner of a load (a view, a request handler) keeps the token and cancels
it on teardown. Cancelling runs registered callbacks, which is how a load
session aborts its producer task.
"""
import logging
from typing import Callable, List, Optional

from .errors import CancellationError

logger = logging.getLogger("cache.cancellation")


class CancellationToken:
    """
    One-shot cancellation signal.

    Usage:
        token = CancellationToken()
        value = await coordinator.load(key, producer, token=token)
        ...
        token.cancel()  # on teardown
    """

    def __init__(self):
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Signal cancellation. Later calls are no-ops."""
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Run callback on cancellation.

        Runs immediately if the token is already cancelled.

        Returns:
            A function that unregisters the callback
        """
        if self._cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def link(self, parent: Optional["CancellationToken"]) -> Callable[[], None]:
        """Cancel this token whenever parent is cancelled."""
        if parent is None:
            return lambda: None
        return parent.add_callback(self.cancel)

    def raise_if_cancelled(self, key: Optional[str] = None) -> None:
        if self._cancelled:
            raise CancellationError(key)

    def __repr__(self) -> str:
        return f"<CancellationToken(cancelled={self._cancelled})>"
