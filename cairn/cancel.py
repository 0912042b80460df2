from __future__ import annotations

import threading

from .errors import Cancelled


class CancelToken:
    """Cooperative cancellation signal shared between a caller and workers.

    Long-running loops call :meth:`check` between chunk boundaries.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or "cancelled")


def check(token) -> None:
    if token is not None:
        token.check()
