"""Cooperative cancellation shared by a loop and all of its nested children."""

from __future__ import annotations

import threading
import time


class CancelToken:
    """Flag plus optional monotonic deadline.

    One token is handed down from the top-level loop to every child loop and
    every environment, so cancelling it (or passing the deadline) stops the
    whole tree at its next step boundary or traced cell line.
    """

    deadline: float | None
    reason: str | None

    def __init__(self, deadline: float | None = None) -> None:
        self._event = threading.Event()
        self.deadline = deadline
        self.reason = None

    @classmethod
    def with_timeout(cls, seconds: float | None) -> "CancelToken":
        if seconds is None:
            return cls()
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel("run deadline exceeded")
            return True
        return False

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())
