"""Cancellation and deadline handling shared by long-running operations."""
import threading
import time
from typing import Optional


class ContextCancelled(RuntimeError):
    """Raised when work is abandoned because its context was cancelled or timed out."""


class RunContext:
    """A cancellation token with an optional deadline.

    Remote calls and sleeps poll the context so a cancelled run stops at the
    next suspension point.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def deadline_exceeded(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.deadline_exceeded

    @property
    def error(self) -> Optional[str]:
        if self._event.is_set():
            return "context canceled"
        if self.deadline_exceeded:
            return "context deadline exceeded"
        return None

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        """Raise ContextCancelled if the context is done."""
        if self.cancelled:
            raise ContextCancelled(self.error)

    def wait(self, seconds: float) -> bool:
        """Block up to ``seconds``; return True if the context ended meanwhile."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._event.wait(max(0.0, seconds))
        return self.cancelled

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless the context ends first."""
        if self.wait(seconds):
            raise ContextCancelled(self.error)
