"""Cooperative cancellation for pipeline runs.

A :class:`CancellationToken` is shared between whoever triggered a run and
the scheduler executing it. The scheduler polls it at every stage boundary
and inside bounded waits; it never interrupts a remote mutation that has
already started.
"""

from __future__ import annotations

import threading

from release_spine.core.errors import RunCancelled


class CancellationToken:
    """Thread-safe, one-way cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._lock = threading.Lock()

    def cancel(self, reason: str = "cancelled by operator") -> None:
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_cancelled(self, stage: str | None = None) -> None:
        """Raise :class:`RunCancelled` if cancellation was requested."""
        if self._event.is_set():
            raise RunCancelled(self._reason or "cancelled", stage=stage)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True early if cancelled."""
        return self._event.wait(max(0.0, seconds))

    def sleep(self, seconds: float) -> None:
        """Bounded sleep that cuts short and raises on cancellation."""
        if self.wait(seconds):
            self.raise_if_cancelled()


__all__ = ["CancellationToken"]
