"""Cooperative cancellation for the polling loop."""

from __future__ import annotations

import threading


class CancellationToken:
    """Thread-safe flag checked by long-running conversions.

    ``wait`` doubles as the inter-poll sleep so a cancelled token wakes the
    poller immediately instead of after the full interval.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


class LinkedToken(CancellationToken):
    """Token that also reports cancelled when any parent token is."""

    def __init__(self, *parents: CancellationToken | None) -> None:
        super().__init__()
        self._parents = [p for p in parents if p is not None]

    def is_cancelled(self) -> bool:
        return super().is_cancelled() or any(p.is_cancelled() for p in self._parents)

    def wait(self, seconds: float) -> bool:
        # Parents are polled in short slices; the own event still wakes instantly.
        remaining = seconds
        while remaining > 0:
            if self.is_cancelled():
                return True
            step = min(remaining, 0.25)
            if super().wait(step):
                return True
            remaining -= step
        return self.is_cancelled()
