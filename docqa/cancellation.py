"""Cooperative cancellation for long-running ingestion work."""

from __future__ import annotations

import threading
import time

from docqa.errors import IngestCancelled


class CancellationToken:
    def __init__(self, timeout: float | None = None) -> None:
        self._event = threading.Event()
        self._reason = "cancelled"
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("timed out")
            return True
        return False

    @property
    def reason(self) -> str:
        return self._reason

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise IngestCancelled(f"Ingestion {self._reason}.")
