# src/kubestrap/utils/cancel.py

from __future__ import annotations

import threading
from typing import Optional


class CancelToken:
    """Run-level cancellation signal shared by the engine and the health verifier."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True early if cancelled."""
        return self._event.wait(max(0.0, seconds))
