# src/kubestrap/observers/dispatcher.py
from __future__ import annotations
import logging
import threading
from typing import List, Optional, Protocol
from .events import BaseEvent

log = logging.getLogger("kubestrap")


class Observer(Protocol):
    def notify(self, event: BaseEvent) -> None: ...


class EventBus:
    def __init__(self, observers: Optional[List[Observer]] = None):
        self._observers = observers or []
        self._lock = threading.Lock()   # events arrive from worker threads

    def emit(self, event: BaseEvent) -> None:
        with self._lock:
            for ob in self._observers:
                try:
                    ob.notify(event)
                except Exception:
                    # observers must not break runs
                    log.debug("observer %r failed on %s", ob, type(event).__name__, exc_info=True)
