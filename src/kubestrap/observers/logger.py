from __future__ import annotations
import logging
from .events import BaseEvent, HealthResult, HostResourceWarning, StepFailed, StepRetrying, TeardownStepResult

_SKIP = ("ts", "run_id", "cluster")


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def _level(self, event: BaseEvent) -> int:
        if isinstance(event, StepFailed):
            return logging.ERROR
        if isinstance(event, (StepRetrying, HostResourceWarning)):
            return logging.WARNING
        if isinstance(event, TeardownStepResult) and not event.ok:
            return logging.WARNING
        if isinstance(event, HealthResult) and event.outcome != "Ready":
            return logging.WARNING
        return logging.DEBUG

    def notify(self, event: BaseEvent) -> None:
        etype = event.__class__.__name__
        msg = ", ".join(f"{k}={v}" for k, v in event.dict().items() if k not in _SKIP)
        self.logger.log(self._level(event), "[EVENT] %s: %s", etype, msg)
