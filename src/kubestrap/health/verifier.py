# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Optional

from kubestrap.config.models import NodeDescriptor
from kubestrap.errors import KubestrapError
from kubestrap.execution.driver import ExecutionDriver
from kubestrap.utils.cancel import CancelToken
from .probes import ReadinessProbe

# Observer bits
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import HealthPolled, HealthResult, new_ctx

log = logging.getLogger("kubestrap")


class Readiness(str, Enum):
    READY = "Ready"
    TIMED_OUT = "TimedOut"
    CANCELLED = "Cancelled"


class HealthVerifier:
    """Polls a readiness probe on one designated node until it holds."""

    def __init__(
        self,
        driver: ExecutionDriver,
        node: NodeDescriptor,
        bus: Optional[EventBus] = None,
        run_id: str = "-",
        cluster: str = "-",
    ):
        self.driver = driver
        self.node = node
        self.bus = bus or EventBus()
        self.run_id = run_id
        self.cluster = cluster

    def _ctx(self) -> dict:
        return new_ctx(self.run_id, self.cluster)

    def await_ready(
        self,
        probe: ReadinessProbe,
        poll_interval: float,
        timeout: float,
        cancel: Optional[CancelToken] = None,
    ) -> Readiness:
        cancel = cancel or CancelToken()
        deadline = time.monotonic() + timeout
        attempt = 0
        outcome = Readiness.TIMED_OUT

        log.info("waiting for %s on %s (timeout %ss)", probe.description, self.node.id, timeout)
        while True:
            if cancel.cancelled:
                outcome = Readiness.CANCELLED
                break

            attempt += 1
            remaining = deadline - time.monotonic()
            ready, detail = False, None
            try:
                result = self.driver.execute(
                    self.node, probe.command, max(1.0, remaining)
                )
                ready = probe.evaluate(result)
                if not result.ok:
                    detail = (result.stderr or "").strip()[-200:] or f"exit {result.exit_code}"
            except KubestrapError as e:
                # unreachable node counts as not ready yet
                detail = str(e)
                self.driver.reset(self.node)

            self.bus.emit(HealthPolled(
                node=self.node.id, probe=probe.description, attempt=attempt,
                ready=ready, detail=detail, **self._ctx(),
            ))
            if ready:
                outcome = Readiness.READY
                break

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if cancel.wait(min(poll_interval, remaining)):
                outcome = Readiness.CANCELLED
                break

        self.bus.emit(HealthResult(
            node=self.node.id, probe=probe.description, outcome=outcome.value, **self._ctx(),
        ))
        return outcome
