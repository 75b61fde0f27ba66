# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from kubestrap.errors import (
    CommandError,
    InvalidTransition,
    KubestrapError,
    StepKey,
    TransportError,
)
from kubestrap.execution.driver import ExecutionDriver
from kubestrap.persistence.store import RunStore
from kubestrap.utils.cancel import CancelToken
from kubestrap.utils.retry import call_with_retry
from .graph import StepGraph, Vertex
from .render import render_command
from .state import ClusterRun, StepStatus

# Observer bits
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import (
    GateOpened,
    StepFailed,
    StepRetrying,
    StepStarted,
    StepSucceeded,
    new_ctx,
)

log = logging.getLogger("kubestrap")


@dataclass
class EngineResult:
    succeeded: List[StepKey] = field(default_factory=list)
    failed: Dict[StepKey, str] = field(default_factory=dict)
    pending: List[StepKey] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.pending

    def summary(self) -> str:
        return f"SUCCEEDED={len(self.succeeded)} FAILED={len(self.failed)} PENDING={len(self.pending)}"


class StepGraphEngine:
    """
    Executes a StepGraph against a ClusterRun.

    Waves (one per role) run strictly one after another: the next wave is
    not enqueued until every vertex of the previous one has Succeeded.
    Inside a wave, nodes run in parallel on a bounded thread pool while
    each node works through its own steps one at a time.

    Every StepState change goes through _commit, which mutates the run and
    persists a snapshot under a single lock.
    """

    def __init__(
        self,
        driver: ExecutionDriver,
        store: RunStore,
        bus: Optional[EventBus] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.driver = driver
        self.store = store
        self.bus = bus or EventBus()
        self.max_concurrency = max_concurrency
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------
    def run(
        self,
        run: ClusterRun,
        graph: StepGraph,
        cancel: Optional[CancelToken] = None,
    ) -> EngineResult:
        cancel = cancel or CancelToken()
        cap = max(1, self.max_concurrency or run.plan.max_concurrency)

        self._prepare_resume(run, graph)

        for index, (role, vertices) in enumerate(graph.waves()):
            if cancel.cancelled:
                log.info("cancellation requested; not starting the %s wave", role.value)
                break

            todo = [v for v in vertices if run.state(*v).status != StepStatus.SUCCEEDED]
            self._emit(run, GateOpened, wave=index, role=role.value, steps=len(todo))
            if todo:
                self._run_wave(run, graph, todo, cap, cancel)

            if any(run.state(*v).status != StepStatus.SUCCEEDED for v in vertices):
                log.warning("%s wave did not complete; later waves stay pending", role.value)
                break

        return self._result(run, graph, cancel)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _commit(self, run: ClusterRun, mutate: Callable[[], None]) -> None:
        with self._lock:
            mutate()
            run.touch()
            self.store.save(run)

    def _emit(self, run: ClusterRun, event_cls, **fields) -> None:
        self.bus.emit(event_cls(**fields, **new_ctx(run.run_id, run.plan.cluster_name)))

    def _prepare_resume(self, run: ClusterRun, graph: StepGraph) -> None:
        """Creates missing step states and puts Running/Failed ones back to Pending."""

        def mutate() -> None:
            run.ensure_steps(graph.order)
            for st in run.steps.values():
                if st.status == StepStatus.RUNNING:
                    log.warning("%s was running when the previous process stopped", st.key)
                    st.transition(StepStatus.FAILED, error="interrupted")
                if st.status == StepStatus.FAILED:
                    log.info("resetting %s (last error: %s)", st.key, st.last_error)
                    st.transition(StepStatus.PENDING)

        self._commit(run, mutate)

    def _run_wave(
        self,
        run: ClusterRun,
        graph: StepGraph,
        todo: List[Vertex],
        cap: int,
        cancel: CancelToken,
    ) -> None:
        remaining = list(todo)
        in_flight: Dict[Future, Vertex] = {}
        busy: Set[str] = set()

        with ThreadPoolExecutor(max_workers=cap, thread_name_prefix="kubestrap") as pool:
            while True:
                if not cancel.cancelled:
                    for v in list(remaining):
                        if len(in_flight) >= cap:
                            break
                        if v[0] in busy:
                            continue
                        dep_states = [run.state(*d).status for d in graph.deps[v]]
                        if any(s == StepStatus.FAILED for s in dep_states):
                            # blocked for good in this attempt; stays Pending
                            remaining.remove(v)
                            continue
                        if any(s != StepStatus.SUCCEEDED for s in dep_states):
                            continue
                        remaining.remove(v)
                        busy.add(v[0])
                        in_flight[pool.submit(self._execute, run, graph, v, cancel)] = v

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    v = in_flight.pop(fut)
                    busy.discard(v[0])
                    fut.result()

    def _execute(self, run: ClusterRun, graph: StepGraph, v: Vertex, cancel: CancelToken) -> None:
        node, step = graph.node(v), graph.step(v)
        state = run.state(*v)
        retry_on = (TransportError, CommandError) if step.idempotent else ()
        started = time.time()

        def attempt():
            self._commit(run, lambda: state.transition(StepStatus.RUNNING))
            self._emit(run, StepStarted, node=node.id, step=step.name, attempt=state.attempts)
            with self._lock:
                outputs = dict(run.outputs)
            command = render_command(step, node, run.plan, outputs)
            log.debug("[%s] %s: %s", node.id, step.name, command)
            try:
                return self.driver.execute(node, command, step.timeout_seconds, check=True)
            except TransportError:
                self.driver.reset(node)
                raise

        def on_retry(n: int, exc: BaseException, delay: float) -> None:
            self._commit(run, lambda: state.transition(StepStatus.FAILED, error=str(exc)))
            self._emit(
                run, StepRetrying,
                node=node.id, step=step.name, attempt=n, delay_s=delay, error=str(exc),
            )
            self._commit(run, lambda: state.transition(StepStatus.PENDING))

        try:
            result, attempts = call_with_retry(
                attempt,
                policy=run.plan.retry,
                retry_on=retry_on,
                cancel=cancel,
                on_retry=on_retry,
            )
        except InvalidTransition:
            raise
        except Exception as e:
            if isinstance(e, KubestrapError):
                error = str(e)
            else:
                log.exception("[%s] %s: unexpected error", node.id, step.name)
                error = f"{type(e).__name__}: {e}"
            if state.status == StepStatus.RUNNING:
                self._commit(run, lambda: state.transition(StepStatus.FAILED, error=error))
                self._emit(
                    run, StepFailed,
                    node=node.id, step=step.name, attempts=state.attempts, error=error,
                )
            return

        def succeed() -> None:
            state.transition(StepStatus.SUCCEEDED)
            if step.capture:
                run.outputs[step.capture] = result.stdout.strip()

        self._commit(run, succeed)
        self._emit(
            run, StepSucceeded,
            node=node.id,
            step=step.name,
            attempts=attempts,
            duration_ms=int((time.time() - started) * 1000),
        )

    def _result(self, run: ClusterRun, graph: StepGraph, cancel: CancelToken) -> EngineResult:
        res = EngineResult(cancelled=cancel.cancelled)
        for v in graph.order:
            st = run.state(*v)
            if st.status == StepStatus.SUCCEEDED:
                res.succeeded.append(v)
            elif st.status == StepStatus.FAILED:
                res.failed[v] = st.last_error or "failed"
            else:
                res.pending.append(v)
        return res
