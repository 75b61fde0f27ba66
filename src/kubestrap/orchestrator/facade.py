# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/orchestrator/facade.py

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from kubestrap.config.catalog import EXPORT_KUBECONFIG
from kubestrap.config.models import NodeDescriptor, PlanConfig, Role, role_rank
from kubestrap.config.settings import Settings
from kubestrap.engine.engine import EngineResult, StepGraphEngine
from kubestrap.engine.graph import build_graph
from kubestrap.engine.render import render_command
from kubestrap.engine.state import ClusterRun, RunStatus
from kubestrap.errors import (
    ConfigError,
    KubestrapError,
    NotFound,
    PartialFailure,
    RunCancelled,
    TimedOut,
)
from kubestrap.execution.driver import ExecutionDriver
from kubestrap.execution.factory import build_driver
from kubestrap.health.probes import ReadinessProbe, nodes_ready, workers_joined
from kubestrap.health.verifier import HealthVerifier, Readiness
from kubestrap.persistence.store import RunStore
from kubestrap.topology.resources import probe_host, resource_warnings
from kubestrap.topology.store import plan_topology
from kubestrap.utils.cancel import CancelToken

# Observer bits
from kubestrap.observers.dispatcher import EventBus, Observer
from kubestrap.observers.events import (
    HostResourceWarning,
    RunPhaseChanged,
    RunSummary,
    TeardownStepResult,
    new_ctx,
)
from kubestrap.observers.jsonfile import JsonFileObserver

log = logging.getLogger("kubestrap")

DriverFactory = Callable[[PlanConfig], ExecutionDriver]


@dataclass
class BootstrapReport:
    run_id: str
    status: RunStatus
    control_plane: Optional[NodeDescriptor] = None
    kubeconfig: Optional[Path] = None
    result: Optional[EngineResult] = None
    resumed: bool = False


@dataclass
class TeardownReport:
    run_id: Optional[str]
    status: Optional[RunStatus]
    errors: List[str] = field(default_factory=list)
    noop: bool = False


class Orchestrator:
    """
    Drives a ClusterRun through
    NotStarted -> Planning -> Provisioning -> Verifying -> Ready,
    with Failed reachable from Provisioning/Verifying and TornDown from anywhere.

    `driver` may be an ExecutionDriver instance (shared by every run) or a
    callable that builds one from the plan; by default the plan's driver
    section decides.
    """

    def __init__(
        self,
        settings: Settings,
        driver: Optional[ExecutionDriver | DriverFactory] = None,
        observers: Optional[List[Observer]] = None,
    ):
        self.settings = settings
        self.store = RunStore(settings.runs_dir)
        self.observers = list(observers or [])
        self._driver = driver

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _make_driver(self, plan: PlanConfig) -> ExecutionDriver:
        if self._driver is None:
            return build_driver(plan.driver, project_dir=self.settings.project_dir)
        if callable(self._driver) and not hasattr(self._driver, "execute"):
            return self._driver(plan)
        return self._driver

    def _bus(self, run: ClusterRun) -> EventBus:
        return EventBus(self.observers + [JsonFileObserver.for_run(self.settings.logs_dir, run.run_id)])

    def _set_status(self, run: ClusterRun, bus: EventBus, to: RunStatus, *, persist: bool = True) -> None:
        previous = run.transition(to)
        log.info("run %s: %s -> %s", run.run_id, previous.value, to.value)
        if persist:
            self.store.save(run)
        bus.emit(RunPhaseChanged(
            previous=previous.value, status=to.value, **new_ctx(run.run_id, run.plan.cluster_name)
        ))

    def _fail(self, run: ClusterRun, bus: EventBus, reason: str) -> None:
        run.failure = reason
        self._set_status(run, bus, RunStatus.FAILED)

    def kubeconfig_path(self, plan: PlanConfig) -> Path:
        return self.settings.kubeconfig_dir / f"{plan.cluster_name}-config"

    def _preflight(self, run: ClusterRun, driver: ExecutionDriver, bus: EventBus) -> None:
        check = getattr(driver, "preflight", None)
        missing = check() if check is not None else []
        if missing:
            raise ConfigError(f"required tools not found on PATH: {', '.join(missing)}")

        # VMs share this host; remote ssh nodes bring their own capacity
        if run.plan.driver.kind != "vagrant":
            return
        project_dir = run.plan.driver.project_dir or self.settings.project_dir
        try:
            host = probe_host(project_dir)
        except OSError as e:
            log.warning("host check skipped: %s", e)
            return
        for warning in resource_warnings(run.plan, host):
            log.warning("host check: %s", warning)
            bus.emit(HostResourceWarning(message=warning, **new_ctx(run.run_id, run.plan.cluster_name)))

    # ------------------------------------------------------------------
    # bootstrap
    # ------------------------------------------------------------------
    def _open_run(self, plan: Optional[PlanConfig], resume: Optional[str]) -> ClusterRun:
        if resume is None:
            if plan is None:
                raise ConfigError("a plan is required to start a new run")
            ordered, _ = plan_topology(plan)
            return ClusterRun(plan=ordered)

        run = self.store.load(resume)
        if run.status == RunStatus.TORN_DOWN:
            raise ConfigError(f"run {resume} was torn down and cannot be resumed")
        if plan is not None:
            ordered, _ = plan_topology(plan)
            if ordered != run.plan:
                raise ConfigError(f"plan differs from the one recorded for run {resume}")
        return run

    def _probe(self, plan: PlanConfig) -> ReadinessProbe:
        health = plan.health
        if health.probe == "workers-joined":
            expected = health.expected if health.expected is not None else len(plan.nodes_with_role(Role.WORKER))
            return workers_joined(expected)
        expected = health.expected if health.expected is not None else len(plan.nodes)
        return nodes_ready(expected)

    def _health_node(self, plan: PlanConfig) -> NodeDescriptor:
        if plan.health.node:
            return next(n for n in plan.nodes if n.id == plan.health.node)
        return plan.nodes_with_role(Role.CONTROL_PLANE)[0]

    def _export_kubeconfig(self, run: ClusterRun, driver: ExecutionDriver) -> Optional[Path]:
        cp = run.plan.nodes_with_role(Role.CONTROL_PLANE)[0]
        path = self.kubeconfig_path(run.plan)
        try:
            result = driver.execute(cp, EXPORT_KUBECONFIG, 60, check=True)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(result.stdout, encoding="utf-8")
            os.chmod(path, 0o600)
        except (KubestrapError, OSError) as e:
            log.warning("could not export kubeconfig (optional): %s", e)
            return None
        log.info("kubeconfig written to %s", path)
        return path

    def bootstrap(
        self,
        plan: Optional[PlanConfig] = None,
        resume: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> BootstrapReport:
        """
        Start a new run from `plan`, or continue run `resume`.

        Raises ConfigError (nothing executed, nothing persisted for a new run),
        PartialFailure, TimedOut or RunCancelled; the run is left Failed with
        the reason recorded in each of the last three cases.
        """
        cancel = cancel or CancelToken()
        run = self._open_run(plan, resume)
        cp = run.plan.nodes_with_role(Role.CONTROL_PLANE)[0]

        if run.status == RunStatus.READY:
            log.info("run %s is already Ready; nothing to do", run.run_id)
            return BootstrapReport(run.run_id, run.status, control_plane=cp, resumed=True)

        driver = self._make_driver(run.plan)
        bus = self._bus(run)
        try:
            # Planning
            if run.status == RunStatus.NOT_STARTED:
                self._set_status(run, bus, RunStatus.PLANNING, persist=False)
            self._preflight(run, driver, bus)
            graph = build_graph(run.plan, bus=bus, run_ctx=new_ctx(run.run_id, run.plan.cluster_name))

            # Provisioning
            if run.status in (RunStatus.PLANNING, RunStatus.FAILED):
                run.failure = None
                self._set_status(run, bus, RunStatus.PROVISIONING)

            result = None
            if run.status == RunStatus.PROVISIONING:
                engine = StepGraphEngine(driver, self.store, bus, max_concurrency=self.settings.max_concurrency)
                result = engine.run(run, graph, cancel)
                log.info("provisioning finished: %s", result.summary())
                if not result.ok:
                    failure = PartialFailure(run.run_id, result.failed, result.succeeded, result.pending)
                    if cancel.cancelled:
                        reason = f"cancelled: {cancel.reason}\n{failure.describe()}"
                        self._fail(run, bus, reason)
                        raise RunCancelled(f"run {run.run_id} cancelled during provisioning\n{failure.describe()}")
                    self._fail(run, bus, failure.describe())
                    raise failure
                self._set_status(run, bus, RunStatus.VERIFYING)

            # Verifying
            probe = self._probe(run.plan)
            verifier = HealthVerifier(
                driver, self._health_node(run.plan), bus=bus,
                run_id=run.run_id, cluster=run.plan.cluster_name,
            )
            outcome = verifier.await_ready(
                probe,
                poll_interval=run.plan.health.poll_interval_seconds,
                timeout=run.plan.health.timeout_seconds,
                cancel=cancel,
            )
            if outcome == Readiness.CANCELLED:
                self._fail(run, bus, f"cancelled while waiting for {probe.description}")
                raise RunCancelled(f"run {run.run_id} cancelled during health verification")
            if outcome == Readiness.TIMED_OUT:
                reason = f"{probe.description} not reached within {run.plan.health.timeout_seconds}s"
                self._fail(run, bus, reason)
                raise TimedOut(f"run {run.run_id}: {reason}")

            self._set_status(run, bus, RunStatus.READY)
            kubeconfig = self._export_kubeconfig(run, driver) if run.plan.export_kubeconfig else None
            return BootstrapReport(
                run.run_id, run.status,
                control_plane=cp, kubeconfig=kubeconfig, result=result,
                resumed=resume is not None,
            )
        finally:
            counts = run.counts()
            bus.emit(RunSummary(
                status=run.status.value,
                succeeded=counts["Succeeded"],
                failed=counts["Failed"],
                pending=counts["Pending"],
                **new_ctx(run.run_id, run.plan.cluster_name),
            ))
            driver.close()

    # ------------------------------------------------------------------
    # teardown
    # ------------------------------------------------------------------
    def teardown(self, run_id: Optional[str] = None) -> TeardownReport:
        """
        Best-effort reverse of provisioning. Never stops at the first error;
        the run always ends TornDown with the errors recorded on it.
        """
        try:
            run = self.store.load(run_id) if run_id else self.store.latest()
        except NotFound:
            log.info("run %s not found; nothing to tear down", run_id)
            return TeardownReport(run_id, None, noop=True)
        if run is None:
            log.info("no runs recorded; nothing to tear down")
            return TeardownReport(None, None, noop=True)
        if run.status in (RunStatus.NOT_STARTED, RunStatus.TORN_DOWN):
            log.info("run %s is %s; nothing to tear down", run.run_id, run.status.value)
            return TeardownReport(run.run_id, run.status, noop=True)

        driver = self._make_driver(run.plan)
        bus = self._bus(run)
        errors: List[str] = []
        touched = run.touched_nodes()
        # workers first, then control planes
        nodes = sorted(run.plan.nodes, key=lambda n: -role_rank(n.role))

        try:
            for step in run.plan.teardown_steps:
                for node in nodes:
                    if node.role not in step.roles or node.id not in touched:
                        continue
                    try:
                        command = render_command(step, node, run.plan, run.outputs)
                        driver.execute(node, command, step.timeout_seconds, check=True)
                    except KubestrapError as e:
                        errors.append(f"{node.id}/{step.name}: {e}")
                        log.warning("teardown %s/%s failed: %s", node.id, step.name, e)
                        bus.emit(TeardownStepResult(
                            node=node.id, step=step.name, ok=False, error=str(e),
                            **new_ctx(run.run_id, run.plan.cluster_name),
                        ))
                        continue
                    bus.emit(TeardownStepResult(
                        node=node.id, step=step.name, ok=True,
                        **new_ctx(run.run_id, run.plan.cluster_name),
                    ))
        finally:
            driver.close()

        kubeconfig = self.kubeconfig_path(run.plan)
        try:
            if kubeconfig.exists():
                kubeconfig.unlink()
                log.info("removed %s", kubeconfig)
        except OSError as e:
            errors.append(f"kubeconfig {kubeconfig}: {e}")

        run.teardown_errors = errors
        # captured outputs hold the join token
        run.outputs = {}
        self._set_status(run, bus, RunStatus.TORN_DOWN)
        return TeardownReport(run.run_id, run.status, errors=errors)

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------
    def status(self, run_id: Optional[str] = None) -> ClusterRun:
        """Reads the persisted snapshot, never an in-memory view."""
        if run_id:
            return self.store.load(run_id)
        run = self.store.latest()
        if run is None:
            raise NotFound(f"no runs recorded in {self.store.runs_dir}")
        return run
