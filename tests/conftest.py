import json
import threading
import time
from collections import defaultdict

import pytest

import kubestrap.orchestrator.facade as facade_mod
from kubestrap.config.models import (
    HealthSpec,
    NodeDescriptor,
    PlanConfig,
    RetryPolicy,
    Role,
    StepDefinition,
)
from kubestrap.config.settings import Settings
from kubestrap.execution.driver import CommandResult, checked
from kubestrap.health.probes import CONTROL_PLANE_LABEL, GET_NODES
from kubestrap.topology.resources import HostResources


class FakeDriver:
    """
    In-memory ExecutionDriver.

    script(node_id, command, *outcomes) queues CommandResults or exceptions
    for a command ("*" matches any node); unscripted commands succeed with
    stdout from `stdout[command]`. `delays[command]` sleeps before answering.
    """

    def __init__(self):
        self.calls = []
        self.stdout = {}
        self.delays = {}
        self.resets = []
        self.closed = False
        self._scripts = defaultdict(list)
        self._lock = threading.Lock()
        self._running = defaultdict(int)
        self.max_running = 0
        self.max_running_per_node = 0

    def script(self, node_id, command, *outcomes):
        self._scripts[(node_id, command)].extend(outcomes)

    def commands_for(self, node_id):
        return [c for n, c in self.calls if n == node_id]

    def execute(self, node, command, timeout, *, check=False):
        with self._lock:
            self.calls.append((node.id, command))
            self._running[node.id] += 1
            self.max_running = max(self.max_running, sum(self._running.values()))
            self.max_running_per_node = max(self.max_running_per_node, self._running[node.id])
            queue = self._scripts.get((node.id, command)) or self._scripts.get(("*", command))
            outcome = queue.pop(0) if queue else None
        try:
            time.sleep(self.delays.get(command, 0))
            if outcome is None:
                outcome = CommandResult(0, self.stdout.get(command, ""), "")
            if isinstance(outcome, BaseException):
                raise outcome
            return checked(node, command, outcome, check)
        finally:
            with self._lock:
                self._running[node.id] -= 1

    def reset(self, node):
        self.resets.append(node.id)

    def close(self):
        self.closed = True


def kubectl_nodes(control_planes=("cp",), workers=(), not_ready=()):
    """`kubectl get nodes -o json` output for the given node names."""
    items = []
    for name in list(control_planes) + list(workers):
        labels = {CONTROL_PLANE_LABEL: ""} if name in control_planes else {}
        status = "False" if name in not_ready else "True"
        items.append({
            "metadata": {"name": name, "labels": labels},
            "status": {"conditions": [{"type": "Ready", "status": status}]},
        })
    return json.dumps({"items": items})


# Three control-plane steps, two worker steps; join uses the captured token.
TEST_STEPS = [
    StepDefinition(name="init", roles=[Role.CONTROL_PLANE], command="init {{ node.id }}"),
    StepDefinition(name="cni", roles=[Role.CONTROL_PLANE], command="cni", depends_on=["init"]),
    StepDefinition(
        name="publish", roles=[Role.CONTROL_PLANE], command="publish",
        depends_on=["cni"], capture="token",
    ),
    StepDefinition(name="prep", roles=[Role.WORKER], command="prep {{ node.id }}"),
    StepDefinition(
        name="join", roles=[Role.WORKER], command="{{ outputs.token }} --node-name={{ node.id }}",
        depends_on=["prep"], after=["control-plane/publish"], idempotent=False,
    ),
]

TEST_TEARDOWN = [
    StepDefinition(name="drain", roles=[Role.CONTROL_PLANE], command="drain {{ workers }}"),
    StepDefinition(name="reset", roles=[Role.CONTROL_PLANE, Role.WORKER], command="reset {{ node.id }}"),
]


def build_plan(workers=("w1", "w2"), steps=None, **overrides):
    nodes = [NodeDescriptor(id="cp", role=Role.CONTROL_PLANE, address="10.0.0.10")]
    for i, w in enumerate(workers, start=11):
        nodes.append(NodeDescriptor(id=w, role=Role.WORKER, address=f"10.0.0.{i}"))
    fields = dict(
        cluster_name="test",
        nodes=nodes,
        steps=steps if steps is not None else TEST_STEPS,
        teardown_steps=TEST_TEARDOWN,
        retry=RetryPolicy(max_attempts=3, initial_delay_seconds=0),
        health=HealthSpec(probe="workers-joined", poll_interval_seconds=0.01, timeout_seconds=0.5),
    )
    fields.update(overrides)
    return PlanConfig(**fields)


@pytest.fixture
def make_plan():
    return build_plan


@pytest.fixture
def nodes_json():
    return kubectl_nodes


@pytest.fixture
def fake_driver():
    """FakeDriver primed so the test plan bootstraps cleanly."""
    d = FakeDriver()
    d.stdout["publish"] = "kubeadm join 10.0.0.10:6443 --token abc\n"
    d.stdout[GET_NODES] = kubectl_nodes(("cp",), ("w1", "w2"))
    return d


@pytest.fixture
def settings(tmp_path):
    return Settings(
        state_dir=tmp_path / "state",
        kubeconfig_dir=tmp_path / "kube",
        project_dir=tmp_path,
    )


@pytest.fixture(autouse=True)
def roomy_host(monkeypatch):
    """Pins the orchestrator's host check to a machine with plenty of room."""
    host = {"value": HostResources(available_memory_mb=64_000, free_disk_gb=500.0)}
    monkeypatch.setattr(facade_mod, "probe_host", lambda path: host["value"])
    return host
