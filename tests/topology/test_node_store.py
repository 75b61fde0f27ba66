import pytest

from kubestrap.config.models import HealthSpec, NodeDescriptor, PlanConfig, Role
from kubestrap.errors import ConfigError, NotFound
from kubestrap.topology.store import NodeDescriptorStore, default_topology, plan_topology


def _n(id, role="worker", address="10.0.0.1"):
    return NodeDescriptor(id=id, role=Role(role), address=address)


def test_define_orders_control_plane_first_and_is_stable():
    store = NodeDescriptorStore()
    nodes = store.define([
        _n("w1", address="10.0.0.11"),
        _n("cp", "control-plane", "10.0.0.10"),
        _n("w2", address="10.0.0.12"),
    ])
    assert [n.id for n in nodes] == ["cp", "w1", "w2"]
    assert isinstance(store.nodes, tuple)
    assert [n.id for n in store.nodes_with_role(Role.WORKER)] == ["w1", "w2"]
    assert store.control_plane().id == "cp"


def test_define_reports_every_problem_at_once():
    with pytest.raises(ConfigError) as exc:
        NodeDescriptorStore().define([
            _n("w1", address="10.0.0.11"),
            _n("w1", address="10.0.0.12"),
            _n("w2", address="10.0.0.11"),
        ])
    msg = str(exc.value)
    assert "duplicate node ids: w1" in msg
    assert "share address" in msg
    assert "control-plane" in msg


def test_equivalent_addresses_collide():
    with pytest.raises(ConfigError, match="share address"):
        NodeDescriptorStore().define([
            _n("cp", "control-plane", "CP.lab.local"),
            _n("w1", address="cp.lab.local."),
        ])
    with pytest.raises(ConfigError, match="share address"):
        NodeDescriptorStore().define([
            _n("cp", "control-plane", "fd00::1"),
            _n("w1", address="fd00:0:0::1"),
        ])


def test_zero_workers_is_valid():
    nodes = NodeDescriptorStore().define([_n("cp", "control-plane", "10.0.0.10")])
    assert [n.id for n in nodes] == ["cp"]


def test_store_is_read_only_after_define():
    store = NodeDescriptorStore()
    store.define([_n("cp", "control-plane", "10.0.0.10")])
    with pytest.raises(ConfigError, match="already defined"):
        store.define([_n("cp2", "control-plane", "10.0.0.20")])


def test_resolve():
    store = NodeDescriptorStore()
    store.define([_n("cp", "control-plane", "10.0.0.10")])
    assert store.resolve("cp").address == "10.0.0.10"
    with pytest.raises(NotFound):
        store.resolve("ghost")


def test_plan_topology_reorders_nodes_and_checks_health_node():
    plan = PlanConfig(nodes=[_n("w1", address="10.0.0.11"), _n("cp", "control-plane", "10.0.0.10")])
    ordered, store = plan_topology(plan)
    assert [n.id for n in ordered.nodes] == ["cp", "w1"]
    assert store.resolve("w1").role == Role.WORKER

    bad = plan.model_copy(update={"health": HealthSpec(node="ghost")})
    with pytest.raises(ConfigError, match="health.node"):
        plan_topology(bad)


def test_default_topology_matches_classic_layout():
    nodes = default_topology()
    assert [(n.id, n.role, n.address) for n in nodes] == [
        ("control-plane", Role.CONTROL_PLANE, "192.168.56.10"),
        ("worker-1", Role.WORKER, "192.168.56.11"),
        ("worker-2", Role.WORKER, "192.168.56.12"),
    ]
    assert nodes[0].resources.memory_mb == 2048

    custom = default_topology(workers=0, memory_mb=4096, cpus=4, ip_prefix="10.9.9.")
    assert [n.address for n in custom] == ["10.9.9.10"]
    assert custom[0].resources.cpus == 4


def test_default_topology_rejects_bad_counts():
    with pytest.raises(ConfigError):
        default_topology(workers=-1)
    with pytest.raises(ConfigError):
        default_topology(workers=300)
