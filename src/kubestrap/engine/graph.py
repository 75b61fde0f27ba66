# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import heapq
from collections import deque
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from kubestrap.config.models import NodeDescriptor, PlanConfig, Role, StepDefinition, role_rank
from kubestrap.errors import ConfigError

# Observer bits
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import PlanComputed, PlanFailed, new_ctx

Vertex = Tuple[str, str]  # (node_id, step_name)


class UnknownDependencyError(ConfigError):
    pass


class CyclicDependencyError(ConfigError):
    pass


@dataclass(frozen=True)
class StepGraph:
    """(node, step) vertices of one plan, in a valid execution order."""

    order: Tuple[Vertex, ...]
    deps: Dict[Vertex, FrozenSet[Vertex]]
    nodes: Dict[str, NodeDescriptor]
    definitions: Dict[str, StepDefinition]

    def wave_of(self, v: Vertex) -> int:
        return role_rank(self.nodes[v[0]].role)

    def waves(self) -> List[Tuple[Role, List[Vertex]]]:
        """Vertices grouped by role, earliest role first. Roles without vertices are skipped."""
        grouped: Dict[int, List[Vertex]] = {}
        for v in self.order:
            grouped.setdefault(self.wave_of(v), []).append(v)
        return [(self.nodes[vs[0][0]].role, vs) for _, vs in sorted(grouped.items())]

    def node(self, v: Vertex) -> NodeDescriptor:
        return self.nodes[v[0]]

    def step(self, v: Vertex) -> StepDefinition:
        return self.definitions[v[1]]


def _validate_steps(plan: PlanConfig) -> None:
    names: Set[str] = set()
    for s in plan.steps:
        if s.name in names:
            raise ConfigError(f"Step '{s.name}' is defined more than once")
        names.add(s.name)

    by_name = plan.steps_by_name()
    for s in plan.steps:
        for d in s.depends_on:
            if d not in names:
                raise UnknownDependencyError(
                    f"Step '{s.name}' depends on unknown step '{d}'"
                )
            missing = [r.value for r in s.roles if r not in by_name[d].roles]
            if missing:
                raise UnknownDependencyError(
                    f"Step '{s.name}' depends on '{d}', which does not run on role(s) {', '.join(missing)}"
                )
        for role, d in s.peer_requirements():
            if d not in names:
                raise UnknownDependencyError(
                    f"Step '{s.name}' waits for unknown step '{role.value}/{d}'"
                )
            if role not in by_name[d].roles:
                raise UnknownDependencyError(
                    f"Step '{s.name}' waits for '{role.value}/{d}', but '{d}' does not run on {role.value}"
                )
            later = [r.value for r in s.roles if role_rank(role) > role_rank(r)]
            if later:
                raise ConfigError(
                    f"Step '{s.name}' on {', '.join(later)} waits for '{role.value}/{d}', "
                    f"which only runs after the {', '.join(later)} wave"
                )


def _check_step_cycles(plan: PlanConfig) -> None:
    """
    Kahn's algorithm over step names, independent of how many nodes
    each role has, so a cycle is rejected even if a role is empty.
    """
    indeg: Dict[str, int] = {s.name: 0 for s in plan.steps}
    graph: Dict[str, Set[str]] = {
        s.name: set(s.depends_on) | {d for _, d in s.peer_requirements()}
        for s in plan.steps
    }
    for name, deps in graph.items():
        indeg[name] = len(deps)

    queue = deque(sorted(n for n, deg in indeg.items() if deg == 0))
    seen = 0
    while queue:
        n = queue.popleft()
        seen += 1
        for m, deps in graph.items():
            if n in deps:
                indeg[m] -= 1
                if indeg[m] == 0:
                    queue.append(m)

    if seen != len(plan.steps):
        stuck = sorted(n for n, deg in indeg.items() if deg > 0)
        raise CyclicDependencyError(f"Cyclic dependency detected among steps: {', '.join(stuck)}")


def build_graph(
    plan: PlanConfig,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> StepGraph:
    """
    Stable topological sort of (node, step) pairs.

    Ties are broken by role wave, then node order in the plan, then step
    order in the plan, so the same plan always yields the same order.
    Emits PlanComputed / PlanFailed if an EventBus is provided.
    """
    ctx = run_ctx or new_ctx(run_id="-", cluster=plan.cluster_name)
    try:
        _validate_steps(plan)
        _check_step_cycles(plan)

        nodes = {n.id: n for n in plan.nodes}
        node_index = {n.id: i for i, n in enumerate(plan.nodes)}
        step_index = {s.name: i for i, s in enumerate(plan.steps)}
        definitions = plan.steps_by_name()

        vertices: List[Vertex] = [
            (n.id, s.name) for n in plan.nodes for s in plan.steps if n.role in s.roles
        ]
        deps: Dict[Vertex, Set[Vertex]] = {}
        for v in vertices:
            node, step = nodes[v[0]], definitions[v[1]]
            d: Set[Vertex] = {(node.id, name) for name in step.depends_on}
            for role, name in step.peer_requirements():
                d |= {(peer.id, name) for peer in plan.nodes if peer.role == role}
            d.discard(v)
            deps[v] = d

        def key(v: Vertex):
            return (role_rank(nodes[v[0]].role), node_index[v[0]], step_index[v[1]], v)

        indeg = {v: len(deps[v]) for v in vertices}
        dependents: Dict[Vertex, List[Vertex]] = {v: [] for v in vertices}
        for v, ds in deps.items():
            for d in ds:
                dependents[d].append(v)

        heap = [key(v) for v in vertices if indeg[v] == 0]
        heapq.heapify(heap)
        order: List[Vertex] = []
        while heap:
            v = heapq.heappop(heap)[-1]
            order.append(v)
            for m in dependents[v]:
                indeg[m] -= 1
                if indeg[m] == 0:
                    heapq.heappush(heap, key(m))

        if len(order) != len(vertices):
            raise CyclicDependencyError("Cyclic dependency detected among node steps")

        graph = StepGraph(
            order=tuple(order),
            deps={v: frozenset(ds) for v, ds in deps.items()},
            nodes=nodes,
            definitions=definitions,
        )
        if bus:
            bus.emit(PlanComputed(order=[f"{n}/{s}" for n, s in order], **ctx))
        return graph

    except Exception as e:
        if bus:
            bus.emit(PlanFailed(error=str(e), **ctx))
        raise
