# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/topology/store.py

from __future__ import annotations

import ipaddress
import logging
from typing import Dict, Iterable, List, Tuple

from kubestrap.config.models import (
    NodeDescriptor,
    PlanConfig,
    ResourceShape,
    Role,
    role_rank,
)
from kubestrap.errors import ConfigError, NotFound

log = logging.getLogger("kubestrap")


def _address_key(address: str) -> str:
    """Normalize so equivalent IP spellings and DNS case differences collide."""
    addr = address.strip()
    try:
        return str(ipaddress.ip_address(addr))
    except ValueError:
        return addr.lower().rstrip(".")


class NodeDescriptorStore:
    """
    Holds the validated topology for one run.

    define() may be called once; afterwards the store is read-only.
    """

    def __init__(self) -> None:
        self._nodes: Tuple[NodeDescriptor, ...] = ()
        self._by_id: Dict[str, NodeDescriptor] = {}
        self._defined = False

    def define(self, nodes: Iterable[NodeDescriptor]) -> Tuple[NodeDescriptor, ...]:
        if self._defined:
            raise ConfigError("topology is already defined for this run")

        nodes = list(nodes)
        errors: List[str] = []

        seen_ids: Dict[str, int] = {}
        seen_addrs: Dict[str, str] = {}
        for n in nodes:
            seen_ids[n.id] = seen_ids.get(n.id, 0) + 1
            key = _address_key(n.address)
            if key in seen_addrs and seen_addrs[key] != n.id:
                errors.append(
                    f"nodes '{seen_addrs[key]}' and '{n.id}' share address {n.address}"
                )
            seen_addrs.setdefault(key, n.id)

        dupes = sorted(i for i, c in seen_ids.items() if c > 1)
        if dupes:
            errors.append(f"duplicate node ids: {', '.join(dupes)}")

        if not any(n.role == Role.CONTROL_PLANE for n in nodes):
            errors.append("plan needs at least one control-plane node")

        if errors:
            raise ConfigError("invalid topology: " + "; ".join(errors))

        # role-grouped, stable within a role
        ordered = sorted(nodes, key=lambda n: role_rank(n.role))
        self._nodes = tuple(ordered)
        self._by_id = {n.id: n for n in ordered}
        self._defined = True
        log.debug("topology defined: %s", [n.id for n in ordered])
        return self._nodes

    @property
    def nodes(self) -> Tuple[NodeDescriptor, ...]:
        return self._nodes

    def resolve(self, node_id: str) -> NodeDescriptor:
        try:
            return self._by_id[node_id]
        except KeyError:
            raise NotFound(f"no node named '{node_id}' in the plan") from None

    def nodes_with_role(self, role: Role) -> List[NodeDescriptor]:
        return [n for n in self._nodes if n.role == role]

    def control_plane(self) -> NodeDescriptor:
        return self.nodes_with_role(Role.CONTROL_PLANE)[0]


def plan_topology(plan: PlanConfig) -> Tuple[PlanConfig, NodeDescriptorStore]:
    """
    Validate a plan's topology and return the plan with its nodes in
    run order, together with the populated store.
    """
    store = NodeDescriptorStore()
    ordered = store.define(plan.nodes)

    if plan.health.node is not None:
        try:
            store.resolve(plan.health.node)
        except NotFound as e:
            raise ConfigError(f"health.node: {e}") from e
    return plan.model_copy(update={"nodes": list(ordered)}), store


def default_topology(
    *,
    workers: int = 2,
    memory_mb: int = 2048,
    cpus: int = 2,
    ip_prefix: str = "192.168.56.",
    first_octet: int = 10,
) -> List[NodeDescriptor]:
    """
    The classic local layout: one control plane at <prefix>10 and
    worker-1..N on the following addresses.
    """
    if workers < 0:
        raise ConfigError("worker count cannot be negative")
    if first_octet + workers > 254:
        raise ConfigError(f"{workers} workers do not fit in {ip_prefix}{first_octet}-254")

    shape = ResourceShape(memory_mb=memory_mb, cpus=cpus)
    nodes = [
        NodeDescriptor(
            id="control-plane",
            role=Role.CONTROL_PLANE,
            address=f"{ip_prefix}{first_octet}",
            resources=shape,
        )
    ]
    for i in range(1, workers + 1):
        nodes.append(
            NodeDescriptor(
                id=f"worker-{i}",
                role=Role.WORKER,
                address=f"{ip_prefix}{first_octet + i}",
                resources=shape,
            )
        )
    return nodes
