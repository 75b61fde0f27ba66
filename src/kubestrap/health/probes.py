# src/kubestrap/health/probes.py

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Callable, List, Optional

from kubestrap.execution.driver import CommandResult

CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"
GET_NODES = "kubectl get nodes -o json"


@dataclass(frozen=True)
class ReadinessProbe:
    """A read-only command plus a predicate over its result."""

    description: str
    command: str
    evaluate: Callable[[CommandResult], bool]


def _items(result: CommandResult) -> Optional[List[dict]]:
    """Node items of a `kubectl get nodes -o json` result; None when kubectl failed."""
    if not result.ok:
        return None
    try:
        doc = json.loads(result.stdout)
    except json.JSONDecodeError:
        return None
    items = doc.get("items") if isinstance(doc, dict) else None
    return items if isinstance(items, list) else None


def _is_ready(item: dict) -> bool:
    conditions = item.get("status", {}).get("conditions", []) or []
    return any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)


def _is_control_plane(item: dict) -> bool:
    labels = item.get("metadata", {}).get("labels", {}) or {}
    return CONTROL_PLANE_LABEL in labels


def ready_nodes(result: CommandResult) -> List[str]:
    return [i.get("metadata", {}).get("name", "?") for i in (_items(result) or []) if _is_ready(i)]


def nodes_ready(expected: int) -> ReadinessProbe:
    def evaluate(result: CommandResult) -> bool:
        items = _items(result)
        if items is None:
            return False
        return sum(1 for i in items if _is_ready(i)) >= expected

    return ReadinessProbe(f"{expected} node(s) Ready", GET_NODES, evaluate)


def workers_joined(expected: int) -> ReadinessProbe:
    def evaluate(result: CommandResult) -> bool:
        items = _items(result)
        if items is None:
            return False
        workers = [i for i in items if _is_ready(i) and not _is_control_plane(i)]
        return len(workers) >= expected

    return ReadinessProbe(f"{expected} worker(s) joined", GET_NODES, evaluate)
