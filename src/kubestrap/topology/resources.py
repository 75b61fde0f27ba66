# src/kubestrap/topology/resources.py

"""Host capacity check for plans whose nodes run as local VMs."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List

import psutil

from kubestrap.config.models import PlanConfig

MIN_FREE_DISK_GB = 20

_MB = 1024 * 1024
_GB = 1024 * _MB


@dataclass(frozen=True)
class HostResources:
    available_memory_mb: int
    free_disk_gb: float


def probe_host(path: Path) -> HostResources:
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage(str(path))
    return HostResources(
        available_memory_mb=int(memory.available // _MB),
        free_disk_gb=disk.free / _GB,
    )


def required_memory_mb(plan: PlanConfig) -> int:
    return sum(n.resources.memory_mb for n in plan.nodes)


def resource_warnings(plan: PlanConfig, host: HostResources) -> List[str]:
    """Human-readable shortfalls; an empty list means the host looks big enough."""
    warnings: List[str] = []
    needed = required_memory_mb(plan)
    if host.available_memory_mb < needed:
        warnings.append(
            f"available memory ({host.available_memory_mb} MB) is less than the "
            f"{needed} MB the plan's {len(plan.nodes)} node(s) ask for; "
            "the cluster may not start properly or perform poorly"
        )
    if host.free_disk_gb < MIN_FREE_DISK_GB:
        warnings.append(
            f"available disk space ({host.free_disk_gb:.1f} GB) is less than "
            f"recommended ({MIN_FREE_DISK_GB} GB)"
        )
    return warnings
