# src/kubestrap/execution/factory.py

from __future__ import annotations

from pathlib import Path

from kubestrap.config.models import DriverSpec
from .driver import ExecutionDriver
from .ssh import SshDriver
from .vagrant import VagrantDriver


def build_driver(spec: DriverSpec, *, project_dir: Path) -> ExecutionDriver:
    if spec.kind == "ssh":
        return SshDriver(spec.ssh)
    return VagrantDriver(spec.project_dir or project_dir)
