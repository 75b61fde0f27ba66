# src/kubestrap/execution/vagrant.py

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from kubestrap.config.models import NodeDescriptor
from kubestrap.errors import ExecutionTimeout, TransportError
from .driver import CommandResult, checked
from .runner import CommandRunner

log = logging.getLogger("kubestrap")

# ssh reserves 255 for its own failures (connection refused, auth, ...)
SSH_TRANSPORT_EXIT = 255


class VagrantDriver:
    """
    Executes commands on Vagrant-managed VMs.

    The first call for a node runs `vagrant ssh-config <node>` once and
    caches the result in a private ssh config file; every command after
    that is a plain `ssh -F <file> <node> <cmd>`, which avoids paying
    vagrant's startup cost per step.
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        runner: Optional[CommandRunner] = None,
        config_timeout: float = 60.0,
    ):
        self.project_dir = Path(project_dir)
        self.runner = runner or CommandRunner(label="vagrant")
        self.config_timeout = config_timeout
        self._cache_dir: Optional[Path] = None
        self._configs: Dict[str, Path] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def preflight(self) -> List[str]:
        """Names of required host tools that are missing."""
        return [tool for tool in ("vagrant", "ssh") if shutil.which(tool) is None]

    # ------------------ connection cache ------------------

    def _node_lock(self, node_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(node_id, threading.Lock())

    def _ssh_config(self, node: NodeDescriptor) -> Path:
        with self._node_lock(node.id):
            cached = self._configs.get(node.id)
            if cached is not None:
                return cached

            argv = ["vagrant", "ssh-config", node.id]
            try:
                cp = self.runner.run(argv, timeout=self.config_timeout, cwd=self.project_dir)
            except FileNotFoundError as e:
                raise TransportError(node.id, "vagrant executable not found on PATH") from e
            except subprocess.TimeoutExpired as e:
                raise ExecutionTimeout(node.id, self.config_timeout) from e

            if cp.returncode != 0:
                # machine not created / not running: nothing to connect to yet
                reason = (cp.stderr or cp.stdout or "").strip().splitlines()
                raise TransportError(
                    node.id,
                    f"vagrant ssh-config failed: {reason[-1] if reason else cp.returncode}",
                )

            with self._guard:
                if self._cache_dir is None:
                    self._cache_dir = Path(tempfile.mkdtemp(prefix="kubestrap-ssh-"))
            path = self._cache_dir / f"{node.id}.config"
            path.write_text(cp.stdout)
            self._configs[node.id] = path
            log.debug("[%s] cached ssh config at %s", node.id, path)
            return path

    # ------------------ ExecutionDriver ------------------

    def execute(
        self,
        node: NodeDescriptor,
        command: str,
        timeout: float,
        *,
        check: bool = False,
    ) -> CommandResult:
        config = self._ssh_config(node)
        argv = [
            "ssh", "-F", str(config),
            "-o", "BatchMode=yes",
            "-o", "LogLevel=ERROR",
            node.id,
            command,
        ]
        try:
            cp = self.runner.run(argv, timeout=timeout, cwd=self.project_dir)
        except FileNotFoundError as e:
            raise TransportError(node.id, "ssh executable not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise ExecutionTimeout(node.id, timeout) from e

        if cp.returncode == SSH_TRANSPORT_EXIT:
            self.reset(node)
            raise TransportError(node.id, (cp.stderr or "ssh connection failed").strip())

        return checked(node, command, CommandResult(cp.returncode, cp.stdout, cp.stderr), check)

    def reset(self, node: NodeDescriptor) -> None:
        with self._node_lock(node.id):
            path = self._configs.pop(node.id, None)
        if path is not None:
            path.unlink(missing_ok=True)

    def close(self) -> None:
        with self._guard:
            self._configs.clear()
            cache, self._cache_dir = self._cache_dir, None
        if cache is not None:
            shutil.rmtree(cache, ignore_errors=True)
