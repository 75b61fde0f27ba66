# src/kubestrap/execution/runner.py

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

log = logging.getLogger("kubestrap")


@dataclass
class CommandRunner:
    """Local subprocess execution with command/output logging."""

    logger: logging.Logger = log
    label: Optional[str] = None

    def run(
        self,
        cmd: Sequence[str],
        *,
        timeout: Optional[float] = None,
        cwd: str | Path | None = None,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess:
        label = self.label or "cmd"
        cmd_str = " ".join(map(str, cmd))

        self.logger.debug("[%s] $ %s", label, cmd_str)

        start = time.time()
        # FileNotFoundError / TimeoutExpired propagate; callers map them
        result = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            cwd=str(cwd) if cwd else None,
            env=env,
        )
        duration = time.time() - start

        if result.stdout:
            self.logger.debug("[%s][stdout]\n%s", label, result.stdout.rstrip())
        if result.stderr:
            self.logger.debug("[%s][stderr]\n%s", label, result.stderr.rstrip())
        self.logger.debug("[%s][exit %s] (%.2fs)", label, result.returncode, duration)

        return result
