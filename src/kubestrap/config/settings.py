# src/kubestrap/config/settings.py

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from kubestrap.errors import ConfigError


@dataclass(frozen=True)
class Settings:
    state_dir: Path
    kubeconfig_dir: Path
    project_dir: Path
    max_concurrency: Optional[int] = None   # overrides the plan when set

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"


def _positive_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name}={raw!r} is not an integer") from None
    if value < 1:
        raise ConfigError(f"{name} must be at least 1, got {value}")
    return value


def load_settings() -> Settings:
    # sensible defaults for a laptop; override via env
    return Settings(
        state_dir=Path(os.getenv("KUBESTRAP_STATE_DIR", str(Path.home() / ".kubestrap"))),
        kubeconfig_dir=Path(os.getenv("KUBESTRAP_KUBECONFIG_DIR", str(Path.home() / ".kube"))),
        project_dir=Path(os.getenv("KUBESTRAP_PROJECT_DIR", os.getcwd())),
        max_concurrency=_positive_int("KUBESTRAP_MAX_CONCURRENCY"),
    )
