# src/kubestrap/persistence/store.py

"""On-disk ClusterRun snapshots, one JSON document per run."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from kubestrap.engine.state import ClusterRun
from kubestrap.errors import ConfigError, NotFound

log = logging.getLogger("kubestrap")


class RunStore:
    """
    Persists ClusterRun snapshots under <runs_dir>/<run_id>.json.

    Writes go to a temp file in the same directory and are moved into place
    with os.replace, so a reader in another process sees either the previous
    snapshot or the new one, never a partial file.
    """

    def __init__(self, runs_dir: Path) -> None:
        self.runs_dir = Path(runs_dir)
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or run_id.startswith("."):
            raise NotFound(f"invalid run id '{run_id}'")
        return self.runs_dir / f"{run_id}.json"

    def save(self, run: ClusterRun) -> Path:
        path = self._path(run.run_id)
        payload = run.model_dump_json(indent=2)
        with self._lock:
            fd, tmp = tempfile.mkstemp(dir=self.runs_dir, prefix=f".{run.run_id}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        return path

    def exists(self, run_id: str) -> bool:
        return self._path(run_id).is_file()

    def load(self, run_id: str) -> ClusterRun:
        path = self._path(run_id)
        if not path.is_file():
            raise NotFound(f"run '{run_id}' not found in {self.runs_dir}")
        try:
            return ClusterRun.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise ConfigError(f"run file {path} is corrupt: {e}") from e

    def run_ids(self) -> List[str]:
        """Run ids, most recently written first."""
        files = sorted(
            self.runs_dir.glob("*.json"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        return [p.stem for p in files]

    def latest(self) -> Optional[ClusterRun]:
        ids = self.run_ids()
        return self.load(ids[0]) if ids else None
