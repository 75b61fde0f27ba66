# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/kubestrap/logging/log.py

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "kubestrap",
    command: str = "run",
    verbose: bool = False,
) -> tuple[logging.Logger, Path]:
    """
    Initializes:
      - a per-invocation log file with the full DEBUG trace (every command,
        its stdout/stderr and exit code)
      - a console handler at INFO, DEBUG when --verbose is passed
    """
    if base_dir is None:
        base_dir = Path.home() / ".kubestrap" / "logs"
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{command}-{ts}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.propagate = False

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(threadName)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # File = FULL TRACE
    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(logging.Formatter("%(levelname)-7s %(message)s"))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info(f"=== kubestrap {command} started ===")
    logger.info(f"log_file={log_path}")

    return logger, log_path
