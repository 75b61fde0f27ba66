# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/config/loader.py

import logging
import os
import re
from pathlib import Path

import yaml
from pydantic import ValidationError

from kubestrap.errors import ConfigError
from .models import PlanConfig

log = logging.getLogger("kubestrap")

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Step commands run on the nodes; their ${VAR} belongs to the remote shell
_RAW_KEYS = ("steps", "teardown_steps")


def _expand_env(value):
    """Expand ${VAR} in every string of a parsed YAML tree, except step lists."""
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), value)
    if isinstance(value, dict):
        return {
            k: v if k in _RAW_KEYS else _expand_env(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _find_secrets_file(plan_path: Path) -> Path | None:
    """
    Locate secrets.yaml using this priority:

    1. KUBESTRAP_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the plan
    """
    env = os.environ.get("KUBESTRAP_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("KUBESTRAP_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    p = plan_path.parent / "secrets.yaml"
    if p.is_file():
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references outside step commands."""
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")
    return _expand_env(data)


def parse_plan(data: dict) -> PlanConfig:
    try:
        return PlanConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid plan: {e}") from e


def load_plan(path: str | Path) -> PlanConfig:
    """
    Load and validate a cluster plan.

    SSH credentials are usually kept out of the plan itself, via either
    a ``secrets.yaml`` deep-merged before validation (``KUBESTRAP_SECRETS_FILE``
    or next to the plan) or ``${ENV_VAR}`` placeholders expanded at load time.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"plan file not found: {path}")
    data = _load_yaml(path)

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _deep_merge(data, _load_yaml(secrets_path))
    else:
        log.debug("No secrets.yaml found, proceeding without secrets merge")

    return parse_plan(data)


def dump_plan(plan: PlanConfig, path: str | Path | None = None) -> str:
    """Serialize a plan to YAML; load_plan() on the output yields an equal plan."""
    text = yaml.safe_dump(
        plan.model_dump(mode="json", exclude_none=True),
        sort_keys=False,
        default_flow_style=False,
    )
    if path is not None:
        Path(path).write_text(text)
    return text
