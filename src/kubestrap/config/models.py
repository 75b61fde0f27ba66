# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/config/models.py

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Role(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


# Waves run in this order; a later role never starts before the earlier one succeeded.
ROLE_ORDER: List[Role] = [Role.CONTROL_PLANE, Role.WORKER]


def role_rank(role: Role) -> int:
    return ROLE_ORDER.index(role)


class ResourceShape(BaseModel):
    model_config = ConfigDict(frozen=True)

    memory_mb: int = Field(2048, gt=0)
    cpus: int = Field(2, gt=0)


class NodeDescriptor(BaseModel):
    """A single machine of the target cluster. Immutable once planned."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
    role: Role
    address: str = Field(..., min_length=1)
    resources: ResourceShape = ResourceShape()


class StepDefinition(BaseModel):
    """
    One unit of provisioning work.

    depends_on: steps on the same node that must succeed first
    after:      peer requirements "role/step"; the step must have succeeded
                on every node of that role
    capture:    store the command's stdout under this name so later
                steps can reference it as {{ outputs.name }}
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
    roles: List[Role]
    command: str
    depends_on: List[str] = Field(default_factory=list)
    after: List[str] = Field(default_factory=list)
    idempotent: bool = True
    timeout_seconds: float = Field(600, gt=0)
    capture: Optional[str] = None

    @field_validator("roles")
    @classmethod
    def _roles_not_empty(cls, v: List[Role]) -> List[Role]:
        if not v:
            raise ValueError("a step must apply to at least one role")
        return v

    @field_validator("after")
    @classmethod
    def _peer_format(cls, v: List[str]) -> List[str]:
        for item in v:
            role, sep, step = item.partition("/")
            if not sep or not step:
                raise ValueError(f"peer requirement '{item}' must look like 'role/step'")
            Role(role)
        return v

    def peer_requirements(self) -> List[tuple]:
        return [(Role(r), s) for r, s in (p.split("/", 1) for p in self.after)]


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(3, ge=1)
    initial_delay_seconds: float = Field(2.0, ge=0)
    multiplier: float = Field(2.0, ge=1)
    max_delay_seconds: float = Field(60.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based)."""
        delay = self.initial_delay_seconds * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


class HealthSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    probe: Literal["nodes-ready", "workers-joined"] = "nodes-ready"
    expected: Optional[int] = Field(None, ge=0)   # defaults to the plan's node/worker count
    node: Optional[str] = None                    # defaults to the first control-plane node
    poll_interval_seconds: float = Field(10.0, gt=0)
    timeout_seconds: float = Field(300.0, gt=0)


class SshSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str = "vagrant"
    port: int = 22
    key_path: Optional[Path] = None
    password: Optional[str] = None
    connect_timeout: float = 20.0


class DriverSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["vagrant", "ssh"] = "vagrant"
    project_dir: Optional[Path] = None   # Vagrantfile location
    ssh: SshSpec = SshSpec()


class PlanConfig(BaseModel):
    """Desired topology plus everything needed to drive one bootstrap run."""

    model_config = ConfigDict(frozen=True)

    cluster_name: str = "local-k8s"
    kubernetes_version: str = "1.30"
    pod_cidr: str = "10.244.0.0/16"
    cni_manifest: str = "https://github.com/flannel-io/flannel/releases/latest/download/kube-flannel.yml"
    nodes: List[NodeDescriptor]
    steps: List[StepDefinition] = Field(default_factory=list)
    teardown_steps: List[StepDefinition] = Field(default_factory=list)
    driver: DriverSpec = DriverSpec()
    retry: RetryPolicy = RetryPolicy()
    health: HealthSpec = HealthSpec()
    max_concurrency: int = Field(4, ge=1)
    export_kubeconfig: bool = True

    @model_validator(mode="after")
    def _default_catalog(self) -> "PlanConfig":
        from .catalog import default_steps, default_teardown_steps

        if not self.steps:
            object.__setattr__(self, "steps", default_steps())
        if not self.teardown_steps:
            object.__setattr__(self, "teardown_steps", default_teardown_steps())
        return self

    # Helper methods
    def steps_by_name(self) -> Dict[str, StepDefinition]:
        return {s.name: s for s in self.steps}

    def nodes_with_role(self, role: Role) -> List[NodeDescriptor]:
        return [n for n in self.nodes if n.role == role]
