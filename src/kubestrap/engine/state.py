# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/engine/state.py

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from kubestrap.config.models import PlanConfig
from kubestrap.errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def step_key(node_id: str, step: str) -> str:
    return f"{node_id}/{step}"


class StepStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


_STEP_TRANSITIONS: Dict[StepStatus, Set[StepStatus]] = {
    StepStatus.PENDING: {StepStatus.RUNNING},
    StepStatus.RUNNING: {StepStatus.SUCCEEDED, StepStatus.FAILED},
    StepStatus.FAILED: {StepStatus.PENDING},   # retry
    StepStatus.SUCCEEDED: set(),
}


class RunStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    PLANNING = "Planning"
    PROVISIONING = "Provisioning"
    VERIFYING = "Verifying"
    READY = "Ready"
    FAILED = "Failed"
    TORN_DOWN = "TornDown"


_RUN_TRANSITIONS: Dict[RunStatus, Set[RunStatus]] = {
    RunStatus.NOT_STARTED: {RunStatus.PLANNING},
    RunStatus.PLANNING: {RunStatus.PROVISIONING},
    RunStatus.PROVISIONING: {RunStatus.VERIFYING, RunStatus.FAILED},
    RunStatus.VERIFYING: {RunStatus.READY, RunStatus.FAILED},
    RunStatus.FAILED: {RunStatus.PROVISIONING},   # operator-triggered resume
    RunStatus.READY: set(),
    RunStatus.TORN_DOWN: set(),
}


class StepState(BaseModel):
    node_id: str
    step: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    updated_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None

    @property
    def key(self) -> str:
        return step_key(self.node_id, self.step)

    def transition(self, to: StepStatus, *, error: Optional[str] = None) -> None:
        if to not in _STEP_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"step {self.key}: {self.status.value} -> {to.value} is not allowed"
            )
        self.status = to
        self.updated_at = utcnow()
        if to == StepStatus.RUNNING:
            self.attempts += 1
            self.last_error = None
        elif to == StepStatus.FAILED:
            self.last_error = error or "failed"


class ClusterRun(BaseModel):
    """
    One end-to-end bootstrap attempt.

    The plan is copied in at creation and never changes afterwards; the
    step states are mutated only by the step graph engine.
    """

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    plan: PlanConfig
    status: RunStatus = RunStatus.NOT_STARTED
    steps: Dict[str, StepState] = Field(default_factory=dict)
    outputs: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    failure: Optional[str] = None
    teardown_errors: List[str] = Field(default_factory=list)

    def transition(self, to: RunStatus) -> RunStatus:
        previous = self.status
        allowed = _RUN_TRANSITIONS[previous]
        if to == RunStatus.TORN_DOWN and previous != RunStatus.TORN_DOWN:
            allowed = allowed | {RunStatus.TORN_DOWN}
        if to not in allowed:
            raise InvalidTransition(f"run {self.run_id}: {previous.value} -> {to.value} is not allowed")
        self.status = to
        self.touch()
        return previous

    def touch(self) -> None:
        self.updated_at = utcnow()

    def ensure_steps(self, vertices: Iterable[Tuple[str, str]]) -> None:
        for node_id, step in vertices:
            key = step_key(node_id, step)
            if key not in self.steps:
                self.steps[key] = StepState(node_id=node_id, step=step)

    def state(self, node_id: str, step: str) -> StepState:
        return self.steps[step_key(node_id, step)]

    def with_status(self, status: StepStatus) -> List[StepState]:
        return [s for s in self.steps.values() if s.status == status]

    def touched_nodes(self) -> Set[str]:
        """Nodes on which provisioning ran at least one attempt."""
        return {s.node_id for s in self.steps.values() if s.attempts > 0}

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in StepStatus}
        for st in self.steps.values():
            out[st.status.value] += 1
        return out
