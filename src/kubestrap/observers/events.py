# src/kubestrap/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events of one bootstrap run
    cluster: str      # plan cluster_name

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(run_id: str, cluster: str) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        "run_id": run_id,
        "cluster": cluster,
    }


# ---------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunPhaseChanged(BaseEvent):
    previous: str
    status: str

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    status: str
    succeeded: int
    failed: int
    pending: int

@dataclass(frozen=True)
class HostResourceWarning(BaseEvent):
    message: str


# ---------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PlanComputed(BaseEvent):
    order: List[str]

@dataclass(frozen=True)
class PlanFailed(BaseEvent):
    error: str


# ---------------------------------------------------------------------
# Step lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class GateOpened(BaseEvent):
    wave: int
    role: str
    steps: int

@dataclass(frozen=True)
class StepStarted(BaseEvent):
    node: str
    step: str
    attempt: int

@dataclass(frozen=True)
class StepRetrying(BaseEvent):
    node: str
    step: str
    attempt: int
    delay_s: float
    error: str

@dataclass(frozen=True)
class StepSucceeded(BaseEvent):
    node: str
    step: str
    attempts: int
    duration_ms: int

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    node: str
    step: str
    attempts: int
    error: str


# ---------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class HealthPolled(BaseEvent):
    node: str
    probe: str
    attempt: int
    ready: bool
    detail: Optional[str] = None

@dataclass(frozen=True)
class HealthResult(BaseEvent):
    node: str
    probe: str
    outcome: str      # "Ready" | "TimedOut" | "Cancelled"


# ---------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class TeardownStepResult(BaseEvent):
    node: str
    step: str
    ok: bool
    error: Optional[str] = None
