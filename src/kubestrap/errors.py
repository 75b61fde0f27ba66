# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/errors.py

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Sequence, Tuple

if TYPE_CHECKING:
    from kubestrap.execution.driver import CommandResult


StepKey = Tuple[str, str]  # (node_id, step_name)


class KubestrapError(RuntimeError):
    """Base class; exit_code is what the CLI returns for this failure."""

    exit_code: int = 1


class ConfigError(KubestrapError):
    """Invalid plan or topology. Fatal, never retried."""

    exit_code = 2


class NotFound(KubestrapError):
    exit_code = 1


class InvalidTransition(KubestrapError):
    """A status change the state machine does not allow."""


class TransportError(KubestrapError):
    """The execution backend could not be reached or stalled."""

    def __init__(self, node_id: str, message: str):
        super().__init__(f"[{node_id}] transport error: {message}")
        self.node_id = node_id


class ExecutionTimeout(TransportError):
    def __init__(self, node_id: str, timeout: float):
        super().__init__(node_id, f"command did not finish within {timeout}s")
        self.timeout = timeout


class CommandError(KubestrapError):
    """The command ran on the node but exited non-zero."""

    def __init__(self, node_id: str, command: str, result: "CommandResult"):
        detail = (result.stderr or result.stdout or "").strip().splitlines()
        tail = detail[-1] if detail else "no output"
        super().__init__(
            f"[{node_id}] command exited {result.exit_code}: {tail}"
        )
        self.node_id = node_id
        self.command = command
        self.result = result


class TimedOut(KubestrapError):
    """Health check did not converge within its budget."""

    exit_code = 4


class RunCancelled(KubestrapError):
    exit_code = 130


class PartialFailure(KubestrapError):
    """
    Aggregate outcome of a provisioning attempt that did not fully succeed.

    failed: (node, step) -> last error
    succeeded / pending: (node, step) pairs
    """

    exit_code = 3

    def __init__(
        self,
        run_id: str,
        failed: Dict[StepKey, str],
        succeeded: Sequence[StepKey],
        pending: Sequence[StepKey] = (),
    ):
        self.run_id = run_id
        self.failed = dict(failed)
        self.succeeded = list(succeeded)
        self.pending = list(pending)
        super().__init__(self.describe())

    def describe(self) -> str:
        lines: List[str] = [
            f"run {self.run_id}: {len(self.failed)} failed, "
            f"{len(self.pending)} not started, {len(self.succeeded)} succeeded"
        ]
        for (node, step), err in sorted(self.failed.items()):
            lines.append(f"  FAILED  {node}/{step}: {err}")
        for node, step in self.pending:
            lines.append(f"  PENDING {node}/{step}")
        return "\n".join(lines)


class TeardownIncomplete(KubestrapError):
    exit_code = 5

    def __init__(self, run_id: str, errors: List[str]):
        self.run_id = run_id
        self.errors = list(errors)
        joined = "\n".join(f"  {e}" for e in self.errors)
        super().__init__(f"teardown of run {run_id} finished with errors:\n{joined}")

