# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/execution/driver.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from kubestrap.config.models import NodeDescriptor
from kubestrap.errors import CommandError


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ExecutionDriver(Protocol):
    """
    Runs a shell command against one node.

    Implementations must be safe to call concurrently for different nodes,
    raise TransportError when the node cannot be reached, and raise
    CommandError for a non-zero exit only when check=True.
    """

    def execute(
        self,
        node: NodeDescriptor,
        command: str,
        timeout: float,
        *,
        check: bool = False,
    ) -> CommandResult: ...

    def reset(self, node: NodeDescriptor) -> None:
        """Forget any cached connection to node."""
        ...

    def close(self) -> None: ...


def checked(node: NodeDescriptor, command: str, result: CommandResult, check: bool) -> CommandResult:
    if check and not result.ok:
        raise CommandError(node.id, command, result)
    return result
