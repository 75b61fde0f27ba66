# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/execution/ssh.py

from __future__ import annotations

import logging
import shlex
import socket
import threading
from typing import Dict, List, Optional

import paramiko

from kubestrap.config.models import NodeDescriptor, SshSpec
from kubestrap.errors import ExecutionTimeout, TransportError
from .driver import CommandResult, checked

log = logging.getLogger("kubestrap")


def _load_pkey(key_path: str) -> Optional[paramiko.PKey]:
    for key_cls in (
        paramiko.Ed25519Key,
        paramiko.RSAKey,
        paramiko.ECDSAKey,
    ):
        try:
            return key_cls.from_private_key_file(key_path)
        except paramiko.SSHException:
            continue
    return None


def open_ssh(node: NodeDescriptor, spec: SshSpec) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    pkey = _load_pkey(str(spec.key_path.expanduser())) if spec.key_path else None

    client.connect(
        hostname=node.address,
        port=spec.port,
        username=spec.username,
        password=spec.password if not pkey else None,
        pkey=pkey,
        timeout=spec.connect_timeout,
        allow_agent=True,
        look_for_keys=pkey is None and spec.password is None,
    )
    return client


class SshDriver:
    """
    Runs commands over SSH with one cached paramiko client per node.

    Clients are opened on first use. A transport failure drops the cached
    client so the next attempt reconnects.
    """

    def __init__(self, spec: SshSpec):
        self.spec = spec
        self._clients: Dict[str, paramiko.SSHClient] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def preflight(self) -> List[str]:
        return []

    def _node_lock(self, node_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(node_id, threading.Lock())

    def _client(self, node: NodeDescriptor) -> paramiko.SSHClient:
        with self._node_lock(node.id):
            client = self._clients.get(node.id)
            if client is not None:
                return client
            log.debug("[%s] connecting to %s@%s:%d", node.id, self.spec.username, node.address, self.spec.port)
            try:
                client = open_ssh(node, self.spec)
            except (paramiko.SSHException, OSError) as e:
                raise TransportError(node.id, f"{type(e).__name__}: {e}") from e
            self._clients[node.id] = client
            return client

    def execute(
        self,
        node: NodeDescriptor,
        command: str,
        timeout: float,
        *,
        check: bool = False,
    ) -> CommandResult:
        client = self._client(node)
        try:
            _, stdout, stderr = client.exec_command(f"bash -lc {shlex.quote(command)}", timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            rc = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            self.reset(node)
            raise ExecutionTimeout(node.id, timeout) from e
        except (paramiko.SSHException, EOFError, OSError) as e:
            self.reset(node)
            raise TransportError(node.id, f"{type(e).__name__}: {e}") from e

        return checked(node, command, CommandResult(rc, out, err), check)

    def reset(self, node: NodeDescriptor) -> None:
        with self._node_lock(node.id):
            client = self._clients.pop(node.id, None)
        if client is not None:
            client.close()

    def close(self) -> None:
        with self._guard:
            clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            client.close()
