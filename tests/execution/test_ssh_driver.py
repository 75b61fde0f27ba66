import socket
import types
from pathlib import Path

import paramiko
import pytest

import kubestrap.execution.ssh as ssh_mod
from kubestrap.config.models import NodeDescriptor, Role, SshSpec
from kubestrap.errors import CommandError, ExecutionTimeout, TransportError
from kubestrap.execution.ssh import SshDriver, open_ssh

NODE = NodeDescriptor(id="cp", role=Role.CONTROL_PLANE, address="10.0.0.10")

# ----------------- Fakes for Paramiko -----------------

class _FakeChannel:
    def __init__(self, rc=0): self._rc = rc
    def recv_exit_status(self): return self._rc

class _Buf:
    def __init__(self, s="", exc=None):
        self._s = s
        self._exc = exc
    def read(self):
        if self._exc:
            raise self._exc
        return self._s.encode()

class FakeSSHClient:
    def __init__(self, log, responses=None, exc=None):
        self.log = log
        self._responses = responses or {}
        self._exc = exc
        self.closed = False
    def set_missing_host_key_policy(self, policy): pass
    def connect(self, **kw):
        self.log.append(("connect", kw))
    def exec_command(self, cmd, timeout=None):
        self.log.append(("exec", cmd, timeout))
        out = self._responses.get(cmd, ("", "", 0))
        stdout = _Buf(out[0], exc=self._exc)
        stdout.channel = _FakeChannel(out[2])
        return types.SimpleNamespace(), stdout, _Buf(out[1])
    def close(self):
        self.closed = True
        self.log.append(("close",))


def _driver(monkeypatch, client_factory):
    opened = []

    def fake_open(node, spec):
        c = client_factory()
        opened.append(c)
        return c

    monkeypatch.setattr(ssh_mod, "open_ssh", fake_open)
    return SshDriver(SshSpec()), opened

# ----------------- Tests -----------------

def test_execute_wraps_in_login_shell_and_caches_client(monkeypatch):
    log = []
    responses = {"bash -lc 'echo hi'": ("hi\n", "", 0)}
    drv, opened = _driver(monkeypatch, lambda: FakeSSHClient(log, responses))

    res = drv.execute(NODE, "echo hi", timeout=5)
    drv.execute(NODE, "true", timeout=5)

    assert res.exit_code == 0 and res.stdout == "hi\n"
    assert len(opened) == 1
    assert ("exec", "bash -lc 'echo hi'", 5) in log


def test_non_zero_exit_only_raises_when_checked(monkeypatch):
    log = []
    responses = {"bash -lc false": ("", "nope\n", 1)}
    drv, _ = _driver(monkeypatch, lambda: FakeSSHClient(log, responses))

    assert drv.execute(NODE, "false", timeout=5).exit_code == 1
    with pytest.raises(CommandError) as exc:
        drv.execute(NODE, "false", timeout=5, check=True)
    assert exc.value.result.stderr == "nope\n"
    assert "nope" in str(exc.value)


def test_timeout_drops_client(monkeypatch):
    log = []
    drv, opened = _driver(monkeypatch, lambda: FakeSSHClient(log, exc=socket.timeout()))

    with pytest.raises(ExecutionTimeout) as exc:
        drv.execute(NODE, "sleep 100", timeout=1)
    assert isinstance(exc.value, TransportError)
    assert opened[0].closed

    with pytest.raises(ExecutionTimeout):
        drv.execute(NODE, "sleep 100", timeout=1)
    assert len(opened) == 2


def test_broken_session_is_transport_error(monkeypatch):
    drv, opened = _driver(monkeypatch, lambda: FakeSSHClient([], exc=EOFError()))
    with pytest.raises(TransportError, match="EOFError"):
        drv.execute(NODE, "uptime", timeout=5)
    assert opened[0].closed


def test_connect_failure_is_transport_error(monkeypatch):
    def refuse(node, spec):
        raise paramiko.ssh_exception.NoValidConnectionsError({("10.0.0.10", 22): OSError("refused")})

    monkeypatch.setattr(ssh_mod, "open_ssh", refuse)
    with pytest.raises(TransportError, match=r"\[cp\] transport error"):
        SshDriver(SshSpec()).execute(NODE, "uptime", timeout=5)


def test_close_closes_every_client(monkeypatch):
    log = []
    drv, opened = _driver(monkeypatch, lambda: FakeSSHClient(log))
    other = NodeDescriptor(id="w1", role=Role.WORKER, address="10.0.0.11")
    drv.execute(NODE, "true", timeout=5)
    drv.execute(other, "true", timeout=5)
    drv.close()
    assert [c.closed for c in opened] == [True, True]


def test_open_ssh_uses_password_without_key(monkeypatch):
    log = []
    monkeypatch.setattr(ssh_mod.paramiko, "SSHClient", lambda: FakeSSHClient(log))
    open_ssh(NODE, SshSpec(username="ubuntu", password="pw", port=2222))
    _, kw = log[0]
    assert kw["hostname"] == "10.0.0.10"
    assert kw["port"] == 2222
    assert kw["username"] == "ubuntu"
    assert kw["password"] == "pw"
    assert kw["pkey"] is None
    assert kw["look_for_keys"] is False


def test_open_ssh_prefers_key_file(monkeypatch, tmp_path: Path):
    log = []
    seen = []

    class FakeKey:
        @staticmethod
        def from_private_key_file(path):
            seen.append(path)
            return "PKEY"

    monkeypatch.setattr(ssh_mod.paramiko, "SSHClient", lambda: FakeSSHClient(log))
    monkeypatch.setattr(ssh_mod.paramiko, "Ed25519Key", FakeKey)
    key = tmp_path / "id_ed25519"
    open_ssh(NODE, SshSpec(key_path=key, password="unused"))
    _, kw = log[0]
    assert seen == [str(key)]
    assert kw["pkey"] == "PKEY"
    assert kw["password"] is None
