import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import pytest

from kubestrap.bootstrap.convergence import ConvergenceStore
from kubestrap.bootstrap.models import Host, Role
from kubestrap.config.models import BootstrapSettings, RetrySettings
from kubestrap.transport.interface import CommandResult

TOKEN = "abcdef.0123456789abcdef"
CA_HASH = "sha256:" + "a" * 64
JOIN_OUTPUT = (
    "W1018 12:00:00.000000    1234 warnings.go:70] some kubeadm warning\n"
    f"kubeadm join 10.0.0.10:6443 --token {TOKEN} --discovery-token-ca-cert-hash {CA_HASH}\n"
)

# --------- Test doubles ----------

@dataclass
class Call:
    host: str
    op: str
    detail: str
    secret: bool = False


class FakeTransport:
    """
    Records every remote call. `fail[(host, fragment)] = stderr` makes any
    command on that host containing `fragment` exit 1.
    """

    def __init__(self, join_output: str = JOIN_OUTPUT):
        self.calls: List[Call] = []
        self.fail: Dict[Tuple[str, str], str] = {}
        self.join_output = join_output
        self.closed = False
        self._lock = threading.Lock()

    def run_command(self, host, command, timeout=None, *, sudo=True, secret=False):
        with self._lock:
            self.calls.append(Call(host.name, "run", command, secret))
        for (name, fragment), stderr in self.fail.items():
            if name == host.name and fragment in command:
                return CommandResult(exit_code=1, stderr=stderr)
        if "kubeadm token create" in command:
            return CommandResult(exit_code=0, stdout=self.join_output)
        return CommandResult(exit_code=0)

    def copy_file(self, host, local_path, remote_path, mode=0o644):
        with self._lock:
            self.calls.append(Call(host.name, "copy", f"{local_path} -> {remote_path}"))

    def fetch_url(self, host, url, dest_path):
        with self._lock:
            self.calls.append(Call(host.name, "fetch", f"{url} -> {dest_path}"))

    def close(self):
        self.closed = True

    def commands(self, host: Optional[str] = None) -> List[str]:
        return [c.detail for c in self.calls if c.op == "run" and (host is None or c.host == host)]


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)

    def kinds(self):
        return [e.__class__.__name__ for e in self.events]


# --------- Fixtures ----------

@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def capture():
    return Capture()


@pytest.fixture
def store():
    return ConvergenceStore()


@pytest.fixture
def settings(tmp_path):
    return BootstrapSettings(
        retry=RetrySettings(attempts=2, base_delay=0, max_delay=0),
        role_timeout=30,
        step_timeout=5,
        state_file=tmp_path / "state.json",
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def hosts():
    return [
        Host(name="cp1", address="10.0.0.10", role=Role.CONTROL_PLANE),
        Host(name="w1", address="10.0.0.11", role=Role.WORKER),
        Host(name="w2", address="10.0.0.12", role=Role.WORKER),
    ]


@pytest.fixture
def join_token():
    return TOKEN


@pytest.fixture
def make_transport():
    return FakeTransport
