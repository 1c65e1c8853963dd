# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/models.py
from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple, TYPE_CHECKING

from .errors import PermanentActionError

if TYPE_CHECKING:
    from ..transport.interface import CommandResult, RemoteExecutor


class Role(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


class StepStatus(str, Enum):
    """Persisted per (host, step) convergence status."""
    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    DONE = "Done"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class OutcomeStatus(str, Enum):
    """What happened to one step on one host during this run."""
    DONE = "Done"
    SKIPPED = "Skipped"
    PLANNED = "Planned"     # dry run: applicable, would have been applied
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    TIMEOUT = "Timeout"


class HostStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"


class RoleStatus(str, Enum):
    ALL_DONE = "AllDone"
    PARTIAL_FAILURE = "PartialFailure"
    ALL_FAILED = "AllFailed"


# ---------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class Host:
    """
    A machine from the inventory. Immutable once loaded.
    """
    name: str                     # identity used in reports and the convergence store
    address: str                  # IP or DNS to connect
    role: Role
    username: str = "ubuntu"
    port: int = 22
    pkey_path: Optional[Path] = None
    password: Optional[str] = field(default=None, repr=False)

    def __str__(self) -> str:
        return self.name


# ---------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ConvergenceRecord:
    host: str
    step_id: str
    status: StepStatus = StepStatus.NOT_STARTED
    last_error: Optional[str] = None
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "stepId": self.step_id,
            "status": self.status.value,
            "lastError": self.last_error,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConvergenceRecord":
        return cls(
            host=data["host"],
            step_id=data["stepId"],
            status=StepStatus(data["status"]),
            last_error=data.get("lastError"),
            timestamp=data.get("timestamp"),
        )


# ---------------------------------------------------------------------
# Join credential
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class JoinCredential:
    """
    Bootstrap token handed from the control plane to every worker.
    Secret fields never show up in repr() or str().
    """
    control_plane_address: str
    token: str = field(repr=False)
    ca_cert_hash: str = field(repr=False)
    join_command: str = field(repr=False)

    def __str__(self) -> str:
        return f"JoinCredential(control_plane_address={self.control_plane_address}, token=***)"

    def secrets(self) -> Tuple[str, ...]:
        return tuple(s for s in (self.join_command, self.token, self.ca_cert_hash) if s)

    @classmethod
    def parse(cls, stdout: str) -> "JoinCredential":
        """
        Build a credential from `kubeadm token create --print-join-command` output.
        kubeadm may print warnings first, so the last `kubeadm join` line wins.
        """
        lines = [ln.strip() for ln in (stdout or "").splitlines() if ln.strip()]
        join_lines = [ln for ln in lines if ln.startswith("kubeadm join")]
        if not join_lines:
            raise PermanentActionError("no 'kubeadm join' command found in token output")

        command = join_lines[-1]
        argv = shlex.split(command)
        if len(argv) < 3 or argv[2].startswith("-"):
            raise PermanentActionError("join command has no control-plane endpoint")

        flags = _flag_values(argv[3:])
        token = flags.get("--token")
        ca_hash = flags.get("--discovery-token-ca-cert-hash")
        if not token or not ca_hash:
            raise PermanentActionError("join command is missing --token or --discovery-token-ca-cert-hash")

        return cls(
            control_plane_address=argv[2],
            token=token,
            ca_cert_hash=ca_hash,
            join_command=command,
        )

    @classmethod
    def placeholder(cls, control_plane_address: str) -> "JoinCredential":
        """Stand-in used by dry runs; carries no secret."""
        return cls(
            control_plane_address=control_plane_address,
            token="",
            ca_cert_hash="",
            join_command="",
        )


def _flag_values(args: List[str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    i = 0
    while i < len(args):
        arg = args[i]
        if arg.startswith("--") and "=" in arg:
            k, v = arg.split("=", 1)
            values[k] = v
        elif arg.startswith("--") and i + 1 < len(args) and not args[i + 1].startswith("--"):
            values[arg] = args[i + 1]
            i += 1
        elif arg.startswith("--"):
            values[arg] = ""
        i += 1
    return values


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------
@dataclass
class StepContext:
    """
    Everything an apply action gets to see. Actions talk to the host only
    through the transport.
    """
    host: Host
    transport: "RemoteExecutor"
    params: Mapping[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None

    def run(self, command: str, *, sudo: bool = True, secret: bool = False, check: bool = True) -> "CommandResult":
        from ..transport.interface import run_checked

        if check:
            return run_checked(self.transport, self.host, command, timeout=self.timeout, sudo=sudo, secret=secret)
        return self.transport.run_command(self.host, command, self.timeout, sudo=sudo, secret=secret)

    def copy(self, local_path: str | Path, remote_path: str, mode: int = 0o644) -> None:
        self.transport.copy_file(self.host, local_path, remote_path, mode)

    def fetch(self, url: str, dest_path: str) -> None:
        self.transport.fetch_url(self.host, url, dest_path)


def always(host: Host, record: ConvergenceRecord) -> bool:
    return True


@dataclass(frozen=True)
class Step:
    """
    An immutable provisioning action definition, shared by every host it
    applies to. `apply` must be safe to call more than once.
    """
    id: str
    description: str
    apply: Callable[[StepContext], Any]
    roles: FrozenSet[Role] = frozenset(Role)
    applicable: Callable[[Host, ConvergenceRecord], bool] = always
    extract: Optional[Callable[[Any], Any]] = None
    output: Optional[str] = None
    after: Tuple[str, ...] = ()
    timeout: Optional[float] = None
    # volatile steps produce in-memory outputs only, so a Done record never short-circuits them
    volatile: bool = False

    def __post_init__(self):
        if (self.extract is None) != (self.output is None):
            raise ValueError(f"step '{self.id}': extract and output must be set together")


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------
@dataclass
class StepOutcome:
    step_id: str
    status: OutcomeStatus
    attempts: int = 0
    error: Optional[str] = None
    duration_ms: int = 0
    output_name: Optional[str] = None
    output: Any = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "step": self.step_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
        }
        if self.error:
            d["error"] = self.error
        if self.output_name:
            d["output"] = self.output_name
        return d


@dataclass
class HostRunResult:
    host: Host
    status: HostStatus
    outcomes: List[StepOutcome] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def failed_step(self) -> Optional[StepOutcome]:
        for o in self.outcomes:
            if o.status in (OutcomeStatus.FAILED, OutcomeStatus.TIMEOUT):
                return o
        return None

    def outcome(self, step_id: str) -> Optional[StepOutcome]:
        for o in self.outcomes:
            if o.step_id == step_id:
                return o
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host.name,
            "address": self.host.address,
            "role": self.host.role.value,
            "status": self.status.value,
            "steps": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class RoleRunResult:
    role: Role
    hosts: Dict[str, HostRunResult] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict, repr=False)
    output_sources: Dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> RoleStatus:
        if not self.hosts:
            return RoleStatus.ALL_DONE
        ok = len(self.succeeded_hosts())
        if ok == len(self.hosts):
            return RoleStatus.ALL_DONE
        if ok == 0:
            return RoleStatus.ALL_FAILED
        return RoleStatus.PARTIAL_FAILURE

    def succeeded_hosts(self) -> List[str]:
        return [n for n, r in self.hosts.items() if r.status == HostStatus.SUCCEEDED]

    def failed_hosts(self) -> List[str]:
        return [n for n, r in self.hosts.items() if r.status != HostStatus.SUCCEEDED]

    def discard_outputs(self) -> None:
        self.outputs.clear()
        for r in self.hosts.values():
            r.outputs.clear()
            for o in r.outcomes:
                o.output = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "status": self.status.value,
            "succeeded": self.succeeded_hosts(),
            "failed": self.failed_hosts(),
            "output_sources": dict(self.output_sources),
            "hosts": [r.to_dict() for r in self.hosts.values()],
        }

    def summary(self) -> str:
        counts: Dict[str, int] = {}
        for r in self.hosts.values():
            counts[r.status.value] = counts.get(r.status.value, 0) + 1
        detail = " ".join(f"{k}={v}" for k, v in sorted(counts.items()))
        return f"{self.role.value}: {self.status.value} ({detail or 'no hosts'})"


class ClusterState(str, Enum):
    INIT = "Init"
    CONTROL_PLANE_PROVISIONING = "ControlPlaneProvisioning"
    CREDENTIAL_EXTRACTION = "CredentialExtraction"
    WORKER_PROVISIONING = "WorkerProvisioning"
    NETWORK_OVERLAY_APPLY = "NetworkOverlayApply"
    CONVERGED = "Converged"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (ClusterState.CONVERGED, ClusterState.FAILED)


@dataclass
class ClusterReport:
    """
    The one externally observed result of a bootstrap run.
    """
    run_id: str
    state: ClusterState = ClusterState.INIT
    dry_run: bool = False
    control_plane: Optional[RoleRunResult] = None
    workers: Optional[RoleRunResult] = None
    overlay: Optional[StepOutcome] = None
    error: Optional[str] = None
    history: List[ClusterState] = field(default_factory=lambda: [ClusterState.INIT])

    @property
    def converged(self) -> bool:
        return self.state == ClusterState.CONVERGED

    @property
    def degraded(self) -> bool:
        if not self.converged:
            return False
        if self.workers is not None and self.workers.status != RoleStatus.ALL_DONE:
            return True
        if self.control_plane is not None and self.control_plane.status != RoleStatus.ALL_DONE:
            return True
        return self.overlay is not None and self.overlay.status == OutcomeStatus.FAILED

    def host_results(self) -> List[HostRunResult]:
        out: List[HostRunResult] = []
        for role in (self.control_plane, self.workers):
            if role is not None:
                out.extend(role.hosts.values())
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "dry_run": self.dry_run,
            "degraded": self.degraded,
            "error": self.error,
            "history": [s.value for s in self.history],
            "control_plane": self.control_plane.to_dict() if self.control_plane else None,
            "workers": self.workers.to_dict() if self.workers else None,
            "overlay": self.overlay.to_dict() if self.overlay else None,
        }

    def summary(self) -> str:
        parts = [f"state={self.state.value}"]
        if self.degraded:
            parts.append("degraded")
        for role in (self.control_plane, self.workers):
            if role is not None:
                parts.append(role.summary())
        if self.overlay is not None:
            parts.append(f"overlay={self.overlay.status.value}")
        if self.error:
            parts.append(f"error={self.error}")
        return " | ".join(parts)
