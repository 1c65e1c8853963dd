# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single bootstrap invocation
    cluster: str      # cluster name from the inventory settings

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def now_ts() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_ctx(cluster: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": now_ts(),
        "run_id": run_id or str(uuid.uuid4()),
        "cluster": cluster,
    }


def stamp(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Same run context, fresh timestamp."""
    return {**ctx, "ts": now_ts()}


# ---------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    control_plane_hosts: List[str]
    worker_hosts: List[str]
    dry_run: bool

@dataclass(frozen=True)
class StateChanged(BaseEvent):
    previous: str
    state: str
    reason: Optional[str] = None

@dataclass(frozen=True)
class CredentialPublished(BaseEvent):
    source_host: str
    control_plane_address: str

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    state: str
    degraded: bool
    failed_hosts: List[str]
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Role lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RoleStarted(BaseEvent):
    role: str
    hosts: List[str]
    concurrency: int

@dataclass(frozen=True)
class RoleFinished(BaseEvent):
    role: str
    status: str
    succeeded: List[str]
    failed: List[str]


# ---------------------------------------------------------------------
# Host / step lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class HostStarted(BaseEvent):
    host: str
    role: str
    steps: int

@dataclass(frozen=True)
class HostFinished(BaseEvent):
    host: str
    status: str
    failed_step: Optional[str] = None

@dataclass(frozen=True)
class StepStarted(BaseEvent):
    host: str
    step: str
    description: str

@dataclass(frozen=True)
class StepAttempt(BaseEvent):
    host: str
    step: str
    attempt: int

@dataclass(frozen=True)
class StepSucceeded(BaseEvent):
    host: str
    step: str
    attempts: int
    duration_ms: int

@dataclass(frozen=True)
class StepSkipped(BaseEvent):
    host: str
    step: str
    reason: str       # "not-applicable" | "converged" | "dry-run"

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    host: str
    step: str
    attempts: int
    error: str
