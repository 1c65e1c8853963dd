# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/orchestrator.py
from __future__ import annotations

import logging
import threading
import uuid
from typing import Dict, Optional, Sequence

from .convergence import ConvergenceStore
from .coordinator import RoleCoordinator
from .errors import CredentialMissingError, StoreWriteError
from .executor import RetryPolicy, StepExecutor
from .models import (
    ClusterReport,
    ClusterState,
    Host,
    HostStatus,
    JoinCredential,
    OutcomeStatus,
    Role,
    RoleRunResult,
    RoleStatus,
    Step,
    StepOutcome,
)
from .plan import HostPlan
from .steps import JOIN_CREDENTIAL, ClusterSteps
from ..config.models import BootstrapSettings
from ..observers.dispatcher import EventBus
from ..observers.events import (
    new_ctx,
    stamp,
    CredentialPublished,
    RunStarted,
    RunSummary,
    StateChanged,
)
from ..transport.interface import RemoteExecutor

log = logging.getLogger("kubestrap")

# legal forward transitions; Failed is reachable from every non-terminal state
_NEXT: Dict[ClusterState, ClusterState] = {
    ClusterState.INIT: ClusterState.CONTROL_PLANE_PROVISIONING,
    ClusterState.CONTROL_PLANE_PROVISIONING: ClusterState.CREDENTIAL_EXTRACTION,
    ClusterState.CREDENTIAL_EXTRACTION: ClusterState.WORKER_PROVISIONING,
    ClusterState.WORKER_PROVISIONING: ClusterState.NETWORK_OVERLAY_APPLY,
    ClusterState.NETWORK_OVERLAY_APPLY: ClusterState.CONVERGED,
}


class _RunFailed(Exception):
    pass


class BootstrapOrchestrator:
    """
    Brings a cluster into existence:

        Init -> ControlPlaneProvisioning -> CredentialExtraction
             -> WorkerProvisioning -> NetworkOverlayApply -> Converged

    Every control-plane step finishes (or the role is judged usable) before
    any worker step runs, because workers need the join credential. The
    credential lives only in memory for the duration of the run.
    """

    def __init__(
        self,
        hosts: Sequence[Host],
        settings: BootstrapSettings,
        transport: RemoteExecutor,
        convergence: ConvergenceStore,
        *,
        plan: Optional[HostPlan] = None,
        overlay_step: Optional[Step] = None,
        dry_run: bool = False,
        bus: Optional[EventBus] = None,
        run_id: Optional[str] = None,
    ):
        self.hosts = list(hosts)
        self.settings = settings
        self.convergence = convergence
        self.dry_run = dry_run
        self.bus = bus or EventBus()
        self.run_id = run_id or str(uuid.uuid4())
        self.run_ctx = new_ctx(cluster=settings.cluster_name, run_id=self.run_id)

        catalog = ClusterSteps(settings)
        self.plan = plan or catalog.plan()
        self.overlay_step = overlay_step or catalog.overlay_step()

        self.executor = StepExecutor(
            transport,
            retry=RetryPolicy(
                attempts=settings.retry.attempts,
                base_delay=settings.retry.base_delay,
                max_delay=settings.retry.max_delay,
            ),
            step_timeout=settings.step_timeout,
            dry_run=dry_run,
            bus=self.bus,
            run_ctx=self.run_ctx,
        )
        self.coordinator = RoleCoordinator(
            self.executor,
            convergence,
            concurrency=settings.concurrency,
            deadline=settings.role_timeout,
            bus=self.bus,
        )
        self._credential: Optional[JoinCredential] = None

    # ------------------ state machine ------------------

    def _transition(self, report: ClusterReport, state: ClusterState, reason: Optional[str] = None) -> None:
        previous = report.state
        if previous.terminal:
            raise RuntimeError(f"cannot leave terminal state {previous.value}")
        if state != ClusterState.FAILED and _NEXT.get(previous) != state:
            raise RuntimeError(f"illegal transition {previous.value} -> {state.value}")
        report.state = state
        report.history.append(state)
        self.bus.emit(StateChanged(previous=previous.value, state=state.value, reason=reason, **stamp(self.run_ctx)))
        log.info(f"state {previous.value} -> {state.value}" + (f" ({reason})" if reason else ""))

    def _fail(self, report: ClusterReport, reason: str) -> None:
        report.error = reason
        self._transition(report, ClusterState.FAILED, reason)

    def _cancelled(self, cancel: Optional[threading.Event]) -> bool:
        return cancel is not None and cancel.is_set()

    # ------------------ phases ------------------

    def _hosts(self, role: Role):
        return [h for h in self.hosts if h.role == role]

    def _winner(self, cp: RoleRunResult) -> Host:
        source = cp.output_sources.get(JOIN_CREDENTIAL)
        if source is None:
            ok = cp.succeeded_hosts()
            source = ok[0] if ok else next(iter(cp.hosts))
        return cp.hosts[source].host

    def _extract_credential(self, cp: RoleRunResult) -> JoinCredential:
        if self.dry_run:
            return JoinCredential.placeholder(self._winner(cp).address)

        cred = cp.outputs.get(JOIN_CREDENTIAL)
        if not isinstance(cred, JoinCredential):
            raise CredentialMissingError("no control-plane host produced a join credential")

        source = cp.output_sources[JOIN_CREDENTIAL]
        if len(cp.succeeded_hosts()) > 1:
            log.warning(
                f"{len(cp.succeeded_hosts())} control-plane hosts produced a join credential; using {source}"
            )
        self.bus.emit(CredentialPublished(
            source_host=source,
            control_plane_address=cred.control_plane_address,
            **stamp(self.run_ctx),
        ))
        log.info(f"join credential published by {source} for {cred.control_plane_address}")
        return cred

    def _apply_overlay(self, cp: RoleRunResult, cancel: Optional[threading.Event]) -> StepOutcome:
        host = self._winner(cp)
        log.info(f"applying overlay network via {host.name}")
        return self.executor.execute(host, self.overlay_step, self.convergence, cancel=cancel)

    # ------------------ public API ------------------

    def run(self, cancel: Optional[threading.Event] = None) -> ClusterReport:
        report = ClusterReport(run_id=self.run_id, dry_run=self.dry_run)
        cp_hosts = self._hosts(Role.CONTROL_PLANE)
        worker_hosts = self._hosts(Role.WORKER)

        self.bus.emit(RunStarted(
            control_plane_hosts=[h.name for h in cp_hosts],
            worker_hosts=[h.name for h in worker_hosts],
            dry_run=self.dry_run,
            **stamp(self.run_ctx),
        ))

        try:
            if not cp_hosts:
                raise _RunFailed("inventory has no control-plane host")

            self._transition(report, ClusterState.CONTROL_PLANE_PROVISIONING)
            report.control_plane = self.coordinator.run(cp_hosts, self.plan, {}, role=Role.CONTROL_PLANE, cancel=cancel)
            if report.control_plane.status == RoleStatus.ALL_FAILED:
                raise _RunFailed("every control-plane host failed")

            self._transition(report, ClusterState.CREDENTIAL_EXTRACTION)
            self._credential = self._extract_credential(report.control_plane)
            if self._cancelled(cancel):
                raise _RunFailed("run cancelled")

            self._transition(report, ClusterState.WORKER_PROVISIONING)
            params = {JOIN_CREDENTIAL: self._credential}
            report.workers = self.coordinator.run(worker_hosts, self.plan, params, role=Role.WORKER, cancel=cancel)
            if report.workers.status == RoleStatus.ALL_FAILED:
                raise _RunFailed("every worker host failed")
            if report.workers.status == RoleStatus.PARTIAL_FAILURE:
                log.warning(f"workers not joined: {', '.join(report.workers.failed_hosts())}")

            if self._cancelled(cancel):
                raise _RunFailed("run cancelled")
            self._transition(report, ClusterState.NETWORK_OVERLAY_APPLY)
            report.overlay = self._apply_overlay(report.control_plane, cancel)
            if report.overlay.status not in (OutcomeStatus.DONE, OutcomeStatus.SKIPPED, OutcomeStatus.PLANNED):
                # reported, never rolled back: worker joins stand
                log.error(f"overlay network apply failed: {report.overlay.error}")

            self._transition(report, ClusterState.CONVERGED)

        except _RunFailed as exc:
            self._fail(report, str(exc))
        except CredentialMissingError as exc:
            self._fail(report, str(exc))
        except StoreWriteError as exc:
            log.error(f"aborting run, convergence state is not durable: {exc}")
            self._fail(report, f"convergence store write failed: {exc}")
        finally:
            self._credential = None
            if report.control_plane is not None:
                report.control_plane.discard_outputs()

        failed = [r.host.name for r in report.host_results() if r.status != HostStatus.SUCCEEDED]
        self.bus.emit(RunSummary(
            state=report.state.value,
            degraded=report.degraded,
            failed_hosts=failed,
            error=report.error,
            **stamp(self.run_ctx),
        ))
        log.info(report.summary())
        return report
