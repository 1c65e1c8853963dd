# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/coordinator.py
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .convergence import ConvergenceStore
from .errors import StoreWriteError
from .executor import StepExecutor
from .models import (
    Host,
    HostRunResult,
    HostStatus,
    OutcomeStatus,
    Role,
    RoleRunResult,
    StepOutcome,
    StepStatus,
)
from .plan import HostPlan
from ..observers.dispatcher import EventBus
from ..observers.events import (
    stamp,
    HostStarted,
    HostFinished,
    RoleStarted,
    RoleFinished,
)

log = logging.getLogger("kubestrap")

MAX_CONCURRENCY = 50
POLL_INTERVAL = 0.2


@dataclass
class _HostProgress:
    result: HostRunResult
    current: Optional[str] = None
    done: List[StepOutcome] = field(default_factory=list)


def _terminal_status(outcomes: Sequence[StepOutcome]) -> HostStatus:
    for o in outcomes:
        if o.status in (OutcomeStatus.FAILED, OutcomeStatus.TIMEOUT):
            return HostStatus.FAILED
        if o.status == OutcomeStatus.CANCELLED:
            return HostStatus.CANCELLED
    return HostStatus.SUCCEEDED


class RoleCoordinator:
    """
    Drives a HostPlan across every host of one role concurrently.

    - one worker per host, bounded by `concurrency` (capped at MAX_CONCURRENCY)
    - steps run strictly in plan order within a host; the first failure
      stops that host only
    - cancellation is honored between steps
    - `deadline` bounds the whole role; hosts still running when it expires
      are reported as Timeout
    """

    def __init__(
        self,
        executor: StepExecutor,
        convergence: ConvergenceStore,
        *,
        concurrency: Optional[int] = None,
        deadline: Optional[float] = None,
        bus: Optional[EventBus] = None,
    ):
        self.executor = executor
        self.convergence = convergence
        self.concurrency = concurrency
        self.deadline = deadline
        self.bus = bus or executor.bus
        self.run_ctx = executor.run_ctx

    def _workers(self, n_hosts: int) -> int:
        limit = self.concurrency or n_hosts
        return max(1, min(n_hosts, limit, MAX_CONCURRENCY))

    # ------------------ per host ------------------

    def _run_host(
        self,
        host: Host,
        plan: HostPlan,
        params: Mapping[str, Any],
        stop: threading.Event,
        progress: _HostProgress,
    ) -> HostRunResult:
        steps = plan.steps_for(host)
        self.bus.emit(HostStarted(host=host.name, role=host.role.value, steps=len(steps), **stamp(self.run_ctx)))
        result = progress.result

        for step in steps:
            if stop.is_set():
                if self.convergence.get(host, step).status != StepStatus.DONE:
                    self.convergence.record(host, step, StepStatus.CANCELLED, "run cancelled")
                progress.done.append(StepOutcome(step_id=step.id, status=OutcomeStatus.CANCELLED, error="run cancelled"))
                break

            progress.current = step.id
            outcome = self.executor.execute(host, step, self.convergence, params=params, cancel=stop)
            progress.current = None
            progress.done.append(outcome)

            if outcome.status == OutcomeStatus.DONE and outcome.output_name:
                result.outputs[outcome.output_name] = outcome.output
            if outcome.status in (OutcomeStatus.FAILED, OutcomeStatus.TIMEOUT, OutcomeStatus.CANCELLED):
                break

        result.outcomes = list(progress.done)
        result.status = _terminal_status(result.outcomes)
        failed = result.failed_step
        self.bus.emit(HostFinished(
            host=host.name,
            status=result.status.value,
            failed_step=failed.step_id if failed else None,
            **stamp(self.run_ctx),
        ))
        return result

    def _timed_out(self, progress: _HostProgress) -> HostRunResult:
        outcomes = list(progress.done)
        if progress.current is not None:
            outcomes.append(StepOutcome(
                step_id=progress.current,
                status=OutcomeStatus.TIMEOUT,
                error="role deadline exceeded",
            ))
        r = progress.result
        return HostRunResult(host=r.host, status=HostStatus.TIMEOUT, outcomes=outcomes)

    # ------------------ public API ------------------

    def run(
        self,
        hosts: Sequence[Host],
        plan: HostPlan,
        params: Optional[Mapping[str, Any]] = None,
        *,
        role: Optional[Role] = None,
        cancel: Optional[threading.Event] = None,
    ) -> RoleRunResult:
        params = dict(params or {})
        role = role or (hosts[0].role if hosts else Role.WORKER)
        role_result = RoleRunResult(role=role)
        if not hosts:
            log.info(f"[{role.value}] no hosts, nothing to do")
            return role_result

        workers = self._workers(len(hosts))
        self.bus.emit(RoleStarted(
            role=role.value,
            hosts=[h.name for h in hosts],
            concurrency=workers,
            **stamp(self.run_ctx),
        ))
        log.info(f"[{role.value}] provisioning {len(hosts)} host(s), concurrency={workers}")

        stop = threading.Event()
        progress: Dict[str, _HostProgress] = {
            h.name: _HostProgress(result=HostRunResult(host=h, status=HostStatus.SUCCEEDED)) for h in hosts
        }
        finished: Dict[str, HostRunResult] = {}
        completion_order: List[str] = []
        store_error: Optional[StoreWriteError] = None

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"{role.value}")
        futures: Dict[Future, Host] = {
            pool.submit(self._run_host, h, plan, params, stop, progress[h.name]): h for h in hosts
        }

        end = time.monotonic() + self.deadline if self.deadline else None
        pending = set(futures)
        try:
            while pending:
                timeout = POLL_INTERVAL
                if end is not None:
                    remaining = end - time.monotonic()
                    if remaining <= 0:
                        break
                    timeout = min(timeout, remaining)

                done, pending = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
                for fut in done:
                    host = futures[fut]
                    try:
                        finished[host.name] = fut.result()
                    except StoreWriteError as exc:
                        log.error(f"[{host.name}] convergence store write failed, cancelling role: {exc}")
                        store_error = store_error or exc
                        stop.set()
                        finished[host.name] = HostRunResult(
                            host=host,
                            status=HostStatus.FAILED,
                            outcomes=list(progress[host.name].done),
                        )
                    except Exception as exc:
                        log.exception(f"[{host.name}] host worker crashed")
                        finished[host.name] = HostRunResult(
                            host=host,
                            status=HostStatus.FAILED,
                            outcomes=list(progress[host.name].done) + [StepOutcome(
                                step_id=progress[host.name].current or "-",
                                status=OutcomeStatus.FAILED,
                                error=f"{exc.__class__.__name__}: {exc}",
                            )],
                        )
                    completion_order.append(host.name)

                if cancel is not None and cancel.is_set() and not stop.is_set():
                    log.warning(f"[{role.value}] cancellation requested, stopping after in-flight steps")
                    stop.set()
        finally:
            if pending:
                stop.set()
                for fut in pending:
                    host = futures[fut]
                    log.error(f"[{host.name}] role deadline of {self.deadline}s exceeded")
                    finished[host.name] = self._timed_out(progress[host.name])
                pool.shutdown(wait=False, cancel_futures=True)
            else:
                pool.shutdown(wait=True)

        for h in hosts:
            role_result.hosts[h.name] = finished[h.name]

        # first successful host wins each named output
        for name in completion_order:
            r = finished[name]
            if r.status != HostStatus.SUCCEEDED:
                continue
            for key, value in r.outputs.items():
                if key in role_result.outputs:
                    log.debug(f"[{role.value}] discarding duplicate output '{key}' from {name}")
                    continue
                role_result.outputs[key] = value
                role_result.output_sources[key] = name

        self.bus.emit(RoleFinished(
            role=role.value,
            status=role_result.status.value,
            succeeded=role_result.succeeded_hosts(),
            failed=role_result.failed_hosts(),
            **stamp(self.run_ctx),
        ))
        log.info(role_result.summary())

        if store_error is not None:
            raise store_error
        return role_result
