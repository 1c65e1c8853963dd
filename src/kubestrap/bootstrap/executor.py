# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

from .convergence import ConvergenceStore
from .errors import PermanentActionError, StoreWriteError
from .models import Host, OutcomeStatus, Step, StepContext, StepOutcome, StepStatus
from ..observers.dispatcher import EventBus
from ..observers.events import (
    new_ctx,
    stamp,
    StepStarted,
    StepAttempt,
    StepSucceeded,
    StepSkipped,
    StepFailed,
)
from ..transport.interface import RemoteExecutor

log = logging.getLogger("kubestrap")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


def _secrets_in(params: Mapping[str, Any]) -> Iterable[str]:
    for v in params.values():
        secrets = getattr(v, "secrets", None)
        if callable(secrets):
            yield from secrets()


def redact(text: str, params: Mapping[str, Any]) -> str:
    # longest first so a token inside the join command doesn't leave the rest visible
    for s in sorted(_secrets_in(params), key=len, reverse=True):
        text = text.replace(s, "***")
    return text


class StepExecutor:
    """
    Runs one step on one host: applicability check, idempotence
    short-circuit, bounded retries with exponential backoff, convergence
    bookkeeping. Step errors are classified into the returned outcome and
    never raised; only a StoreWriteError escapes, because without durable
    state a rerun cannot be trusted.
    """

    def __init__(
        self,
        transport: RemoteExecutor,
        *,
        retry: Optional[RetryPolicy] = None,
        step_timeout: Optional[float] = None,
        dry_run: bool = False,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[Dict[str, Any]] = None,
    ):
        self.transport = transport
        self.retry = retry or RetryPolicy()
        self.step_timeout = step_timeout
        self.dry_run = dry_run
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(cluster="kubernetes")

    def _skip(self, host: Host, step: Step, reason: str, status: OutcomeStatus = OutcomeStatus.SKIPPED) -> StepOutcome:
        log.debug(f"[{host.name}] {step.id}: skipped ({reason})")
        self.bus.emit(StepSkipped(host=host.name, step=step.id, reason=reason, **stamp(self.run_ctx)))
        return StepOutcome(step_id=step.id, status=status)

    def _fail(
        self,
        host: Host,
        step: Step,
        convergence: ConvergenceStore,
        error: str,
        attempts: int,
        started: float,
        status: OutcomeStatus = OutcomeStatus.FAILED,
    ) -> StepOutcome:
        convergence.record(host, step, StepStatus.FAILED, error)
        self.bus.emit(StepFailed(host=host.name, step=step.id, attempts=attempts, error=error, **stamp(self.run_ctx)))
        log.warning(f"[{host.name}] {step.id}: failed after {attempts} attempt(s): {error}")
        return StepOutcome(
            step_id=step.id,
            status=status,
            attempts=attempts,
            error=error,
            duration_ms=int((time.time() - started) * 1000),
        )

    def execute(
        self,
        host: Host,
        step: Step,
        convergence: ConvergenceStore,
        params: Optional[Mapping[str, Any]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> StepOutcome:
        params = params or {}
        started = time.time()
        record = convergence.get(host, step)

        try:
            applicable = step.applicable(host, record)
        except Exception as exc:
            return self._fail(host, step, convergence, redact(f"applicability check failed: {exc}", params), 0, started)

        if not applicable:
            return self._skip(host, step, "not-applicable")
        if record.status == StepStatus.DONE and not step.volatile:
            return self._skip(host, step, "converged")
        if self.dry_run:
            return self._skip(host, step, "dry-run", OutcomeStatus.PLANNED)

        self.bus.emit(StepStarted(host=host.name, step=step.id, description=step.description, **stamp(self.run_ctx)))
        convergence.record(host, step, StepStatus.IN_PROGRESS)

        ctx = StepContext(
            host=host,
            transport=self.transport,
            params=params,
            timeout=step.timeout or self.step_timeout,
        )

        attempts = 0
        last_exc: Optional[BaseException] = None
        while True:
            attempts += 1
            self.bus.emit(StepAttempt(host=host.name, step=step.id, attempt=attempts, **stamp(self.run_ctx)))
            try:
                result = step.apply(ctx)
                last_exc = None
                break
            except StoreWriteError:
                raise
            except PermanentActionError as exc:
                last_exc = exc
                break
            except Exception as exc:
                last_exc = exc
                if attempts >= self.retry.attempts:
                    break
                delay = self.retry.delay(attempts)
                log.info(
                    f"[{host.name}] {step.id}: attempt {attempts}/{self.retry.attempts} failed, "
                    f"retrying in {delay:.1f}s: {redact(str(exc), params)}"
                )
                if cancel is not None:
                    if cancel.wait(delay):
                        convergence.record(host, step, StepStatus.CANCELLED, "cancelled during retry backoff")
                        return StepOutcome(
                            step_id=step.id,
                            status=OutcomeStatus.CANCELLED,
                            attempts=attempts,
                            error="cancelled during retry backoff",
                            duration_ms=int((time.time() - started) * 1000),
                        )
                elif delay > 0:
                    time.sleep(delay)

        if last_exc is not None:
            error = redact(f"{last_exc.__class__.__name__}: {last_exc}", params)
            status = OutcomeStatus.TIMEOUT if isinstance(last_exc, TimeoutError) else OutcomeStatus.FAILED
            return self._fail(host, step, convergence, error, attempts, started, status)

        output = None
        if step.extract is not None:
            try:
                output = step.extract(result)
            except Exception as exc:
                error = redact(f"could not extract '{step.output}': {exc}", params)
                return self._fail(host, step, convergence, error, attempts, started)

        convergence.record(host, step, StepStatus.DONE)
        duration_ms = int((time.time() - started) * 1000)
        self.bus.emit(StepSucceeded(host=host.name, step=step.id, attempts=attempts, duration_ms=duration_ms, **stamp(self.run_ctx)))
        log.info(f"[{host.name}] {step.id}: done ({attempts} attempt(s), {duration_ms}ms)")
        return StepOutcome(
            step_id=step.id,
            status=OutcomeStatus.DONE,
            attempts=attempts,
            duration_ms=duration_ms,
            output_name=step.output,
            output=output,
        )
