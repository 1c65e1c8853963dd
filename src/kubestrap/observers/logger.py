from __future__ import annotations
import logging
from .events import BaseEvent, HostFinished, RoleFinished, RunSummary, StepAttempt, StepFailed

_QUIET = (StepAttempt,)


def _level(event: BaseEvent) -> int:
    if isinstance(event, _QUIET):
        return logging.DEBUG
    if isinstance(event, StepFailed):
        return logging.WARNING
    if isinstance(event, HostFinished) and event.status != "Succeeded":
        return logging.WARNING
    if isinstance(event, RoleFinished) and event.status != "AllDone":
        return logging.WARNING
    if isinstance(event, RunSummary) and (event.state != "Converged" or event.degraded):
        return logging.ERROR if event.state != "Converged" else logging.WARNING
    return logging.INFO


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        etype = event.__class__.__name__
        msg = ", ".join(f"{k}={v}" for k, v in d.items() if k not in ("ts", "run_id", "cluster"))

        self.logger.log(_level(event), f"[EVENT] {etype}: {msg}")
