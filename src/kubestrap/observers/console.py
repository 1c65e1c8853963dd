# src/kubestrap/observers/console.py
import typer

from .events import BaseEvent, StepFailed, StepSucceeded, StateChanged, HostFinished, RoleFinished, RunSummary

_SHOWN = (StateChanged, StepSucceeded, StepFailed, HostFinished, RoleFinished, RunSummary)


class ConsoleObserver:
    """
    Prints the interesting lifecycle events. `verbose` prints every event.
    """

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def notify(self, event: BaseEvent) -> None:
        if not self.verbose and not isinstance(event, _SHOWN):
            return
        d = event.dict()
        k = event.__class__.__name__
        data = ", ".join(f"{x}={y}" for x, y in d.items() if x not in ("ts", "run_id", "cluster"))
        typer.echo(f"[{d['ts']}] {k} {data}", err=isinstance(event, StepFailed))
