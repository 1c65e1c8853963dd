# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/cli/app.py
from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

import typer

from kubestrap.bootstrap.convergence import ConvergenceStore
from kubestrap.bootstrap.errors import ConvergenceStateError, InventoryError, StoreWriteError
from kubestrap.bootstrap.models import ClusterReport
from kubestrap.bootstrap.orchestrator import BootstrapOrchestrator
from kubestrap.cli.helper import parse_duration, print_report, resolve_state_path, write_report
from kubestrap.config.loader import load_inventory
from kubestrap.logging.log import init_logging
from kubestrap.observers.console import ConsoleObserver
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.jsonfile import JsonFileObserver
from kubestrap.observers.logger import LoggerObserver
from kubestrap.transport.ssh import SSHTransport

EXIT_CONVERGED = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Kubernetes cluster bootstrap CLI")
state_app = typer.Typer(help="Inspect or reset convergence state")
app.add_typer(state_app, name="state")


def _run_interruptible(orchestrator: BootstrapOrchestrator) -> ClusterReport:
    """
    Run in a worker thread so Ctrl-C becomes a cancellation signal that hosts
    honor between steps, instead of tearing the run down mid-action.
    """
    cancel = threading.Event()
    box: dict = {}

    def _target():
        try:
            box["report"] = orchestrator.run(cancel=cancel)
        except BaseException as exc:
            box["error"] = exc

    t = threading.Thread(target=_target, name="orchestrator", daemon=True)
    t.start()
    while t.is_alive():
        try:
            t.join(timeout=0.5)
        except KeyboardInterrupt:
            if cancel.is_set():
                raise
            typer.echo("\nCancelling: waiting for in-flight steps to finish (Ctrl-C again to abort)...", err=True)
            cancel.set()

    if "error" in box:
        raise box["error"]
    return box["report"]


@app.command()
def run(
    inventory: Path = typer.Option(
        ..., "--inventory", "-i", exists=True, dir_okay=False, help="Inventory file (YAML or JSON)"
    ),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-n", min=1, help="Max hosts provisioned at once (capped at 50)"
    ),
    timeout: Optional[str] = typer.Option(
        None, "--timeout", "-t", help="Deadline per role, e.g. 3600, 45m, 2h"
    ),
    step_timeout: Optional[str] = typer.Option(
        None, "--step-timeout", help="Timeout for a single remote command, e.g. 900, 15m"
    ),
    state_file: Optional[Path] = typer.Option(
        None, "--state-file", help="Convergence state file (default ~/.kubestrap/state/<cluster>.json)"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Evaluate applicability only; nothing is changed on any host"
    ),
    report_path: Optional[Path] = typer.Option(
        None, "--report", help="Also write the run report as JSON to this path"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Print every event and DEBUG logs"
    ),
):
    """
    Bootstrap the cluster described by the inventory:
      1) provision control-plane hosts (runtime, binaries, kubeadm init)
      2) extract the join credential
      3) provision and join every worker concurrently
      4) apply the overlay network
    Exit code 0 when the cluster converged (degraded included), 1 when it failed.
    """
    try:
        inv = load_inventory(inventory)
    except InventoryError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(EXIT_USAGE)

    overrides = {}
    if concurrency is not None:
        overrides["concurrency"] = concurrency
    if timeout is not None:
        overrides["role_timeout"] = parse_duration(timeout)
    if step_timeout is not None:
        overrides["step_timeout"] = parse_duration(step_timeout)
    if state_file is not None:
        overrides["state_file"] = state_file
    settings = inv.settings.model_copy(update=overrides)

    logger, run_id, log_path = init_logging(base_dir=settings.log_dir, verbose=verbose)
    observers = [
        ConsoleObserver(verbose=verbose),
        LoggerObserver(logger),
        JsonFileObserver(log_path.parent / f"{run_id}.jsonl"),
    ]
    bus = EventBus(observers=observers)

    try:
        store = ConvergenceStore(settings.state_path())
    except ConvergenceStateError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(EXIT_USAGE)

    hosts = inv.all_hosts()
    typer.echo(
        f"Bootstrapping '{settings.cluster_name}': "
        f"{sum(1 for h in inv.hosts if h.role == 'control-plane')} control-plane, "
        f"{sum(1 for h in inv.hosts if h.role == 'worker')} worker host(s)"
        + (" [dry run]" if dry_run else "")
    )

    transport = SSHTransport(cmd_timeout=settings.step_timeout or 300.0)
    try:
        orchestrator = BootstrapOrchestrator(
            hosts,
            settings,
            transport,
            store,
            dry_run=dry_run,
            bus=bus,
            run_id=run_id,
        )
        report = _run_interruptible(orchestrator)
    finally:
        transport.close()

    print_report(report)
    if report_path is not None:
        write_report(report, report_path)
        typer.echo(f"Report written to {report_path}")
    typer.echo(f"Log: {log_path}")

    raise typer.Exit(EXIT_CONVERGED if report.converged else EXIT_FAILED)


@state_app.command("show")
def state_show(
    state_file: Optional[Path] = typer.Option(None, "--state-file", help="Convergence state file"),
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i", help="Derive the state file from this inventory"),
    host: Optional[str] = typer.Option(None, "--host", help="Only this host"),
):
    """
    Print convergence records.
    """
    try:
        path = resolve_state_path(state_file, inventory)
        store = ConvergenceStore(path)
    except (InventoryError, ConvergenceStateError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(EXIT_USAGE)

    records = store.records(host)
    if not records:
        typer.echo(f"No convergence records in {path}")
        return
    for r in records:
        line = f"{r.host:<20} {r.step_id:<30} {r.status.value:<11} {r.timestamp or '-'}"
        if r.last_error:
            line += f"  {r.last_error}"
        typer.echo(line)


@state_app.command("reset")
def state_reset(
    state_file: Optional[Path] = typer.Option(None, "--state-file", help="Convergence state file"),
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i", help="Derive the state file from this inventory"),
    host: Optional[str] = typer.Option(None, "--host", help="Only reset this host"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """
    Forget convergence records so the next run re-applies every step.
    """
    try:
        path = resolve_state_path(state_file, inventory)
        store = ConvergenceStore(path)
    except (InventoryError, ConvergenceStateError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(EXIT_USAGE)

    target = f"host '{host}'" if host else "all hosts"
    if not yes:
        typer.confirm(f"Reset convergence state for {target} in {path}?", abort=True)
    try:
        n = store.reset(host)
    except StoreWriteError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(EXIT_FAILED)
    typer.echo(f"Removed {n} record(s) for {target}")


if __name__ == "__main__":
    app()
