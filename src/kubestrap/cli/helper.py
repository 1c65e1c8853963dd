# src/kubestrap/cli/helper.py
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Optional

import typer

from kubestrap.bootstrap.models import ClusterReport, RoleRunResult
from kubestrap.config.loader import load_inventory
from kubestrap.config.models import BootstrapSettings

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: Optional[str]) -> Optional[float]:
    """
    '90' / '90s' -> 90.0, '30m' -> 1800.0, '2h' -> 7200.0. None stays None.
    """
    if value is None:
        return None
    m = _DURATION.match(value)
    if not m:
        raise typer.BadParameter(f"'{value}' is not a duration (use e.g. 90, 90s, 30m, 2h)")
    seconds = float(m.group(1)) * _UNITS[m.group(2)]
    if seconds <= 0:
        raise typer.BadParameter("duration must be positive")
    return seconds


def resolve_state_path(state_file: Optional[Path], inventory: Optional[Path]) -> Path:
    if state_file:
        return state_file.expanduser()
    if inventory:
        return load_inventory(inventory).settings.state_path()
    return BootstrapSettings().state_path()


def _echo_role(role: Optional[RoleRunResult]) -> None:
    if role is None:
        return
    typer.echo(f"\n[{role.role.value}] {role.status.value}")
    if not role.hosts:
        typer.echo("  (no hosts)")
    for r in role.hosts.values():
        typer.echo(f"  {r.host.name} ({r.host.address}): {r.status.value}")
        for o in r.outcomes:
            line = f"    {o.step_id:<30} {o.status.value}"
            if o.attempts > 1:
                line += f" after {o.attempts} attempts"
            if o.error:
                line += f" - {o.error}"
            typer.echo(line)


def print_report(report: ClusterReport) -> None:
    _echo_role(report.control_plane)
    _echo_role(report.workers)
    if report.overlay is not None:
        msg = f"\n[overlay] {report.overlay.status.value}"
        if report.overlay.error:
            msg += f" - {report.overlay.error}"
        typer.echo(msg)

    typer.echo("\nBootstrap summary:")
    typer.echo(report.summary())


def write_report(report: ClusterReport, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report.to_dict(), indent=2) + "\n")
