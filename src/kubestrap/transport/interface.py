# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/transport/interface.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from ..bootstrap.errors import CommandFailedError
from ..bootstrap.models import Host


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteExecutor(Protocol):
    """
    Contract for reaching a host. The orchestrator never implements the
    transport itself; it only calls these.
    """

    def run_command(
        self,
        host: Host,
        command: str,
        timeout: Optional[float] = None,
        *,
        sudo: bool = True,
        secret: bool = False,
    ) -> CommandResult:
        """
        Run a shell command. `secret=True` keeps the command text out of every log.
        """
        ...

    def copy_file(self, host: Host, local_path: str | Path, remote_path: str, mode: int = 0o644) -> None:
        ...

    def fetch_url(self, host: Host, url: str, dest_path: str) -> None:
        ...

    def close(self) -> None:
        ...


def run_checked(
    transport: RemoteExecutor,
    host: Host,
    command: str,
    *,
    timeout: Optional[float] = None,
    sudo: bool = True,
    secret: bool = False,
) -> CommandResult:
    result = transport.run_command(host, command, timeout, sudo=sudo, secret=secret)
    if not result.ok:
        raise CommandFailedError("<redacted>" if secret else command, result.exit_code, result.stderr)
    return result
