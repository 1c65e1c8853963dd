# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/transport/ssh.py
from __future__ import annotations

import logging
import os
import socket
import threading
from itertools import count
from pathlib import Path
from typing import Dict, Optional

import paramiko

from ..bootstrap.errors import ActionTimeoutError, PermanentActionError, TransientActionError
from ..bootstrap.models import Host
from .interface import CommandResult, run_checked

log = logging.getLogger("kubestrap")

_tmp_counter = count(1)


class SSHTransport:
    """
    Remote execution over SSH (paramiko). One cached client per host; a host
    is only ever driven by one worker at a time. `_lock` guards the cache and
    is never held across network I/O, so a host stuck in connect only blocks
    callers for that same host.
    """

    def __init__(self, connect_timeout: float = 20.0, cmd_timeout: float = 300.0):
        self.connect_timeout = connect_timeout
        self.cmd_timeout = cmd_timeout
        self._clients: Dict[str, paramiko.SSHClient] = {}
        self._connecting: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    # ------------------ connection ------------------

    def _load_pkey(self, key_path: str):
        for key_cls in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
            try:
                return key_cls.from_private_key_file(key_path)
            except paramiko.SSHException:
                continue
        raise PermanentActionError(f"unsupported private key format for {key_path}")

    def _connect(self, host: Host) -> paramiko.SSHClient:
        with self._lock:
            client = self._clients.get(host.name)
            if client is not None:
                return client
            host_lock = self._connecting.setdefault(host.name, threading.Lock())

        with host_lock:
            with self._lock:
                client = self._clients.get(host.name)
            if client is not None:
                return client

            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            pkey = self._load_pkey(str(host.pkey_path)) if host.pkey_path else None

            try:
                client.connect(
                    hostname=host.address,
                    port=host.port,
                    username=host.username,
                    password=host.password if not pkey else None,
                    pkey=pkey,
                    timeout=self.connect_timeout,
                    allow_agent=pkey is None,
                    look_for_keys=pkey is None,
                )
            except (socket.timeout, TimeoutError) as exc:
                raise ActionTimeoutError(f"connect to {host.address}:{host.port} timed out") from exc
            except (paramiko.SSHException, OSError) as exc:
                raise TransientActionError(f"connect to {host.address}:{host.port} failed: {exc}") from exc

            with self._lock:
                self._clients[host.name] = client
            return client

    def _drop(self, host: Host) -> None:
        with self._lock:
            client = self._clients.pop(host.name, None)
        if client is not None:
            client.close()

    def close(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for c in clients:
            c.close()

    # ------------------ RemoteExecutor ------------------

    def _q(self, s: str) -> str:
        """
        Quote for bash -lc.
        """
        return "'" + s.replace("'", "'\"'\"'") + "'"

    def run_command(
        self,
        host: Host,
        command: str,
        timeout: Optional[float] = None,
        *,
        sudo: bool = True,
        secret: bool = False,
    ) -> CommandResult:
        wrapped = f"sudo -n bash -lc {self._q(command)}" if sudo else f"bash -lc {self._q(command)}"
        timeout = timeout or self.cmd_timeout

        if secret:
            log.debug(f"[{host.name}] $ <command hidden>")
        else:
            log.debug(f"[{host.name}] $ {command}")

        client = self._connect(host)
        try:
            _, stdout, stderr = client.exec_command(wrapped, timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            rc = stdout.channel.recv_exit_status()
        except (socket.timeout, TimeoutError) as exc:
            self._drop(host)
            raise ActionTimeoutError(f"command on {host.name} timed out after {timeout}s") from exc
        except (paramiko.SSHException, OSError) as exc:
            self._drop(host)
            raise TransientActionError(f"ssh session to {host.name} failed: {exc}") from exc

        log.debug(f"[{host.name}] exit={rc}")
        return CommandResult(exit_code=rc, stdout=out, stderr=err)

    def copy_file(self, host: Host, local_path: str | Path, remote_path: str, mode: int = 0o644) -> None:
        """
        Upload to a temp path then install with sudo so root-owned targets keep their owner.
        """
        tmp_remote = f"/tmp/.kubestrap_tmp_{os.getpid()}_{next(_tmp_counter)}"
        client = self._connect(host)
        try:
            sftp = client.open_sftp()
            try:
                sftp.put(str(local_path), tmp_remote)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as exc:
            self._drop(host)
            raise TransientActionError(f"upload of {local_path} to {host.name} failed: {exc}") from exc

        cmd = (
            f"install -D -m {oct(mode)[2:]} -o root -g root {tmp_remote} {remote_path}"
            f" ; rc=$? ; rm -f {tmp_remote} ; exit $rc"
        )
        run_checked(self, host, cmd)

    def fetch_url(self, host: Host, url: str, dest_path: str) -> None:
        """
        Download next to `dest_path` and rename into place only once curl succeeds.
        """
        part = self._q(f"{dest_path}.part")
        cmd = (
            f"curl -fsSL --retry 3 -o {part} {self._q(url)}"
            f" && mv -f {part} {self._q(dest_path)}"
            f" || {{ rc=$? ; rm -f {part} ; exit $rc ; }}"
        )
        run_checked(self, host, cmd)
