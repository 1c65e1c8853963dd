# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/convergence.py
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import ConvergenceStateError, StoreWriteError
from .models import ConvergenceRecord, Host, Step, StepStatus

log = logging.getLogger("kubestrap")

Key = Tuple[str, str]


def _key(host: Host | str, step: Step | str) -> Key:
    h = host.name if isinstance(host, Host) else host
    s = step.id if isinstance(step, Step) else step
    return h, s


class ConvergenceStore:
    """
    Per (host, step) completion state. Backed by a JSON file so operators can
    read it; with no path it lives in memory only.

    Every write goes through one lock and rewrites the file atomically, so
    concurrent host workers never interleave partial writes.
    """

    def __init__(self, path: Optional[str | Path] = None):
        self.path = Path(path).expanduser() if path else None
        self._records: Dict[Key, ConvergenceRecord] = {}
        self._lock = threading.Lock()
        if self.path is not None and self.path.exists():
            self._load()

    def _load(self) -> None:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
            records = [ConvergenceRecord.from_dict(r) for r in raw]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise ConvergenceStateError(f"cannot read convergence state {self.path}: {exc}") from exc
        for r in records:
            self._records[(r.host, r.step_id)] = r
        log.debug(f"loaded {len(records)} convergence records from {self.path}")

    def _flush(self) -> None:
        if self.path is None:
            return
        payload = json.dumps(
            [r.to_dict() for r in sorted(self._records.values(), key=lambda r: (r.host, r.step_id))],
            indent=2,
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".convergence-", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as exc:
            raise StoreWriteError(f"cannot write convergence state {self.path}: {exc}") from exc

    # ------------------ public API ------------------

    def get(self, host: Host | str, step: Step | str) -> ConvergenceRecord:
        k = _key(host, step)
        with self._lock:
            rec = self._records.get(k)
        return rec or ConvergenceRecord(host=k[0], step_id=k[1])

    def record(
        self,
        host: Host | str,
        step: Step | str,
        status: StepStatus,
        error: Optional[str] = None,
    ) -> ConvergenceRecord:
        k = _key(host, step)
        rec = ConvergenceRecord(
            host=k[0],
            step_id=k[1],
            status=status,
            last_error=error,
            timestamp=datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        )
        with self._lock:
            previous = self._records.get(k)
            self._records[k] = rec
            try:
                self._flush()
            except StoreWriteError:
                # keep memory consistent with what is on disk
                if previous is None:
                    self._records.pop(k, None)
                else:
                    self._records[k] = previous
                raise
        return rec

    def records(self, host: Optional[Host | str] = None) -> List[ConvergenceRecord]:
        name = host.name if isinstance(host, Host) else host
        with self._lock:
            recs = list(self._records.values())
        if name is not None:
            recs = [r for r in recs if r.host == name]
        return sorted(recs, key=lambda r: (r.host, r.step_id))

    def reset(self, host: Optional[Host | str] = None) -> int:
        """
        Explicit reset, the only way records are ever deleted. Returns how many were dropped.
        """
        name = host.name if isinstance(host, Host) else host
        with self._lock:
            kept = {k: r for k, r in self._records.items() if name is not None and k[0] != name}
            dropped = len(self._records) - len(kept)
            previous, self._records = self._records, kept
            try:
                self._flush()
            except StoreWriteError:
                self._records = previous
                raise
        log.info(f"reset {dropped} convergence records" + (f" for {name}" if name else ""))
        return dropped
