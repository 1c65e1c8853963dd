import json
import threading
from pathlib import Path

import pytest

from kubestrap.bootstrap.convergence import ConvergenceStore
from kubestrap.bootstrap.errors import ConvergenceStateError, StoreWriteError
from kubestrap.bootstrap.models import Host, Role, StepStatus


def test_unknown_record_defaults_to_not_started():
    store = ConvergenceStore()
    rec = store.get("w1", "install-containerd")
    assert rec.status == StepStatus.NOT_STARTED
    assert rec.host == "w1"
    assert rec.timestamp is None


def test_records_survive_a_restart(tmp_path: Path):
    path = tmp_path / "state" / "cluster.json"
    host = Host(name="w1", address="10.0.0.11", role=Role.WORKER)

    store = ConvergenceStore(path)
    store.record(host, "install-containerd", StepStatus.DONE)
    store.record(host, "join-cluster", StepStatus.FAILED, "connection refused")

    again = ConvergenceStore(path)
    assert again.get(host, "install-containerd").status == StepStatus.DONE
    failed = again.get("w1", "join-cluster")
    assert failed.status == StepStatus.FAILED
    assert failed.last_error == "connection refused"
    assert failed.timestamp.endswith("Z")

    raw = json.loads(path.read_text())
    assert {"host", "stepId", "status", "lastError", "timestamp"} <= set(raw[0])


def test_reset_drops_only_the_named_host(tmp_path: Path):
    store = ConvergenceStore(tmp_path / "s.json")
    store.record("w1", "a", StepStatus.DONE)
    store.record("w1", "b", StepStatus.DONE)
    store.record("w2", "a", StepStatus.DONE)

    assert store.reset("w1") == 2
    assert [r.host for r in store.records()] == ["w2"]
    assert ConvergenceStore(tmp_path / "s.json").records("w1") == []

    assert store.reset() == 1
    assert store.records() == []


def test_malformed_state_file_is_refused(tmp_path: Path):
    path = tmp_path / "s.json"
    path.write_text("{not json")
    with pytest.raises(ConvergenceStateError):
        ConvergenceStore(path)


def test_write_failure_raises_and_keeps_memory_consistent(tmp_path: Path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    store = ConvergenceStore(blocker / "state.json")

    with pytest.raises(StoreWriteError):
        store.record("w1", "a", StepStatus.DONE)
    assert store.get("w1", "a").status == StepStatus.NOT_STARTED


def test_failed_reset_keeps_every_record(tmp_path: Path):
    store = ConvergenceStore(tmp_path / "s.json")
    store.record("w1", "a", StepStatus.DONE)
    store.record("w2", "a", StepStatus.DONE)

    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    store.path = blocker / "state.json"

    with pytest.raises(StoreWriteError):
        store.reset("w1")
    with pytest.raises(StoreWriteError):
        store.reset()
    assert [r.host for r in store.records()] == ["w1", "w2"]
    assert store.get("w1", "a").status == StepStatus.DONE


def test_concurrent_writers_do_not_lose_records(tmp_path: Path):
    path = tmp_path / "s.json"
    store = ConvergenceStore(path)

    def writer(n):
        for i in range(20):
            store.record(f"h{n}", f"step-{i}", StepStatus.DONE)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(ConvergenceStore(path).records()) == 6 * 20
