import threading
import time

import pytest

from kubestrap.bootstrap.convergence import ConvergenceStore
from kubestrap.bootstrap.coordinator import MAX_CONCURRENCY, RoleCoordinator
from kubestrap.bootstrap.errors import PermanentActionError, StoreWriteError
from kubestrap.bootstrap.executor import RetryPolicy, StepExecutor
from kubestrap.bootstrap.models import (
    Host,
    HostStatus,
    OutcomeStatus,
    Role,
    RoleStatus,
    Step,
    StepStatus,
)
from kubestrap.bootstrap.plan import HostPlan
from kubestrap.observers.dispatcher import EventBus


def _workers(*names):
    return [Host(name=n, address=f"10.0.1.{i}", role=Role.WORKER) for i, n in enumerate(names, start=1)]


def _coordinator(transport, store, capture=None, **kw):
    bus = EventBus([capture] if capture else [])
    ex = StepExecutor(transport, retry=RetryPolicy(attempts=1, base_delay=0, max_delay=0), bus=bus)
    return RoleCoordinator(ex, store, bus=bus, **kw)


def noop(ctx):
    return None


def test_failure_stops_only_that_host(transport, store):
    ran = []
    lock = threading.Lock()

    def track(name):
        def apply(ctx):
            with lock:
                ran.append((ctx.host.name, name))
            if name == "two" and ctx.host.name == "b":
                raise PermanentActionError("broken host")
        return apply

    plan = HostPlan([Step(n, n, track(n)) for n in ("one", "two", "three")])
    result = _coordinator(transport, store).run(_workers("a", "b", "c"), plan)

    assert result.status == RoleStatus.PARTIAL_FAILURE
    assert result.hosts["a"].status == HostStatus.SUCCEEDED
    assert result.hosts["c"].status == HostStatus.SUCCEEDED
    b = result.hosts["b"]
    assert b.status == HostStatus.FAILED
    assert b.failed_step.step_id == "two"
    assert ("b", "three") not in ran
    assert [o.step_id for o in b.outcomes] == ["one", "two"]
    assert store.get("b", "three").status == StepStatus.NOT_STARTED


def test_every_host_failing_is_all_failed(transport, store):
    def boom(ctx):
        raise PermanentActionError("nope")

    result = _coordinator(transport, store).run(_workers("a", "b"), HostPlan([Step("one", "one", boom)]))
    assert result.status == RoleStatus.ALL_FAILED
    assert sorted(result.failed_hosts()) == ["a", "b"]


def test_no_hosts_is_all_done(transport, store):
    result = _coordinator(transport, store).run([], HostPlan([Step("one", "one", noop)]), role=Role.WORKER)
    assert result.status == RoleStatus.ALL_DONE
    assert result.hosts == {}


def test_concurrency_is_bounded(transport, store, capture):
    active = 0
    peak = 0
    lock = threading.Lock()

    def busy(ctx):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1

    coord = _coordinator(transport, store, capture, concurrency=2)
    result = coord.run(_workers("a", "b", "c", "d", "e", "f"), HostPlan([Step("one", "one", busy)]))

    assert result.status == RoleStatus.ALL_DONE
    assert peak <= 2
    started = next(e for e in capture.events if e.__class__.__name__ == "RoleStarted")
    assert started.concurrency == 2


def test_concurrency_is_capped(transport, store):
    coord = _coordinator(transport, store, concurrency=500)
    assert coord._workers(200) == MAX_CONCURRENCY
    assert coord._workers(3) == 3


def test_deadline_marks_unfinished_hosts_timeout(transport, store):
    release = threading.Event()

    def maybe_hang(ctx):
        if ctx.host.name == "slow":
            release.wait(5)

    plan = HostPlan([Step("hang", "hang", maybe_hang), Step("after", "after", noop)])
    coord = _coordinator(transport, store, deadline=0.3)
    try:
        result = coord.run(_workers("fast", "slow"), plan)
    finally:
        release.set()

    assert result.hosts["fast"].status == HostStatus.SUCCEEDED
    slow = result.hosts["slow"]
    assert slow.status == HostStatus.TIMEOUT
    assert slow.outcomes[-1].step_id == "hang"
    assert slow.outcomes[-1].status == OutcomeStatus.TIMEOUT
    assert result.status == RoleStatus.PARTIAL_FAILURE


def test_cancellation_is_honored_between_steps(transport, store):
    cancel = threading.Event()

    def first(ctx):
        cancel.set()
        # long enough for the coordinator to observe the signal
        time.sleep(0.5)

    plan = HostPlan([Step("first", "first", first), Step("second", "second", noop)])
    result = _coordinator(transport, store).run(_workers("a"), plan, cancel=cancel)

    a = result.hosts["a"]
    assert a.status == HostStatus.CANCELLED
    assert a.outcome("first").status == OutcomeStatus.DONE
    assert a.outcome("second").status == OutcomeStatus.CANCELLED
    assert store.get("a", "first").status == StepStatus.DONE
    assert store.get("a", "second").status == StepStatus.CANCELLED


def test_first_successful_host_wins_outputs(transport, store):
    delays = {"a": 0.0, "b": 0.1, "c": 0.4}

    def produce(ctx):
        time.sleep(delays[ctx.host.name])
        return ctx.host.name

    def finish(ctx):
        if ctx.host.name == "a":
            raise PermanentActionError("a fails after producing output")

    plan = HostPlan([
        Step("produce", "produce", produce, extract=lambda r: f"value-from-{r}", output="value"),
        Step("finish", "finish", finish),
    ])
    result = _coordinator(transport, store).run(_workers("a", "b", "c"), plan)

    assert result.outputs == {"value": "value-from-b"}
    assert result.output_sources == {"value": "b"}
    assert result.hosts["c"].outputs == {"value": "value-from-c"}


class BrokenStore(ConvergenceStore):
    def __init__(self, bad_host):
        super().__init__()
        self.bad_host = bad_host

    def record(self, host, step, status, error=None):
        name = host if isinstance(host, str) else host.name
        if name == self.bad_host:
            raise StoreWriteError("disk gone")
        return super().record(host, step, status, error)


def test_store_write_failure_aborts_the_role(transport):
    plan = HostPlan([Step("one", "one", noop), Step("two", "two", noop)])
    with pytest.raises(StoreWriteError):
        _coordinator(transport, BrokenStore("b")).run(_workers("a", "b"), plan)


def test_role_events_bracket_host_events(transport, store, capture):
    _coordinator(transport, store, capture).run(_workers("a"), HostPlan([Step("one", "one", noop)]))
    kinds = capture.kinds()
    assert kinds[0] == "RoleStarted"
    assert kinds[-1] == "RoleFinished"
    assert "HostStarted" in kinds and "HostFinished" in kinds


@pytest.mark.parametrize("broken", ["h0", "h2", "h4"])
def test_isolation_holds_whichever_host_fails(transport, store, broken):
    def step(ctx):
        if ctx.host.name == broken:
            raise PermanentActionError("forced")

    hosts = _workers(*[f"h{i}" for i in range(5)])
    result = _coordinator(transport, store, concurrency=3).run(hosts, HostPlan([Step("one", "one", step)]))

    assert result.failed_hosts() == [broken]
    assert len(result.succeeded_hosts()) == 4
