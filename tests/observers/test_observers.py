import json
import logging
from pathlib import Path

from kubestrap.observers.console import ConsoleObserver
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import StepAttempt, StepFailed, StepSucceeded, new_ctx, stamp
from kubestrap.observers.jsonfile import JsonFileObserver
from kubestrap.observers.logger import LoggerObserver

CTX = new_ctx(cluster="lab", run_id="run-1")


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)


class Exploding:
    def notify(self, ev):
        raise RuntimeError("observer bug")


def test_bus_delivers_to_every_observer_and_isolates_failures():
    a, b = Capture(), Capture()
    bus = EventBus([a, Exploding()])
    bus.subscribe(b)

    ev = StepSucceeded(host="w1", step="s1", attempts=1, duration_ms=5, **stamp(CTX))
    bus.emit(ev)

    assert a.events == [ev]
    assert b.events == [ev]


def test_json_file_observer_writes_one_line_per_event(tmp_path: Path):
    path = tmp_path / "events" / "run-1.jsonl"
    obs = JsonFileObserver(path)
    obs.notify(StepAttempt(host="w1", step="s1", attempt=1, **stamp(CTX)))
    obs.notify(StepFailed(host="w1", step="s1", attempts=3, error="boom", **stamp(CTX)))

    lines = [json.loads(ln) for ln in path.read_text().splitlines()]
    assert [ln["type"] for ln in lines] == ["StepAttempt", "StepFailed"]
    assert [ln["seq"] for ln in lines] == [1, 2]
    assert lines[1]["run_id"] == "run-1"
    assert lines[1]["cluster"] == "lab"
    assert lines[1]["error"] == "boom"


def test_logger_observer_warns_on_failure():
    logger = logging.getLogger("kubestrap.test-observer")
    seen = []

    class Grab(logging.Handler):
        def emit(self, record):
            seen.append((record.levelno, record.getMessage()))

    logger.addHandler(Grab())
    logger.setLevel(logging.DEBUG)
    obs = LoggerObserver(logger)
    obs.notify(StepSucceeded(host="w1", step="s1", attempts=1, duration_ms=5, **stamp(CTX)))
    obs.notify(StepFailed(host="w1", step="s2", attempts=3, error="boom", **stamp(CTX)))

    assert seen[0][0] == logging.INFO
    assert seen[1][0] == logging.WARNING
    assert "StepFailed" in seen[1][1] and "boom" in seen[1][1]


def test_console_observer_filters_unless_verbose(capsys):
    ConsoleObserver().notify(StepAttempt(host="w1", step="s1", attempt=1, **stamp(CTX)))
    assert capsys.readouterr().out == ""

    ConsoleObserver(verbose=True).notify(StepAttempt(host="w1", step="s1", attempt=1, **stamp(CTX)))
    assert "StepAttempt" in capsys.readouterr().out

    ConsoleObserver().notify(StepFailed(host="w1", step="s1", attempts=3, error="boom", **stamp(CTX)))
    assert "boom" in capsys.readouterr().err
