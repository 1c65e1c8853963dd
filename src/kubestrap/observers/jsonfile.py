from __future__ import annotations
import json
import threading
from itertools import count
from pathlib import Path
from .interface import Observer
from .events import BaseEvent


class JsonFileObserver(Observer):
    """
    One JSON object per line. Host workers emit concurrently, so each line
    carries a `seq` that gives the delivery order.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._seq = count(1)
        self._lock = threading.Lock()

    def notify(self, event: BaseEvent) -> None:
        with self._lock:
            line = json.dumps({"seq": next(self._seq), "type": event.__class__.__name__, **event.dict()})
            with self.path.open("a") as f:
                f.write(line + "\n")
