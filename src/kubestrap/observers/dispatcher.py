# src/kubestrap/observers/dispatcher.py
from __future__ import annotations

import logging
import threading
from typing import List, Optional

from .events import BaseEvent
from .interface import Observer

log = logging.getLogger("kubestrap")


class EventBus:
    """
    Fans events out to observers. Host workers emit from many threads, so
    delivery is serialized.
    """

    def __init__(self, observers: Optional[List[Observer]] = None):
        self._observers = list(observers or [])
        self._lock = threading.Lock()

    def subscribe(self, observer: Observer) -> None:
        with self._lock:
            self._observers.append(observer)

    def emit(self, event: BaseEvent) -> None:
        with self._lock:
            for ob in self._observers:
                try:
                    ob.notify(event)
                except Exception as exc:
                    # observers must not break a bootstrap run
                    log.debug(f"observer {ob.__class__.__name__} failed on {event.__class__.__name__}: {exc}")
