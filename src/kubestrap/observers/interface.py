# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations
from typing import Protocol
from .events import BaseEvent


class Observer(Protocol):
    """
    Receives run, role, host and step events. `notify` is called from host
    worker threads while the bus holds its lock, so it must return quickly.
    An exception raised here is logged by the bus and otherwise ignored.
    """

    def notify(self, event: BaseEvent) -> None: ...
