# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Dict, Iterable, List, Set, Tuple

from .errors import DuplicateStepError, StepOrderError, UnknownStepDependencyError
from .models import Host, Role, Step


def _validate(steps: List[Step]) -> None:
    seen: Set[str] = set()
    for s in steps:
        if s.id in seen:
            raise DuplicateStepError(f"Step '{s.id}' is declared more than once")
        seen.add(s.id)

    by_id = {s.id: s for s in steps}
    position = {s.id: i for i, s in enumerate(steps)}
    for s in steps:
        for d in s.after:
            if d not in by_id:
                raise UnknownStepDependencyError(
                    f"Step '{s.id}' depends on unknown step '{d}'"
                )
            if position[d] >= position[s.id]:
                raise StepOrderError(
                    f"Step '{s.id}' must come after '{d}' in the plan"
                )
            missing = s.roles - by_id[d].roles
            if missing:
                raise StepOrderError(
                    f"Step '{s.id}' runs on {sorted(r.value for r in missing)} "
                    f"where its dependency '{d}' never runs"
                )


class HostPlan:
    """
    Ordered steps for every role. The order given is the execution order and
    must respect each step's declared `after` dependencies. Role filtering
    happens once, here; there is no execution logic in a plan.
    """

    def __init__(self, steps: Iterable[Step]):
        self._steps: Tuple[Step, ...] = tuple(steps)
        _validate(list(self._steps))
        self._by_id: Dict[str, Step] = {s.id: s for s in self._steps}
        self._by_role: Dict[Role, Tuple[Step, ...]] = {
            role: tuple(s for s in self._steps if role in s.roles) for role in Role
        }

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self):
        return iter(self._steps)

    @property
    def steps(self) -> Tuple[Step, ...]:
        return self._steps

    def for_role(self, role: Role) -> Tuple[Step, ...]:
        return self._by_role[role]

    def steps_for(self, host: Host) -> Tuple[Step, ...]:
        return self._by_role[host.role]

    def step(self, step_id: str) -> Step:
        return self._by_id[step_id]

    def ids(self, role: Role) -> List[str]:
        return [s.id for s in self._by_role[role]]
