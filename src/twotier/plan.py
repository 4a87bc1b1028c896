"""Ordered resource plan.

A plan is a set of resource descriptions keyed by logical id, each naming
the resources it depends on. ``ordered()`` yields them in an order the
provider can create them in.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Tuple

from .errors import DependencyCycleError, TopologyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSpec:
    logical_id: str
    type: str
    properties: Dict[str, Any] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logical_id": self.logical_id,
            "type": self.type,
            "properties": self.properties,
            "depends_on": list(self.depends_on),
        }


class ResourcePlan:
    """Insertion-ordered collection of resource descriptions."""

    def __init__(self) -> None:
        self._resources: Dict[str, ResourceSpec] = {}

    def add(self, logical_id: str, type_: str, properties: Dict[str, Any] | None = None,
            depends_on: Tuple[str, ...] | List[str] = ()) -> ResourceSpec:
        if logical_id in self._resources:
            raise TopologyError(f"Duplicate logical id in plan: {logical_id}")
        # Preserve order, drop repeats.
        deps = tuple(dict.fromkeys(depends_on))
        spec = ResourceSpec(logical_id=logical_id, type=type_, properties=dict(properties or {}), depends_on=deps)
        self._resources[logical_id] = spec
        return spec

    def __contains__(self, logical_id: object) -> bool:
        return logical_id in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self) -> Iterator[ResourceSpec]:
        return iter(self._resources.values())

    def get(self, logical_id: str) -> ResourceSpec:
        return self._resources[logical_id]

    def of_type(self, type_: str) -> List[ResourceSpec]:
        return [spec for spec in self._resources.values() if spec.type == type_]

    def ordered(self) -> List[ResourceSpec]:
        """Return resources so that every dependency precedes its dependents.

        Kahn's algorithm; among resources that are ready at the same time the
        one added first wins, so the order is deterministic.

        Raises:
            DependencyCycleError: on a dangling dependency or a cycle.
        """
        position = {logical_id: index for index, logical_id in enumerate(self._resources)}
        indegree = {logical_id: 0 for logical_id in self._resources}
        dependents: Dict[str, List[str]] = {logical_id: [] for logical_id in self._resources}

        for spec in self._resources.values():
            for dep in spec.depends_on:
                if dep not in self._resources:
                    raise DependencyCycleError(f"{spec.logical_id} depends on unknown resource {dep}")
                indegree[spec.logical_id] += 1
                dependents[dep].append(spec.logical_id)

        ready = deque(logical_id for logical_id, count in indegree.items() if count == 0)
        result: List[ResourceSpec] = []
        while ready:
            current = ready.popleft()
            result.append(self._resources[current])
            released = []
            for dependent in dependents[current]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    released.append(dependent)
            # Keep the ready queue sorted by insertion position.
            ready = deque(sorted([*ready, *released], key=position.__getitem__))

        if len(result) != len(self._resources):
            stuck = sorted((lid for lid, count in indegree.items() if count > 0), key=position.__getitem__)
            raise DependencyCycleError(f"Dependency cycle among: {', '.join(stuck)}")

        logger.debug(f"Ordered {len(result)} resources")
        return result
