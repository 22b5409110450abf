"""Dependencies between units of work.

A unit is ready once every unit it depends on has completed. Cycles would
leave their members waiting forever, so they are rejected when the edge
that closes them is added.
"""

from typing import Iterable, Optional

from .errors import CycleError


class DependencyGraph:
    """Directed acyclic graph of unit ids."""

    def __init__(self) -> None:
        # unit -> units it depends on, insertion ordered
        self._depends_on: dict[str, list[str]] = {}

    @classmethod
    def from_mapping(cls, mapping: dict[str, Iterable[str]]) -> "DependencyGraph":
        """Build a graph from {unit: [units it depends on]}.

        Raises:
            CycleError: the mapping contains a cycle
        """
        graph = cls()
        for unit in mapping:
            graph.add_unit(unit)
        for unit, prerequisites in mapping.items():
            for prerequisite in prerequisites:
                graph.add_dependency(unit, prerequisite)
        return graph

    @property
    def units(self) -> list[str]:
        return list(self._depends_on)

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self._depends_on

    def __len__(self) -> int:
        return len(self._depends_on)

    def add_unit(self, unit_id: str) -> None:
        self._depends_on.setdefault(unit_id, [])

    def add_dependency(self, unit_id: str, depends_on: str) -> None:
        """Record that unit_id cannot start before depends_on completes.

        Raises:
            CycleError: the edge would close a cycle (including a self-edge)
        """
        self.add_unit(unit_id)
        self.add_unit(depends_on)
        if depends_on in self._depends_on[unit_id]:
            return

        path = self._path(depends_on, unit_id)
        if path is not None:
            raise CycleError([unit_id] + path)

        self._depends_on[unit_id].append(depends_on)

    def _path(self, start: str, goal: str) -> Optional[list[str]]:
        """A dependency path from start to goal, following depends-on edges."""
        stack = [(start, [start])]
        seen = set()
        while stack:
            node, path = stack.pop()
            if node == goal:
                return path
            if node in seen:
                continue
            seen.add(node)
            for prerequisite in self._depends_on.get(node, []):
                stack.append((prerequisite, path + [prerequisite]))
        return None

    def dependencies_of(self, unit_id: str) -> list[str]:
        return list(self._depends_on.get(unit_id, []))

    def dependents_of(self, unit_id: str) -> list[str]:
        return [u for u, prerequisites in self._depends_on.items() if unit_id in prerequisites]

    def ready_units(self, completed: Iterable[str]) -> list[str]:
        """Units not yet completed whose prerequisites all have."""
        done = set(completed)
        return [
            unit for unit, prerequisites in self._depends_on.items()
            if unit not in done and all(p in done for p in prerequisites)
        ]

    def newly_ready(self, completed_unit: str, completed: Iterable[str]) -> list[str]:
        """Dependents of completed_unit that became ready because it finished."""
        done = set(completed) | {completed_unit}
        return [
            unit for unit in self.dependents_of(completed_unit)
            if unit not in done and all(p in done for p in self._depends_on[unit])
        ]

    def blocked_by(self, unit_id: str) -> list[str]:
        """Every unit that transitively depends on unit_id."""
        blocked: list[str] = []
        frontier = [unit_id]
        while frontier:
            current = frontier.pop(0)
            for dependent in self.dependents_of(current):
                if dependent not in blocked:
                    blocked.append(dependent)
                    frontier.append(dependent)
        return blocked
