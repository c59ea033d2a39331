"""Dependency graph (DAG) over missions."""

import logging
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Directed Acyclic Graph (DAG) of mission dependencies."""

    def __init__(self):
        """Initialize empty graph."""
        self.dependencies: dict[str, set[str]] = {}  # mission_id -> missions it waits on
        self.edges: dict[str, set[str]] = {}  # mission_id -> missions waiting on it

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, Iterable[str]]]) -> "DependencyGraph":
        graph = cls()
        for mission_id, depends_on in pairs:
            graph.add_node(mission_id, depends_on)
        return graph

    def add_node(self, mission_id: str, depends_on: Iterable[str] = ()) -> None:
        """
        Add mission node to graph.

        Args:
            mission_id: Mission to add
            depends_on: Missions that must complete first
        """
        self.dependencies.setdefault(mission_id, set())
        self.edges.setdefault(mission_id, set())

        for dep_id in depends_on:
            self.add_edge(mission_id, dep_id)

    def add_edge(self, mission_id: str, dep_id: str) -> None:
        self.dependencies.setdefault(mission_id, set()).add(dep_id)
        self.dependencies.setdefault(dep_id, set())
        self.edges.setdefault(dep_id, set()).add(mission_id)
        self.edges.setdefault(mission_id, set())

    def get_dependents(self, mission_id: str) -> set[str]:
        """
        Get every mission that transitively waits on the given one.

        Args:
            mission_id: Mission to start from

        Returns:
            Set of dependent mission ids (not including mission_id)
        """
        seen: set[str] = set()
        stack = list(self.edges.get(mission_id, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.edges.get(current, ()))
        seen.discard(mission_id)
        return seen

    def find_cycle(self) -> Optional[list[str]]:
        """
        Detect a dependency cycle.

        Returns:
            Cycle path (first node repeated at the end), or None if acyclic
        """
        visited: set[str] = set()
        rec_stack: set[str] = set()

        def visit(mission_id: str, path: list[str]) -> Optional[list[str]]:
            """DFS to detect cycles."""
            visited.add(mission_id)
            rec_stack.add(mission_id)
            path.append(mission_id)

            for dependent_id in sorted(self.edges.get(mission_id, ())):
                if dependent_id not in visited:
                    cycle = visit(dependent_id, path.copy())
                    if cycle:
                        return cycle
                elif dependent_id in rec_stack:
                    return path[path.index(dependent_id):] + [dependent_id]

            rec_stack.remove(mission_id)
            return None

        for mission_id in sorted(self.dependencies):
            if mission_id not in visited:
                cycle = visit(mission_id, [])
                if cycle:
                    return cycle

        return None

    def would_create_cycle(self, mission_id: str, dep_id: str) -> bool:
        """True if making mission_id wait on dep_id closes a loop."""
        if mission_id == dep_id:
            return True
        return mission_id in self._ancestors(dep_id)

    def get_execution_order(self) -> list[list[str]]:
        """
        Get topological sort of missions (execution order by levels).

        Returns:
            List of levels, where each level holds missions that can run in parallel

        Raises:
            ValueError: If graph has cycles
        """
        cycle = self.find_cycle()
        if cycle:
            raise ValueError(f"Graph has circular dependency: {' -> '.join(cycle)}")

        in_degree = {mission_id: len(deps) for mission_id, deps in self.dependencies.items()}
        remaining = set(self.dependencies)
        levels = []

        while remaining:
            current_level = sorted(m for m in remaining if in_degree[m] == 0)
            levels.append(current_level)

            for mission_id in current_level:
                remaining.remove(mission_id)
                for dependent_id in self.edges.get(mission_id, ()):
                    in_degree[dependent_id] -= 1

        return levels

    def _ancestors(self, mission_id: str) -> set[str]:
        seen: set[str] = set()
        stack = list(self.dependencies.get(mission_id, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependencies.get(current, ()))
        return seen
