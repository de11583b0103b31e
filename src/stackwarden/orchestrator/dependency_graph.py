"""Dependency graph of stacks."""

import heapq
from collections import defaultdict, deque
from typing import Dict, Iterable, List, Optional, Set

from stackwarden.utils.errors import CyclicDependencyError, DependencyError


class DependencyGraph:
    """Directed graph of stack dependencies.

    Edges point from a stack to the stacks it depends on. Ordering among
    mutually independent stacks is alphabetical, so every query is
    deterministic.
    """

    def __init__(self):
        """Initialize empty dependency graph."""
        self._dependencies: Dict[str, List[str]] = {}
        self._dependents: Dict[str, Set[str]] = defaultdict(set)

    @classmethod
    def from_mapping(cls, dependencies: Dict[str, Iterable[str]]) -> "DependencyGraph":
        graph = cls()
        for name in sorted(dependencies):
            graph.add_stack(name, dependencies[name])
        return graph

    def add_stack(self, name: str, dependencies: Iterable[str]) -> None:
        """Add a stack, or replace the dependency list of an existing one.

        Args:
            name: Stack name
            dependencies: Names of stacks this stack depends on, in declared order
        """
        for dep in self._dependencies.get(name, []):
            self._dependents[dep].discard(name)

        self._dependencies[name] = list(dependencies)
        for dep in self._dependencies[name]:
            self._dependents[dep].add(name)

    def get_dependents(self, name: str) -> Set[str]:
        """Get stacks that directly depend on a stack."""
        return set(self._dependents.get(name, set()))

    def get_all_dependencies(self, name: str) -> Set[str]:
        """Get all transitive dependencies of a stack.

        Raises:
            DependencyError: If a stack in the chain is not in the graph
        """
        visited = set()
        queue = deque([name])

        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            if current not in self._dependencies:
                raise DependencyError(
                    f"Required stack '{current}' is not declared", dependency=current
                )
            visited.add(current)
            for dep in self._dependencies[current]:
                if dep not in visited:
                    queue.append(dep)

        visited.discard(name)
        return visited

    def get_all_dependents(self, name: str) -> Set[str]:
        """Get all stacks that transitively depend on a stack."""
        visited = set()
        queue = deque([name])

        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            for dependent in sorted(self._dependents.get(current, ())):
                if dependent not in visited:
                    queue.append(dependent)

        visited.discard(name)
        return visited

    def detect_circular_dependencies(self, names: Optional[Iterable[str]] = None) -> Optional[List[str]]:
        """Find a cycle reachable from ``names`` (all stacks by default).

        Returns:
            Stack names forming the cycle with the first name repeated at the
            end, or None if there is no cycle
        """
        # White (0): unvisited, Gray (1): on the current path, Black (2): done
        allowed = set(names) if names is not None else None
        color: Dict[str, int] = defaultdict(int)
        path: List[str] = []

        def dfs(node: str) -> Optional[List[str]]:
            color[node] = 1
            path.append(node)
            for dep in self._dependencies.get(node, []):
                if allowed is not None and dep not in allowed:
                    continue
                if color[dep] == 1:
                    return path[path.index(dep):] + [dep]
                if color[dep] == 0:
                    cycle = dfs(dep)
                    if cycle:
                        return cycle
            path.pop()
            color[node] = 2
            return None

        for node in sorted(allowed if allowed is not None else self._dependencies):
            if color[node] == 0:
                cycle = dfs(node)
                if cycle:
                    return cycle
        return None

    def topological_sort(self, names: Optional[Iterable[str]] = None) -> List[str]:
        """Order stacks so every stack comes after its dependencies.

        Args:
            names: Restrict the sort to these stacks; edges to stacks outside
                the set are ignored

        Raises:
            CyclicDependencyError: If the selected stacks contain a cycle
        """
        subset = set(names) if names is not None else set(self._dependencies)
        cycle = self.detect_circular_dependencies(subset)
        if cycle:
            raise CyclicDependencyError(cycle)

        in_degree = {
            n: len([d for d in self._dependencies.get(n, []) if d in subset]) for n in subset
        }
        ready = [n for n, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        result = []

        while ready:
            node = heapq.heappop(ready)
            result.append(node)
            for dependent in self._dependents.get(node, ()):
                if dependent in subset:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        heapq.heappush(ready, dependent)

        if len(result) != len(subset):
            raise CyclicDependencyError(sorted(subset - set(result)))
        return result

    def get_destruction_waves(self, names: Iterable[str]) -> List[List[str]]:
        """Group stacks into teardown waves.

        A stack appears in a wave only after every dependent of it within
        ``names`` appeared in an earlier wave. Stacks within a wave have no
        dependency on each other.

        Raises:
            CyclicDependencyError: If the selected stacks contain a cycle
        """
        subset = set(names)
        cycle = self.detect_circular_dependencies(subset)
        if cycle:
            raise CyclicDependencyError(cycle)

        remaining = {n: len(self._dependents.get(n, set()) & subset) for n in subset}
        waves = []
        current = sorted(n for n, count in remaining.items() if count == 0)

        while current:
            waves.append(current)
            next_wave = set()
            for node in current:
                for dep in self._dependencies.get(node, []):
                    if dep in subset:
                        remaining[dep] -= 1
                        if remaining[dep] == 0:
                            next_wave.add(dep)
            current = sorted(next_wave)

        return waves
