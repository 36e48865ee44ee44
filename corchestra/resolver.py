"""
Dependency graph resolution for service start and stop order.

The graph is held as adjacency sets keyed by service name. Start order is
computed with Kahn's algorithm, grouped into layers: every service in a
layer depends only on services in earlier layers, so a layer may start
concurrently. Names within a layer are sorted so the same stack always
yields the same plan.
"""

import logging
from collections.abc import Iterable
from typing import Optional

from corchestra.errors import CyclicDependencyError, DuplicateServiceError, UnknownDependencyError
from corchestra.schemas import ServiceSpec

logger = logging.getLogger(__name__)


class DependencyResolver:
    """Resolves service dependencies into start layers and shutdown order."""

    def __init__(self, specs: Iterable[ServiceSpec]):
        """
        Build the graph and validate it.

        Raises:
            DuplicateServiceError: If two specs share a name
            UnknownDependencyError: If a dependsOn entry has no matching spec
            CyclicDependencyError: If the graph has a cycle
        """
        self._dependencies: dict[str, set[str]] = {}
        for spec in specs:
            if spec.name in self._dependencies:
                raise DuplicateServiceError(spec.name)
            self._dependencies[spec.name] = set(spec.depends_on)

        self._dependents: dict[str, set[str]] = {name: set() for name in self._dependencies}
        for name in sorted(self._dependencies):
            for dep in sorted(self._dependencies[name]):
                if dep not in self._dependencies:
                    raise UnknownDependencyError(name, dep)
                self._dependents[dep].add(name)

        self._layers = self._compute_layers()

    @property
    def services(self) -> list[str]:
        return sorted(self._dependencies)

    def dependencies_of(self, name: str) -> set[str]:
        """Direct dependencies of a service."""
        return set(self._dependencies[name])

    def dependents_of(self, name: str) -> set[str]:
        """All services that depend on name, directly or transitively."""
        found: set[str] = set()
        stack = [name]
        while stack:
            current = stack.pop()
            for dependent in self._dependents[current]:
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return found

    def resolve_layers(self) -> list[list[str]]:
        """Start layers, each sorted by name."""
        return [list(layer) for layer in self._layers]

    def resolve_order(self) -> list[str]:
        """Total start order: layers flattened."""
        return [name for layer in self._layers for name in layer]

    def shutdown_layers(self) -> list[list[str]]:
        """Stop layers: dependents before their dependencies."""
        return [list(layer) for layer in reversed(self._layers)]

    def shutdown_order(self) -> list[str]:
        return [name for layer in self.shutdown_layers() for name in layer]

    def _compute_layers(self) -> list[list[str]]:
        in_degree = {name: len(deps) for name, deps in self._dependencies.items()}
        ready = sorted(name for name, degree in in_degree.items() if degree == 0)
        layers: list[list[str]] = []
        placed = 0

        while ready:
            layers.append(ready)
            placed += len(ready)
            next_ready = []
            for name in ready:
                for dependent in self._dependents[name]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_ready.append(dependent)
            ready = sorted(next_ready)

        if placed != len(self._dependencies):
            remaining = {name for name, degree in in_degree.items() if degree > 0}
            cycle = self._find_cycle(remaining)
            logger.error(f"Dependency cycle: {' -> '.join(cycle)}")
            raise CyclicDependencyError(cycle)

        logger.debug(f"Resolved {len(layers)} layers: {layers}")
        return layers

    def _find_cycle(self, candidates: set[str]) -> list[str]:
        """
        Return one cycle among candidates as a closed path, e.g. [a, b, a].

        Kahn's algorithm leaves every node on or downstream of a cycle with a
        positive in-degree; a depth-first walk along dependency edges inside
        that set is guaranteed to revisit a node.
        """
        visited: set[str] = set()

        def visit(name: str, path: list[str], on_path: set[str]) -> Optional[list[str]]:
            visited.add(name)
            path.append(name)
            on_path.add(name)
            for dep in sorted(self._dependencies[name]):
                if dep not in candidates:
                    continue
                if dep in on_path:
                    return path[path.index(dep):] + [dep]
                if dep not in visited:
                    cycle = visit(dep, path, on_path)
                    if cycle:
                        return cycle
            path.pop()
            on_path.discard(name)
            return None

        for start in sorted(candidates):
            if start not in visited:
                cycle = visit(start, [], set())
                if cycle:
                    return cycle
        # Unreachable for a graph that failed Kahn's algorithm
        return sorted(candidates)
