"""Dependency graph for stack resources.

Builds a DAG from the References found in node attributes. Edges run
dependency -> dependent. Computes a stable topological order (ties broken
by declaration order) used for create/update, and its reverse for delete.
"""

import heapq
import logging
from collections import deque
from typing import Optional

from stack_opr.errors import CycleError, ValidationError
from stack_opr.model import ResourceNode

logger = logging.getLogger(__name__)

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


class DependencyGraph:
    """Directed acyclic graph derived from resource references.

    Provides ordered traversal for lifecycle operations:
    - topological_order(): dependencies before dependents
    - reverse_order(): dependents before dependencies
    """

    def __init__(self, nodes: list[ResourceNode]):
        """Build dependency graph from declared nodes.

        Args:
            nodes: Validated resource nodes in declaration order

        Raises:
            ValidationError: If an identifier is duplicated or a reference dangles
            CycleError: If the references form a cycle
        """
        self._nodes: dict[str, ResourceNode] = {}
        self._index: dict[str, int] = {}
        self._dependencies: dict[str, list[str]] = {}
        self._dependents: dict[str, list[str]] = {}
        self._order: list[str] = []
        self._build_graph(nodes)
        self._detect_cycles()
        self._order = self._topological_sort()

    def _build_graph(self, nodes: list[ResourceNode]) -> None:
        """Index nodes and wire reference edges."""
        violations = []
        for node in nodes:
            if node.id in self._nodes:
                violations.append(f"Duplicate node identifier: '{node.id}'")
                continue
            self._index[node.id] = len(self._index)
            self._nodes[node.id] = node
            self._dependencies[node.id] = []
            self._dependents[node.id] = []

        for node in self._nodes.values():
            for dep_id in node.dependency_ids():
                if dep_id not in self._nodes:
                    violations.append(
                        f"Node '{node.id}' references unknown node '{dep_id}'"
                    )
                    continue
                self._dependencies[node.id].append(dep_id)
                self._dependents[dep_id].append(node.id)

        if violations:
            raise ValidationError(violations)

        # Keep dependent lists in declaration order for stable traversal
        for dependents in self._dependents.values():
            dependents.sort(key=self._index.__getitem__)

        edge_count = sum(len(d) for d in self._dependencies.values())
        logger.debug(f"Built dependency graph: {len(self._nodes)} nodes, {edge_count} edges")

    def _detect_cycles(self) -> None:
        """Three-color DFS over dependent -> dependency edges.

        Raises:
            CycleError: With the full cycle path, e.g. ['a', 'b', 'a']
                meaning a references b and b references a.
        """
        color = {node_id: _UNVISITED for node_id in self._nodes}
        path: list[str] = []

        def _visit(node_id: str) -> None:
            color[node_id] = _IN_PROGRESS
            path.append(node_id)
            for dep_id in self._dependencies[node_id]:
                if color[dep_id] == _IN_PROGRESS:
                    start = path.index(dep_id)
                    raise CycleError(path[start:] + [dep_id])
                if color[dep_id] == _UNVISITED:
                    _visit(dep_id)
            path.pop()
            color[node_id] = _DONE

        for node_id in self._nodes:
            if color[node_id] == _UNVISITED:
                _visit(node_id)

    def _topological_sort(self) -> list[str]:
        """Kahn's algorithm; among ready nodes the earliest declared goes first."""
        remaining = {node_id: len(deps) for node_id, deps in self._dependencies.items()}
        ready = [self._index[n] for n, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        ids = list(self._nodes)

        ordered: list[str] = []
        while ready:
            node_id = ids[heapq.heappop(ready)]
            ordered.append(node_id)
            for dependent in self._dependents[node_id]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, self._index[dependent])
        return ordered

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> list[ResourceNode]:
        """Nodes in declaration order."""
        return list(self._nodes.values())

    @property
    def edges(self) -> list[tuple[str, str]]:
        """(dependency, dependent) pairs in topological order."""
        return [
            (node_id, dependent)
            for node_id in self._order
            for dependent in self._dependents[node_id]
        ]

    @property
    def roots(self) -> list[ResourceNode]:
        """Nodes with no dependencies."""
        return [self._nodes[n] for n in self._order if not self._dependencies[n]]

    def get_node(self, node_id: str) -> ResourceNode:
        """Get a node by identifier.

        Raises:
            KeyError: If node id not found
        """
        return self._nodes[node_id]

    def declaration_index(self, node_id: str) -> int:
        return self._index[node_id]

    def dependencies_of(self, node_id: str) -> list[str]:
        """Direct dependencies of a node, in reference order."""
        return list(self._dependencies[node_id])

    def dependents_of(self, node_id: str) -> list[str]:
        """Direct dependents of a node, in declaration order."""
        return list(self._dependents[node_id])

    def descendants_of(self, node_id: str) -> list[str]:
        """All transitive dependents of a node via BFS."""
        descendants: list[str] = []
        seen = {node_id}
        queue: deque[str] = deque(self._dependents[node_id])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            descendants.append(current)
            queue.extend(self._dependents[current])
        return descendants

    def topological_order(self) -> list[ResourceNode]:
        """Return nodes with dependencies before dependents."""
        return [self._nodes[n] for n in self._order]

    def reverse_order(self) -> list[ResourceNode]:
        """Return nodes with dependents before dependencies."""
        return list(reversed(self.topological_order()))

    def has_path(self, source: str, target: str) -> bool:
        """True if target transitively depends on source."""
        return target in self.descendants_of(source)

    def depth_of(self, node_id: str, _memo: Optional[dict[str, int]] = None) -> int:
        """Longest dependency chain below a node (0 for roots)."""
        memo = _memo if _memo is not None else {}
        if node_id not in memo:
            deps = self._dependencies[node_id]
            memo[node_id] = 0 if not deps else 1 + max(self.depth_of(d, memo) for d in deps)
        return memo[node_id]
