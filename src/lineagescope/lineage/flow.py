"""Directional flow analysis over a built lineage graph.

All queries are read-only and tolerate unknown node ids by returning empty
results. Every traversal keeps its own visited set, so cyclic graphs
terminate and concurrent queries against the same graph do not interfere.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from lineagescope.lineage.base import (
    LineageEdge,
    LineageGraph,
    LineageNode,
    LineagePath,
    NodeType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlowResult:
    """Result of an upstream or downstream traversal.

    Attributes:
        nodes: Reached nodes in discovery order, excluding the start node
        edges: The edge that first reached each node
        paths: One single-hop path per distinct edge
        depth: Longest hop distance from the start node within the result
    """

    nodes: tuple[LineageNode, ...] = field(default_factory=tuple)
    edges: tuple[LineageEdge, ...] = field(default_factory=tuple)
    paths: tuple[LineagePath, ...] = field(default_factory=tuple)
    depth: int = 0

    @property
    def node_ids(self) -> set[str]:
        return {node.id for node in self.nodes}

    def __len__(self) -> int:
        return len(self.nodes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "paths": [path.to_dict() for path in self.paths],
            "depth": self.depth,
        }


class FlowAnalyzer:
    """Traverse a lineage graph upstream and downstream.

    Example:
        >>> flow = FlowAnalyzer(graph)
        >>> result = flow.get_upstream("view:daily_revenue", max_depth=2)
        >>> [node.id for node in result.nodes]
        ['table:orders', 'external:raw.orders']
    """

    def __init__(self, graph: LineageGraph):
        self._graph = graph

    @property
    def graph(self) -> LineageGraph:
        return self._graph

    # -------------------------------------------------------------------------
    # Directional traversal
    # -------------------------------------------------------------------------

    def get_upstream(
        self,
        node_id: str,
        max_depth: int = -1,
        filter_types: Iterable[NodeType | str] | None = None,
        exclude_external: bool = False,
    ) -> FlowResult:
        """Get everything feeding into a node.

        Args:
            node_id: Starting node ID
            max_depth: Maximum hops to follow (-1 for unlimited)
            filter_types: Only reach and expand nodes of these types
            exclude_external: Neither reach nor expand external nodes

        Returns:
            FlowResult, empty for unknown node ids
        """
        return self._traverse(
            node_id,
            max_depth,
            filter_types,
            exclude_external,
            self._graph.incoming_edges,
            lambda edge: edge.source,
        )

    def get_downstream(
        self,
        node_id: str,
        max_depth: int = -1,
        filter_types: Iterable[NodeType | str] | None = None,
        exclude_external: bool = False,
    ) -> FlowResult:
        """Get everything a node feeds into.

        Args:
            node_id: Starting node ID
            max_depth: Maximum hops to follow (-1 for unlimited)
            filter_types: Only reach and expand nodes of these types
            exclude_external: Neither reach nor expand external nodes

        Returns:
            FlowResult, empty for unknown node ids
        """
        return self._traverse(
            node_id,
            max_depth,
            filter_types,
            exclude_external,
            self._graph.outgoing_edges,
            lambda edge: edge.target,
        )

    def _traverse(
        self,
        node_id: str,
        max_depth: int,
        filter_types: Iterable[NodeType | str] | None,
        exclude_external: bool,
        edges_of: Callable[[str], list[LineageEdge]],
        next_id: Callable[[LineageEdge], str],
    ) -> FlowResult:
        if not self._graph.has_node(node_id):
            return FlowResult()

        allowed = (
            {NodeType(t) for t in filter_types} if filter_types is not None else None
        )
        visited = {node_id}
        nodes: list[LineageNode] = []
        edges: list[LineageEdge] = []
        queue = deque([(node_id, 0)])

        while queue:
            current, depth = queue.popleft()
            if max_depth != -1 and depth >= max_depth:
                continue
            for edge in edges_of(current):
                neighbor_id = next_id(edge)
                if neighbor_id in visited:
                    continue
                neighbor = self._graph.get_node(neighbor_id)
                if neighbor is None:
                    continue
                if exclude_external and neighbor.node_type == NodeType.EXTERNAL:
                    continue
                if allowed is not None and neighbor.node_type not in allowed:
                    continue

                visited.add(neighbor_id)
                nodes.append(neighbor)
                edges.append(edge)
                queue.append((neighbor_id, depth + 1))

        return FlowResult(
            nodes=tuple(nodes),
            edges=tuple(edges),
            paths=tuple(self._paths_from_edges(edges)),
            depth=self._max_depth(edges, node_id, next_id),
        )

    def _paths_from_edges(self, edges: list[LineageEdge]) -> list[LineagePath]:
        paths: list[LineagePath] = []
        seen: set[tuple[str, str]] = set()
        for edge in edges:
            key = (edge.source, edge.target)
            if key in seen:
                continue
            source = self._graph.get_node(edge.source)
            target = self._graph.get_node(edge.target)
            if source is None or target is None:
                continue
            seen.add(key)
            paths.append(LineagePath(nodes=(source, target), edges=(edge,), depth=1))
        return paths

    @staticmethod
    def _max_depth(
        edges: list[LineageEdge],
        start_id: str,
        next_id: Callable[[LineageEdge], str],
    ) -> int:
        """Longest hop distance from the start node via edge relaxation.

        Rounds are capped by the number of reached nodes so cyclic edge
        sets still converge.
        """
        if not edges:
            return 0

        depths = {start_id: 0}
        for _ in range(len(edges) + 1):
            changed = False
            for edge in edges:
                far = next_id(edge)
                near = edge.target if far == edge.source else edge.source
                if near not in depths:
                    continue
                candidate = depths[near] + 1
                if candidate > depths.get(far, 0) and candidate <= len(edges):
                    depths[far] = candidate
                    changed = True
            if not changed:
                break
        return max(depths.values())

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def get_path_between(self, source_id: str, target_id: str) -> list[LineagePath]:
        """Enumerate every simple downstream path from source to target.

        A node may appear on several paths but at most once per path.
        ``depth`` of each path is its hop count.
        """
        source = self._graph.get_node(source_id)
        if source is None or not self._graph.has_node(target_id):
            return []
        if source_id == target_id:
            return [LineagePath(nodes=(source,), edges=(), depth=0)]

        paths: list[LineagePath] = []
        nodes: list[LineageNode] = [source]
        edges: list[LineageEdge] = []
        on_path = {source_id}
        stack = [iter(self._graph.outgoing_edges(source_id))]

        while stack:
            edge = next(stack[-1], None)
            if edge is None:
                stack.pop()
                on_path.discard(nodes.pop().id)
                if edges:
                    edges.pop()
                continue
            if edge.target in on_path:
                continue
            node = self._graph.get_node(edge.target)
            if node is None:
                continue
            if edge.target == target_id:
                paths.append(
                    LineagePath(nodes=(*nodes, node), edges=(*edges, edge), depth=len(edges) + 1)
                )
                continue

            nodes.append(node)
            edges.append(edge)
            on_path.add(edge.target)
            stack.append(iter(self._graph.outgoing_edges(edge.target)))

        return paths

    # -------------------------------------------------------------------------
    # Graph-wide queries
    # -------------------------------------------------------------------------

    def find_root_sources(self) -> list[LineageNode]:
        """Nodes without incoming edges, external nodes excluded."""
        return [
            node
            for node in self._graph.iter_nodes()
            if node.node_type != NodeType.EXTERNAL
            and not self._graph.incoming_edges(node.id)
        ]

    def find_terminal_nodes(self) -> list[LineageNode]:
        """Nodes without outgoing edges, external nodes excluded."""
        return [
            node
            for node in self._graph.iter_nodes()
            if node.node_type != NodeType.EXTERNAL
            and not self._graph.outgoing_edges(node.id)
        ]

    def detect_cycles(self) -> list[LineagePath]:
        """Find circular dependencies.

        Each cycle is reported as the path from the first node of the cycle
        back to itself; ``depth`` is the number of edges in the cycle.
        """
        cycles: list[LineagePath] = []
        visited: set[str] = set()
        on_stack: set[str] = set()

        for root in self._graph.iter_nodes():
            if root.id in visited:
                continue

            visited.add(root.id)
            on_stack.add(root.id)
            path: list[LineageNode] = [root]
            edges: list[LineageEdge] = []
            stack = [iter(self._graph.outgoing_edges(root.id))]

            while stack:
                edge = next(stack[-1], None)
                if edge is None:
                    stack.pop()
                    on_stack.discard(path.pop().id)
                    if edges:
                        edges.pop()
                    continue

                target = self._graph.get_node(edge.target)
                if target is None:
                    continue
                if edge.target in on_stack:
                    start = next(i for i, n in enumerate(path) if n.id == edge.target)
                    cycle_edges = (*edges[start:], edge)
                    cycles.append(
                        LineagePath(
                            nodes=(*path[start:], target),
                            edges=cycle_edges,
                            depth=len(cycle_edges),
                        )
                    )
                elif edge.target not in visited:
                    visited.add(edge.target)
                    on_stack.add(edge.target)
                    path.append(target)
                    edges.append(edge)
                    stack.append(iter(self._graph.outgoing_edges(edge.target)))

        if cycles:
            logger.debug("Detected %d lineage cycle(s)", len(cycles))
        return cycles
