"""Column-level lineage tracing.

Column edges recorded by the builder are the primary source of truth. When
a column has no column edges the tracker falls back to table-level flow.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

import polars as pl

from lineagescope.identifiers import parse_qualified_key
from lineagescope.lineage.base import (
    ColumnFlowMetadata,
    ColumnLineageEdge,
    ColumnTransformType,
    EdgeType,
    LineageEdge,
    LineageGraph,
    LineagePath,
    NodeType,
    TABLE_LIKE_TYPES,
    split_node_id,
)

logger = logging.getLogger(__name__)


_TABLE_PREFIXES = frozenset(t.value for t in TABLE_LIKE_TYPES)

_EDGE_TYPE_BY_TRANSFORM = {
    ColumnTransformType.DIRECT: EdgeType.DIRECT,
    ColumnTransformType.RENAME: EdgeType.DIRECT,
    ColumnTransformType.AGGREGATE: EdgeType.AGGREGATE,
    ColumnTransformType.JOIN: EdgeType.JOIN,
    ColumnTransformType.FILTER: EdgeType.FILTER,
}


def map_transform_to_edge_type(transform: ColumnTransformType) -> EdgeType:
    """Map a column transformation onto the coarser table-level edge type."""
    return _EDGE_TYPE_BY_TRANSFORM.get(transform, EdgeType.TRANSFORM)


# =============================================================================
# Flat results
# =============================================================================


@dataclass(frozen=True)
class ColumnLineageRow:
    """One column edge in a flat, display-friendly shape."""

    source_table_id: str
    source_column_name: str
    target_table_id: str
    target_column_name: str
    transformation_type: ColumnTransformType
    expression: str | None = None
    file_path: str = ""
    line_number: int = 0

    @classmethod
    def from_edge(cls, edge: ColumnLineageEdge) -> "ColumnLineageRow":
        return cls(
            source_table_id=edge.source_table_id,
            source_column_name=edge.source_column_name,
            target_table_id=edge.target_table_id,
            target_column_name=edge.target_column_name,
            transformation_type=edge.transformation_type,
            expression=edge.expression,
            file_path=edge.file_path,
            line_number=edge.line_number,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_table_id": self.source_table_id,
            "source_column_name": self.source_column_name,
            "target_table_id": self.target_table_id,
            "target_column_name": self.target_column_name,
            "transformation_type": self.transformation_type.value,
            "expression": self.expression,
            "file_path": self.file_path,
            "line_number": self.line_number,
        }


@dataclass(frozen=True)
class ColumnLineageResult:
    """Upstream and downstream column edges of one column."""

    upstream: tuple[ColumnLineageRow, ...] = field(default_factory=tuple)
    downstream: tuple[ColumnLineageRow, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.upstream and not self.downstream

    def to_dict(self) -> dict[str, Any]:
        return {
            "upstream": [row.to_dict() for row in self.upstream],
            "downstream": [row.to_dict() for row in self.downstream],
        }

    def to_frame(self) -> pl.DataFrame:
        """Both directions as one DataFrame with a ``direction`` column."""
        records = [
            {"direction": direction, **row.to_dict()}
            for direction, rows in (("upstream", self.upstream), ("downstream", self.downstream))
            for row in rows
        ]
        schema = {
            "direction": pl.Utf8,
            "source_table_id": pl.Utf8,
            "source_column_name": pl.Utf8,
            "target_table_id": pl.Utf8,
            "target_column_name": pl.Utf8,
            "transformation_type": pl.Utf8,
            "expression": pl.Utf8,
            "file_path": pl.Utf8,
            "line_number": pl.Int64,
        }
        return pl.DataFrame(records, schema=schema)


# =============================================================================
# Tracker
# =============================================================================


class ColumnLineageTracker:
    """Trace how individual columns flow between relations.

    Example:
        >>> tracker = ColumnLineageTracker(graph)
        >>> paths = tracker.trace_column_upstream("view:order_summary", "total")
        >>> [p.nodes[0].id for p in paths]
        ['table:orders']
    """

    def __init__(self, graph: LineageGraph):
        self._graph = graph

    @property
    def graph(self) -> LineageGraph:
        return self._graph

    def trace_column_upstream(self, table_id: str, column_name: str) -> list[LineagePath]:
        """Trace a column back to its source columns.

        Returns one path per source relation, ``[source, target]`` with
        one edge per contributing column edge. Without column edges the
        table-level upstream flow is returned as a single path.
        """
        matches = [
            edge
            for edge in self._graph.column_edges
            if self._table_matches(edge.target_table_id, table_id)
            and edge.target_column_name.lower() == column_name.lower()
        ]
        if not matches:
            return self._table_level_path(table_id, upstream=True)
        return self._group_paths(matches, by_source=True)

    def trace_column_downstream(self, table_id: str, column_name: str) -> list[LineagePath]:
        """Trace where a column is consumed.

        Returns one path per consuming relation, ``[source, target]``. Without
        column edges the table-level downstream flow is returned as a single
        path.
        """
        matches = [
            edge
            for edge in self._graph.column_edges
            if self._table_matches(edge.source_table_id, table_id)
            and edge.source_column_name.lower() == column_name.lower()
        ]
        if not matches:
            return self._table_level_path(table_id, upstream=False)
        return self._group_paths(matches, by_source=False)

    def get_full_column_lineage(
        self, table_id: str, column_name: str
    ) -> dict[str, list[LineagePath]]:
        return {
            "upstream": self.trace_column_upstream(table_id, column_name),
            "downstream": self.trace_column_downstream(table_id, column_name),
        }

    def get_column_lineage_paths(self, table_id: str, column_name: str) -> ColumnLineageResult:
        """Column edges touching a column, one row per edge.

        No table-level fallback applies here; unmatched columns give an
        empty result.
        """
        wanted = column_name.lower()
        upstream = [
            ColumnLineageRow.from_edge(edge)
            for edge in self._graph.column_edges
            if self._table_matches(edge.target_table_id, table_id)
            and edge.target_column_name.lower() == wanted
        ]
        downstream = [
            ColumnLineageRow.from_edge(edge)
            for edge in self._graph.column_edges
            if self._table_matches(edge.source_table_id, table_id)
            and edge.source_column_name.lower() == wanted
        ]
        return ColumnLineageResult(upstream=tuple(upstream), downstream=tuple(downstream))

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _table_matches(edge_table_id: str, table_id: str) -> bool:
        """Match a column edge endpoint against a requested table id.

        Exact ids always match. A request with a known relation prefix
        (``table:``, ``view:``, ``cte:``, ``external:``) or no prefix also
        matches endpoints ending in ``:<key>`` or ``:<bare name>``, so
        ``view:x`` finds edges recorded against ``table:x`` and
        ``table:sales.x`` finds ``table:x``. Unknown prefixes only match
        exactly.
        """
        if edge_table_id == table_id:
            return True

        prefix, key = split_node_id(table_id)
        if prefix is not None and prefix not in _TABLE_PREFIXES:
            return False

        key = key.lower()
        if not key:
            return False
        edge_id = edge_table_id.lower()
        if edge_id.endswith(f":{key}"):
            return True
        bare = parse_qualified_key(key).name
        return bool(bare) and edge_id.endswith(f":{bare}")

    def _group_paths(
        self, edges: list[ColumnLineageEdge], by_source: bool
    ) -> list[LineagePath]:
        groups: OrderedDict[str, list[ColumnLineageEdge]] = OrderedDict()
        for edge in edges:
            key = edge.source_table_id if by_source else edge.target_table_id
            groups.setdefault(key, []).append(edge)

        paths: list[LineagePath] = []
        for group in groups.values():
            first = group[0]
            source = self._graph.get_node(first.source_table_id)
            target = self._graph.get_node(first.target_table_id)
            if source is None or target is None:
                logger.debug(
                    "Column edge %s references a relation missing from the graph",
                    first.id,
                )
                continue
            paths.append(
                LineagePath(
                    nodes=(source, target),
                    edges=tuple(self._as_lineage_edge(edge) for edge in group),
                    depth=1,
                )
            )
        return paths

    @staticmethod
    def _as_lineage_edge(edge: ColumnLineageEdge) -> LineageEdge:
        return LineageEdge(
            id=edge.id,
            source=edge.source_table_id,
            target=edge.target_table_id,
            edge_type=map_transform_to_edge_type(edge.transformation_type),
            transformation=edge.expression,
            metadata=ColumnFlowMetadata(
                source_column=edge.source_column_name,
                target_column=edge.target_column_name,
                transformation_type=edge.transformation_type,
                file_path=edge.file_path,
                line_number=edge.line_number,
            ),
        )

    def _table_level_path(self, table_id: str, upstream: bool) -> list[LineagePath]:
        table_node = self._graph.get_node(table_id)
        if table_node is None or table_node.node_type == NodeType.COLUMN:
            return []

        if upstream:
            nodes = self._graph.get_upstream(table_id, include_structural=False)
        else:
            nodes = self._graph.get_downstream(table_id, include_structural=False)
        if not nodes:
            return []

        reached = {node.id for node in nodes} | {table_id}
        edges = tuple(
            edge
            for edge in self._graph.edges
            if not edge.is_structural and edge.source in reached and edge.target in reached
        )
        return [LineagePath(nodes=(table_node, *nodes), edges=edges, depth=len(nodes))]
