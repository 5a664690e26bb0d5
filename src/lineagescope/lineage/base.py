"""Base classes and data structures for SQL lineage.

This module provides the core abstractions for lineage graphs:
- LineageNode: A table, view, CTE, column or external relation
- LineageEdge: A directed data-flow or structural relationship
- ColumnLineageEdge: A column-to-column data-flow fact
- LineageGraph: The graph container and its query surface
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Iterator, Mapping, Union

import yaml
from sqlglot.dialects.dialect import Dialect

from lineagescope.identifiers import get_qualified_key, parse_qualified_key

if TYPE_CHECKING:
    from lineagescope.workspace import ColumnInfo


# =============================================================================
# Enums
# =============================================================================


class NodeType(str, Enum):
    """Types of nodes in the lineage graph."""

    TABLE = "table"
    VIEW = "view"
    COLUMN = "column"
    CTE = "cte"  # Query-scoped intermediate result
    EXTERNAL = "external"  # Referenced but not defined in the workspace


class EdgeType(str, Enum):
    """Types of edges in the lineage graph."""

    DIRECT = "direct"
    TRANSFORM = "transform"
    AGGREGATE = "aggregate"
    FILTER = "filter"
    JOIN = "join"


class ColumnTransformType(str, Enum):
    """How a target column is derived from a source column."""

    DIRECT = "direct"
    RENAME = "rename"
    AGGREGATE = "aggregate"
    EXPRESSION = "expression"
    CASE = "case"
    CAST = "cast"
    COALESCE = "coalesce"
    JOIN = "join"
    FILTER = "filter"
    UNKNOWN = "unknown"


class EdgeRelationship(str, Enum):
    """What an edge means."""

    CONTAINS = "contains"  # Structural table -> column edge, not data flow
    DATA_FLOW = "data_flow"
    COLUMN_FLOW = "column_flow"


TABLE_LIKE_TYPES = (NodeType.TABLE, NodeType.VIEW, NodeType.CTE, NodeType.EXTERNAL)


# =============================================================================
# Exceptions
# =============================================================================


class LineageError(Exception):
    """Base exception for lineage-related errors."""

    pass


class NodeNotFoundError(LineageError):
    """Raised when an edge endpoint is not in the graph."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class GraphFrozenError(LineageError):
    """Raised when a built graph is mutated."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            f"Cannot {operation}: lineage graph is read-only once built. "
            "Rebuild from the workspace index instead."
        )


class ConfigError(LineageError):
    """Raised when lineage configuration is invalid."""

    pass


# =============================================================================
# Configuration
# =============================================================================


DEFAULT_PARSE_DIALECTS = ("postgres", "mysql", "tsql", "snowflake", "bigquery", "oracle")


@dataclass
class LineageConfig:
    """Configuration for lineage building and analysis.

    Attributes:
        include_external: Create nodes for referenced but undefined relations
        include_columns: Create column nodes and structural contains edges
        parse_dialects: sqlglot dialects tried, in order, when recovering CTEs
        source_encoding: Encoding used when re-reading SQL files
        severity_thresholds: Total-affected counts at which impact severity
            becomes medium, high and critical
    """

    include_external: bool = True
    include_columns: bool = True
    parse_dialects: tuple[str, ...] = DEFAULT_PARSE_DIALECTS
    source_encoding: str = "utf-8"
    severity_thresholds: tuple[int, int, int] = (3, 10, 20)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineageConfig":
        """Create a config from a mapping.

        Raises:
            ConfigError: On unknown keys or malformed values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(
                f"Unknown lineage config key(s): {', '.join(unknown)}. "
                f"Valid keys: {', '.join(sorted(known))}"
            )

        values = dict(data)
        if "parse_dialects" in values:
            dialects = tuple(values["parse_dialects"])
            for dialect in dialects:
                try:
                    Dialect.get_or_raise(dialect)
                except ValueError as e:
                    raise ConfigError(f"Invalid parse dialect {dialect!r}: {e}") from e
            values["parse_dialects"] = dialects
        if "severity_thresholds" in values:
            thresholds = tuple(int(v) for v in values["severity_thresholds"])
            if len(thresholds) != 3 or list(thresholds) != sorted(thresholds):
                raise ConfigError(
                    "severity_thresholds must be three ascending integers "
                    f"(medium, high, critical), got {values['severity_thresholds']!r}"
                )
            values["severity_thresholds"] = thresholds
        return cls(**values)

    @classmethod
    def load(cls, path: str | Path) -> "LineageConfig":
        """Load configuration from a YAML or JSON file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Lineage config not found: {path}")

        content = path.read_text(encoding="utf-8")
        try:
            if path.suffix.lower() in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            else:
                data = json.loads(content) if content.strip() else {}
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not parse lineage config {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Lineage config must be a mapping: {path}")
        return cls.from_dict(data.get("lineage", data))


# =============================================================================
# Node Metadata
# =============================================================================


@dataclass(frozen=True)
class RelationMetadata:
    """Metadata for table and view nodes."""

    schema: str | None = None
    full_name: str = ""
    column_count: int = 0
    definition_files: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": "relation",
            "schema": self.schema,
            "full_name": self.full_name,
            "column_count": self.column_count,
            "definition_files": list(self.definition_files),
        }


@dataclass(frozen=True)
class ExternalMetadata:
    """Metadata for relations referenced but never defined."""

    is_external: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "external", "is_external": self.is_external}


@dataclass(frozen=True)
class CteMetadata:
    """Metadata for CTE nodes."""

    file_path: str = ""
    line_number: int = 0
    recovered_from: str = "query"  # query, ast or regex

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": "cte",
            "file_path": self.file_path,
            "line_number": self.line_number,
            "recovered_from": self.recovered_from,
        }


@dataclass(frozen=True)
class ColumnMetadata:
    """Metadata for column nodes."""

    data_type: str = ""
    nullable: bool = True
    is_primary_key: bool = False
    references: str | None = None  # "table.column" of a foreign key target

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": "column",
            "data_type": self.data_type,
            "nullable": self.nullable,
            "is_primary_key": self.is_primary_key,
            "references": self.references,
        }


NodeMetadata = Union[RelationMetadata, ExternalMetadata, CteMetadata, ColumnMetadata]


# =============================================================================
# Edge Metadata
# =============================================================================


@dataclass(frozen=True)
class ContainsMetadata:
    """Structural containment of a column by its table or view."""

    @property
    def relationship(self) -> EdgeRelationship:
        return EdgeRelationship.CONTAINS

    def to_dict(self) -> dict[str, Any]:
        return {"relationship": self.relationship.value}


@dataclass(frozen=True)
class DataFlowMetadata:
    """Provenance of a statement-derived data-flow edge."""

    file_path: str
    statement_index: int = 0
    input_count: int = 0
    output_count: int = 0

    @property
    def relationship(self) -> EdgeRelationship:
        return EdgeRelationship.DATA_FLOW

    def to_dict(self) -> dict[str, Any]:
        return {
            "relationship": self.relationship.value,
            "file_path": self.file_path,
            "statement_index": self.statement_index,
            "input_count": self.input_count,
            "output_count": self.output_count,
        }


@dataclass(frozen=True)
class ColumnFlowMetadata:
    """A table-level edge derived from a column lineage edge."""

    source_column: str
    target_column: str
    transformation_type: ColumnTransformType = ColumnTransformType.UNKNOWN
    file_path: str = ""
    line_number: int = 0

    @property
    def relationship(self) -> EdgeRelationship:
        return EdgeRelationship.COLUMN_FLOW

    def to_dict(self) -> dict[str, Any]:
        return {
            "relationship": self.relationship.value,
            "source_column": self.source_column,
            "target_column": self.target_column,
            "transformation_type": self.transformation_type.value,
            "file_path": self.file_path,
            "line_number": self.line_number,
        }


EdgeMetadata = Union[ContainsMetadata, DataFlowMetadata, ColumnFlowMetadata]


# =============================================================================
# Core Data Structures
# =============================================================================


def table_node_id(node_type: NodeType | str, table_key: str) -> str:
    """Node id of a table-like relation, e.g. ``view:sales.orders``."""
    type_value = node_type.value if isinstance(node_type, NodeType) else node_type
    return f"{type_value}:{table_key}"


def column_node_id(table_key: str, column_name: str) -> str:
    """Node id of a column, e.g. ``column:sales.orders.amount``."""
    return f"column:{table_key}.{column_name.lower()}"


def split_node_id(node_id: str) -> tuple[str | None, str]:
    """Split ``type:key`` into its prefix and key."""
    if ":" not in node_id:
        return None, node_id
    prefix, key = node_id.split(":", 1)
    return prefix, key


@dataclass(frozen=True)
class LineageNode:
    """A node in the lineage graph.

    Attributes:
        id: Unique identifier, ``<type>:<qualified key>`` or
            ``column:<table key>.<column>``
        name: Display name
        node_type: Type of node
        parent_id: Owning table/view for column nodes
        file_path: Definition site
        line_number: Definition line
        metadata: Typed metadata for the node kind
        column_info: Column declaration, for column nodes
    """

    id: str
    name: str
    node_type: NodeType
    parent_id: str | None = None
    file_path: str | None = None
    line_number: int | None = None
    metadata: NodeMetadata | None = None
    column_info: ColumnInfo | None = None

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LineageNode):
            return False
        return self.id == other.id

    @property
    def definition_files(self) -> tuple[str, ...]:
        files: list[str] = []
        if self.file_path:
            files.append(self.file_path)
        if isinstance(self.metadata, RelationMetadata):
            files.extend(f for f in self.metadata.definition_files if f not in files)
        return tuple(files)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "node_type": self.node_type.value,
            "parent_id": self.parent_id,
            "file_path": self.file_path,
            "line_number": self.line_number,
            "metadata": self.metadata.to_dict() if self.metadata else {},
        }
        if self.column_info is not None:
            fk = self.column_info.foreign_key
            data["column_info"] = {
                "name": self.column_info.name,
                "data_type": self.column_info.data_type,
                "nullable": self.column_info.nullable,
                "primary_key": self.column_info.primary_key,
                "foreign_key": (
                    {"referenced_table": fk.referenced_table, "referenced_column": fk.referenced_column}
                    if fk
                    else None
                ),
            }
        return data


@dataclass(frozen=True)
class LineageEdge:
    """A directed edge in the lineage graph.

    Attributes:
        id: Deterministic id derived from the endpoints
        source: Source (upstream) node id
        target: Target (downstream) node id
        edge_type: Type of flow
        transformation: Expression text, if transformed
        metadata: Typed relationship metadata
    """

    id: str
    source: str
    target: str
    edge_type: EdgeType = EdgeType.DIRECT
    transformation: str | None = None
    metadata: EdgeMetadata | None = None

    @property
    def relationship(self) -> EdgeRelationship | None:
        return self.metadata.relationship if self.metadata else None

    @property
    def is_structural(self) -> bool:
        return isinstance(self.metadata, ContainsMetadata)

    @property
    def file_path(self) -> str | None:
        if isinstance(self.metadata, (DataFlowMetadata, ColumnFlowMetadata)):
            return self.metadata.file_path or None
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "edge_type": self.edge_type.value,
            "transformation": self.transformation,
            "metadata": self.metadata.to_dict() if self.metadata else {},
        }


@dataclass(frozen=True)
class ColumnLineageEdge:
    """A source column -> target column data-flow fact."""

    id: str
    source_table_id: str
    source_column_name: str
    target_table_id: str
    target_column_name: str
    transformation_type: ColumnTransformType = ColumnTransformType.UNKNOWN
    expression: str | None = None
    file_path: str = ""
    line_number: int = 0

    @classmethod
    def create(
        cls,
        source_table_id: str,
        source_column_name: str,
        target_table_id: str,
        target_column_name: str,
        transformation_type: ColumnTransformType = ColumnTransformType.UNKNOWN,
        expression: str | None = None,
        file_path: str = "",
        line_number: int = 0,
    ) -> "ColumnLineageEdge":
        """Create an edge with its id composed from both endpoints."""
        return cls(
            id=f"{source_table_id}.{source_column_name}->{target_table_id}.{target_column_name}",
            source_table_id=source_table_id,
            source_column_name=source_column_name,
            target_table_id=target_table_id,
            target_column_name=target_column_name,
            transformation_type=transformation_type,
            expression=expression,
            file_path=file_path,
            line_number=line_number,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
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
class LineagePath:
    """A path through the lineage graph.

    ``depth`` counts hops.
    """

    nodes: tuple[LineageNode, ...] = field(default_factory=tuple)
    edges: tuple[LineageEdge, ...] = field(default_factory=tuple)
    depth: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.id for n in self.nodes],
            "edges": [e.id for e in self.edges],
            "depth": self.depth,
        }


# =============================================================================
# Lineage Graph
# =============================================================================


class LineageGraph:
    """A directed graph representing SQL data lineage.

    Populated by ``LineageBuilder`` and then frozen; every query component
    reads a frozen graph. Cycles are allowed (SQL pipelines can write back
    into their own sources) and every traversal is visited-set guarded.

    Example:
        >>> graph = LineageGraph()
        >>> graph.add_node(LineageNode(id="table:raw", name="raw", node_type=NodeType.TABLE))
        >>> graph.add_node(LineageNode(id="view:clean", name="clean", node_type=NodeType.VIEW))
        >>> graph.add_edge(LineageEdge(id="table:raw->view:clean", source="table:raw", target="view:clean"))
        True
        >>> graph.freeze()
        <LineageGraph nodes=2 edges=1 column_edges=0>
        >>> [n.id for n in graph.get_downstream("table:raw")]
        ['view:clean']
    """

    def __init__(self, config: LineageConfig | None = None):
        """Initialize the lineage graph.

        Args:
            config: Optional configuration
        """
        self._config = config or LineageConfig()
        self._nodes: dict[str, LineageNode] = {}
        self._edges: list[LineageEdge] = []
        self._edge_ids: set[str] = set()
        self._column_edges: list[ColumnLineageEdge] = []
        self._column_edge_ids: set[str] = set()
        self._outgoing: dict[str, list[LineageEdge]] = {}
        self._incoming: dict[str, list[LineageEdge]] = {}
        self._frozen = False

    @property
    def config(self) -> LineageConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Mutation (build phase only)
    # -------------------------------------------------------------------------

    def _check_mutable(self, operation: str) -> None:
        if self._frozen:
            raise GraphFrozenError(operation)

    def add_node(self, node: LineageNode) -> None:
        """Add a node, replacing any existing node with the same id."""
        self._check_mutable("add node")
        self._nodes[node.id] = node
        self._outgoing.setdefault(node.id, [])
        self._incoming.setdefault(node.id, [])

    def add_edge(self, edge: LineageEdge) -> bool:
        """Add an edge unless one with the same id exists.

        Returns:
            True if the edge was added

        Raises:
            NodeNotFoundError: If source or target node not found
        """
        self._check_mutable("add edge")
        if edge.source not in self._nodes:
            raise NodeNotFoundError(edge.source)
        if edge.target not in self._nodes:
            raise NodeNotFoundError(edge.target)
        if edge.id in self._edge_ids:
            return False

        self._edge_ids.add(edge.id)
        self._edges.append(edge)
        self._outgoing[edge.source].append(edge)
        self._incoming[edge.target].append(edge)
        return True

    def add_column_edge(self, edge: ColumnLineageEdge) -> bool:
        """Add a column lineage edge unless one with the same id exists."""
        self._check_mutable("add column edge")
        if edge.id in self._column_edge_ids:
            return False
        self._column_edge_ids.add(edge.id)
        self._column_edges.append(edge)
        return True

    def freeze(self) -> "LineageGraph":
        """Make the graph read-only."""
        self._frozen = True
        return self

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    # -------------------------------------------------------------------------
    # Access
    # -------------------------------------------------------------------------

    @property
    def nodes(self) -> Mapping[str, LineageNode]:
        """Read-only view of nodes by id."""
        return MappingProxyType(self._nodes)

    @property
    def edges(self) -> tuple[LineageEdge, ...]:
        return tuple(self._edges)

    @property
    def column_edges(self) -> tuple[ColumnLineageEdge, ...]:
        return tuple(self._column_edges)

    def get_node(self, node_id: str) -> LineageNode | None:
        return self._nodes.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def has_edge(self, edge_id: str) -> bool:
        return edge_id in self._edge_ids

    def iter_nodes(self, node_type: NodeType | None = None) -> Iterator[LineageNode]:
        for node in self._nodes.values():
            if node_type is None or node.node_type == node_type:
                yield node

    def incoming_edges(self, node_id: str) -> list[LineageEdge]:
        return list(self._incoming.get(node_id, ()))

    def outgoing_edges(self, node_id: str) -> list[LineageEdge]:
        return list(self._outgoing.get(node_id, ()))

    def get_edges_for_node(
        self, node_id: str, direction: str = "both"
    ) -> list[LineageEdge]:
        """Get all edges connected to a node.

        Args:
            node_id: Node ID
            direction: 'incoming', 'outgoing', or 'both'
        """
        edges: list[LineageEdge] = []
        if direction in ("incoming", "both"):
            edges.extend(self._incoming.get(node_id, ()))
        if direction in ("outgoing", "both"):
            edges.extend(
                e for e in self._outgoing.get(node_id, ()) if e not in edges
            )
        return edges

    def resolve_table_node_id(
        self,
        table_key: str,
        node_types: tuple[NodeType, ...] = (NodeType.TABLE, NodeType.VIEW),
    ) -> str | None:
        """Find the node for a qualified key.

        Tries each node type in order, then retries a schema-qualified key
        without its schema.
        """
        key = get_qualified_key(table_key)
        for node_type in node_types:
            candidate = table_node_id(node_type, key)
            if candidate in self._nodes:
                return candidate

        parsed = parse_qualified_key(key)
        if parsed.schema is not None and parsed.name:
            for node_type in node_types:
                candidate = table_node_id(node_type, parsed.name)
                if candidate in self._nodes:
                    return candidate
        return None

    # -------------------------------------------------------------------------
    # Query surface
    # -------------------------------------------------------------------------

    def get_upstream(
        self, node_id: str, depth: int = -1, include_structural: bool = True
    ) -> list[LineageNode]:
        """Get all upstream (source) nodes.

        Args:
            node_id: Starting node ID
            depth: Maximum depth (-1 for unlimited)
            include_structural: Also follow `contains` edges

        Returns:
            Upstream nodes in discovery order, empty for unknown ids
        """
        return self._walk(node_id, depth, self._incoming, lambda e: e.source, include_structural)

    def get_downstream(
        self, node_id: str, depth: int = -1, include_structural: bool = True
    ) -> list[LineageNode]:
        """Get all downstream (consumer) nodes.

        Args:
            node_id: Starting node ID
            depth: Maximum depth (-1 for unlimited)
            include_structural: Also follow `contains` edges

        Returns:
            Downstream nodes in discovery order, empty for unknown ids
        """
        return self._walk(node_id, depth, self._outgoing, lambda e: e.target, include_structural)

    def _walk(
        self,
        node_id: str,
        max_depth: int,
        adjacency: dict[str, list[LineageEdge]],
        next_id: Callable[[LineageEdge], str],
        include_structural: bool = True,
    ) -> list[LineageNode]:
        if node_id not in self._nodes:
            return []

        visited = {node_id}
        result: list[LineageNode] = []
        queue = deque([(node_id, 0)])
        while queue:
            current, current_depth = queue.popleft()
            if max_depth != -1 and current_depth >= max_depth:
                continue
            for edge in adjacency.get(current, ()):
                if not include_structural and edge.is_structural:
                    continue
                neighbor = next_id(edge)
                if neighbor in visited or neighbor not in self._nodes:
                    continue
                visited.add(neighbor)
                result.append(self._nodes[neighbor])
                queue.append((neighbor, current_depth + 1))
        return result

    def get_column_lineage(self, table_id: str, column_name: str) -> list[LineagePath]:
        """Get upstream and downstream paths of a column node.

        Args:
            table_id: Table node id (``table:orders``) or bare qualified key
            column_name: Column name

        Returns:
            ``[upstream, downstream]`` paths, or an empty list when the
            column node does not exist
        """
        _, table_key = split_node_id(table_id)
        column_id = column_node_id(get_qualified_key(table_key), column_name)
        column_node = self._nodes.get(column_id)
        if column_node is None:
            return []

        upstream_nodes = self.get_upstream(column_id)
        upstream_ids = {n.id for n in upstream_nodes} | {column_id}
        upstream_edges = tuple(e for e in self._edges if e.target in upstream_ids and e.source in upstream_ids)

        downstream_nodes = self.get_downstream(column_id)
        downstream_ids = {n.id for n in downstream_nodes} | {column_id}
        downstream_edges = tuple(
            e for e in self._edges if e.source in downstream_ids and e.target in downstream_ids
        )

        return [
            LineagePath(
                nodes=(column_node, *upstream_nodes),
                edges=upstream_edges,
                depth=len(upstream_nodes),
            ),
            LineagePath(
                nodes=(column_node, *downstream_nodes),
                edges=downstream_edges,
                depth=len(downstream_nodes),
            ),
        ]

    # -------------------------------------------------------------------------
    # Stats & serialization
    # -------------------------------------------------------------------------

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    @property
    def column_edge_count(self) -> int:
        return len(self._column_edges)

    def to_dict(self) -> dict[str, Any]:
        """Serialize graph to dictionary."""
        return {
            "nodes": [node.to_dict() for node in self._nodes.values()],
            "edges": [edge.to_dict() for edge in self._edges],
            "column_edges": [edge.to_dict() for edge in self._column_edges],
        }

    def __repr__(self) -> str:
        return (
            f"<LineageGraph nodes={self.node_count} edges={self.edge_count} "
            f"column_edges={self.column_edge_count}>"
        )
