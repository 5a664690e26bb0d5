"""SQL lineage graph engine.

This module provides:
- Lineage graph construction from a workspace index
- Upstream/downstream flow traversal, path enumeration and cycle detection
- Column-level lineage tracing
- Change impact analysis

Example:
    >>> from lineagescope.lineage import LineageBuilder, FlowAnalyzer, ImpactAnalyzer
    >>> graph = LineageBuilder().build(index)
    >>> flow = FlowAnalyzer(graph)
    >>> flow.get_upstream("view:daily_revenue").nodes
    >>>
    >>> # Analyze impact
    >>> report = ImpactAnalyzer(graph, flow).analyze_table_change("orders", "drop")
    >>> print(report)
"""

from lineagescope.lineage.base import (
    # Enums
    NodeType,
    EdgeType,
    ColumnTransformType,
    EdgeRelationship,
    # Metadata
    RelationMetadata,
    ExternalMetadata,
    CteMetadata,
    ColumnMetadata,
    ContainsMetadata,
    DataFlowMetadata,
    ColumnFlowMetadata,
    # Data structures
    LineageNode,
    LineageEdge,
    ColumnLineageEdge,
    LineagePath,
    # Configuration
    LineageConfig,
    # Graph
    LineageGraph,
    table_node_id,
    column_node_id,
    # Exceptions
    LineageError,
    NodeNotFoundError,
    GraphFrozenError,
    ConfigError,
)

from lineagescope.lineage.sql_structure import (
    SourceTextProvider,
    FileSystemSourceProvider,
    InMemorySourceProvider,
    SqlStructureExtractor,
    SqlglotCteStrategy,
    RegexCteStrategy,
    SubqueryAliasStrategy,
)

from lineagescope.lineage.builder import LineageBuilder

from lineagescope.lineage.flow import (
    FlowAnalyzer,
    FlowResult,
)

from lineagescope.lineage.column_lineage import (
    ColumnLineageTracker,
    ColumnLineageResult,
    ColumnLineageRow,
)

from lineagescope.lineage.impact_analysis import (
    ImpactAnalyzer,
    ImpactReport,
    ImpactItem,
    ImpactSummary,
    ImpactTarget,
    ImpactType,
    ChangeType,
    Severity,
    TargetType,
)

__all__ = [
    # Enums
    "NodeType",
    "EdgeType",
    "ColumnTransformType",
    "EdgeRelationship",
    # Metadata
    "RelationMetadata",
    "ExternalMetadata",
    "CteMetadata",
    "ColumnMetadata",
    "ContainsMetadata",
    "DataFlowMetadata",
    "ColumnFlowMetadata",
    # Data structures
    "LineageNode",
    "LineageEdge",
    "ColumnLineageEdge",
    "LineagePath",
    # Configuration
    "LineageConfig",
    # Graph
    "LineageGraph",
    "table_node_id",
    "column_node_id",
    # Exceptions
    "LineageError",
    "NodeNotFoundError",
    "GraphFrozenError",
    "ConfigError",
    # SQL structure recovery
    "SourceTextProvider",
    "FileSystemSourceProvider",
    "InMemorySourceProvider",
    "SqlStructureExtractor",
    "SqlglotCteStrategy",
    "RegexCteStrategy",
    "SubqueryAliasStrategy",
    # Builder
    "LineageBuilder",
    # Flow
    "FlowAnalyzer",
    "FlowResult",
    # Column lineage
    "ColumnLineageTracker",
    "ColumnLineageResult",
    "ColumnLineageRow",
    # Impact analysis
    "ImpactAnalyzer",
    "ImpactReport",
    "ImpactItem",
    "ImpactSummary",
    "ImpactTarget",
    "ImpactType",
    "ChangeType",
    "Severity",
    "TargetType",
]
