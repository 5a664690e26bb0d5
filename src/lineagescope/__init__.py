"""lineagescope - Table and column lineage for SQL workspaces."""

from lineagescope import lineage
from lineagescope.identifiers import (
    QualifiedName,
    get_display_name,
    get_qualified_key,
    normalize_identifier,
    parse_qualified_key,
)
from lineagescope.lineage import (
    ColumnLineageTracker,
    FlowAnalyzer,
    ImpactAnalyzer,
    LineageBuilder,
    LineageConfig,
    LineageGraph,
)
from lineagescope.workspace import IndexLoadError, WorkspaceIndex

__version__ = "0.1.0"

__all__ = [
    "lineage",
    "QualifiedName",
    "get_display_name",
    "get_qualified_key",
    "normalize_identifier",
    "parse_qualified_key",
    "ColumnLineageTracker",
    "FlowAnalyzer",
    "ImpactAnalyzer",
    "LineageBuilder",
    "LineageConfig",
    "LineageGraph",
    "IndexLoadError",
    "WorkspaceIndex",
]
