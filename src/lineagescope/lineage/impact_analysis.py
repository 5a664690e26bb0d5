"""Impact analysis for SQL lineage.

Answers "what breaks if I modify, rename or drop this table or column" by
walking the lineage graph downstream, classifying each dependent as a direct
or transitive impact and scoring the overall severity.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import polars as pl
from rich.console import Console
from rich.table import Table

from lineagescope.identifiers import get_qualified_key, parse_qualified_key
from lineagescope.lineage.base import (
    CteMetadata,
    LineageGraph,
    LineageNode,
    NodeType,
    column_node_id,
    split_node_id,
)
from lineagescope.lineage.flow import FlowAnalyzer

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================


class ChangeType(str, Enum):
    """Kind of change being analyzed."""

    MODIFY = "modify"
    RENAME = "rename"
    DROP = "drop"
    ADD_COLUMN = "add_column"

    @classmethod
    def _missing_(cls, value: object) -> "ChangeType | None":
        # Accept "ADD_COLUMN", "add-column" and camelCase "addColumn".
        if not isinstance(value, str):
            return None
        key = value.strip().replace("-", "_")
        for candidate in (key.lower(), re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", key).lower()):
            for member in cls:
                if member.value == candidate:
                    return member
        return None


class Severity(str, Enum):
    """Severity of an impact."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ImpactType(str, Enum):
    """How a dependent is reached from the changed entity."""

    DIRECT = "direct"
    TRANSITIVE = "transitive"


class TargetType(str, Enum):
    TABLE = "table"
    COLUMN = "column"


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class ImpactTarget:
    """The entity being changed."""

    type: TargetType
    name: str
    table_name: str | None = None

    @property
    def display_name(self) -> str:
        if self.type == TargetType.COLUMN and self.table_name:
            return f"{self.table_name}.{self.name}"
        return self.name

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "name": self.name, "table_name": self.table_name}


@dataclass(frozen=True)
class ImpactItem:
    """A dependent affected by a change.

    Attributes:
        node: The affected lineage node
        impact_type: Direct or transitive
        reason: Why this node is affected
        file_path: Where the dependent is defined, if known
        line_number: Line of the definition, 0 if unknown
        severity: Per-item severity (never critical)
    """

    node: LineageNode
    impact_type: ImpactType
    reason: str
    file_path: str | None = None
    line_number: int = 0
    severity: Severity = Severity.LOW

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node.id,
            "node_name": self.node.name,
            "node_type": self.node.node_type.value,
            "impact_type": self.impact_type.value,
            "reason": self.reason,
            "file_path": self.file_path,
            "line_number": self.line_number,
            "severity": self.severity.value,
        }


@dataclass(frozen=True)
class ImpactSummary:
    """Aggregate counts of an impact report."""

    total_affected: int = 0
    tables_affected: int = 0
    views_affected: int = 0
    queries_affected: int = 0
    files_affected: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_affected": self.total_affected,
            "tables_affected": self.tables_affected,
            "views_affected": self.views_affected,
            "queries_affected": self.queries_affected,
            "files_affected": self.files_affected,
        }


@dataclass
class ImpactReport:
    """Result of an impact analysis.

    Attributes:
        change_type: The analyzed change
        target: The changed entity
        direct_impacts: Dependents one data-flow hop away
        transitive_impacts: Dependents reached through intermediates
        summary: Aggregate counts
        severity: Overall severity
        suggestions: Remediation advice
    """

    change_type: ChangeType
    target: ImpactTarget
    direct_impacts: list[ImpactItem] = field(default_factory=list)
    transitive_impacts: list[ImpactItem] = field(default_factory=list)
    summary: ImpactSummary = field(default_factory=ImpactSummary)
    severity: Severity = Severity.LOW
    suggestions: list[str] = field(default_factory=list)

    @property
    def all_impacts(self) -> list[ImpactItem]:
        return [*self.direct_impacts, *self.transitive_impacts]

    @property
    def has_impacts(self) -> bool:
        return bool(self.direct_impacts or self.transitive_impacts)

    def get_by_severity(self, severity: Severity) -> list[ImpactItem]:
        return [item for item in self.all_impacts if item.severity == severity]

    def to_dict(self) -> dict[str, Any]:
        return {
            "change_type": self.change_type.value,
            "target": self.target.to_dict(),
            "direct_impacts": [item.to_dict() for item in self.direct_impacts],
            "transitive_impacts": [item.to_dict() for item in self.transitive_impacts],
            "summary": self.summary.to_dict(),
            "severity": self.severity.value,
            "suggestions": list(self.suggestions),
        }

    def to_frame(self) -> pl.DataFrame:
        """One row per impacted node."""
        schema = {
            "node_id": pl.Utf8,
            "node_name": pl.Utf8,
            "node_type": pl.Utf8,
            "impact_type": pl.Utf8,
            "reason": pl.Utf8,
            "file_path": pl.Utf8,
            "line_number": pl.Int64,
            "severity": pl.Utf8,
        }
        return pl.DataFrame([item.to_dict() for item in self.all_impacts], schema=schema)

    def summary_text(self) -> str:
        lines = [
            f"Impact of {self.change_type.value} on {self.target.type.value} "
            f"'{self.target.display_name}': {self.severity.value}",
            f"Direct: {len(self.direct_impacts)}, transitive: {len(self.transitive_impacts)}",
            f"Tables: {self.summary.tables_affected}, views: {self.summary.views_affected}, "
            f"files: {self.summary.files_affected}",
        ]
        return "\n".join(lines)

    def __str__(self) -> str:
        """Return a formatted string representation using Rich."""
        console = Console(force_terminal=True, width=100)
        with console.capture() as capture:
            self.print_to_console(console)
        return capture.get()

    def print(self) -> None:
        """Print the report to stdout."""
        self.print_to_console(Console())

    def print_to_console(self, console: Console) -> None:
        style = _SEVERITY_STYLES[self.severity]
        console.print()
        console.print(
            f"[bold]Impact Analysis[/bold]: {self.change_type.value} "
            f"{self.target.type.value} [cyan]{self.target.display_name}[/cyan]"
        )
        console.print("━" * 52)
        console.print(f"Severity: [{style}]{self.severity.value}[/{style}]")

        if not self.has_impacts:
            console.print("[green]✓ No downstream dependents found[/green]")
        else:
            table = Table(show_header=True, header_style="bold")
            table.add_column("Node", style="cyan")
            table.add_column("Type")
            table.add_column("Impact")
            table.add_column("Location", style="dim")
            table.add_column("Severity", justify="center")
            table.add_column("Reason")

            for item in self.all_impacts:
                item_style = _SEVERITY_STYLES[item.severity]
                location = (
                    f"{item.file_path}:{item.line_number}" if item.file_path else "unknown"
                )
                table.add_row(
                    item.node.name,
                    item.node.node_type.value,
                    item.impact_type.value,
                    location,
                    f"[{item_style}]{item.severity.value}[/{item_style}]",
                    item.reason,
                )
            console.print(table)
            console.print(
                f"Summary: {self.summary.total_affected} affected "
                f"({self.summary.tables_affected} tables, {self.summary.views_affected} views) "
                f"across {self.summary.files_affected} files"
            )

        for suggestion in self.suggestions:
            console.print(f"  • {suggestion}")
        console.print()


_SEVERITY_STYLES = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "dim",
}


# =============================================================================
# Analyzer
# =============================================================================


class ImpactAnalyzer:
    """Analyze the impact of schema changes on downstream dependents.

    Example:
        >>> analyzer = ImpactAnalyzer(graph, FlowAnalyzer(graph))
        >>> report = analyzer.analyze_table_change("orders", ChangeType.DROP)
        >>> report.severity
        <Severity.MEDIUM: 'medium'>
        >>> print(report)
    """

    def __init__(self, graph: LineageGraph, flow_analyzer: FlowAnalyzer | None = None):
        """Initialize the impact analyzer.

        Args:
            graph: Built lineage graph
            flow_analyzer: Traversal engine over the same graph
        """
        self._graph = graph
        self._flow = flow_analyzer or FlowAnalyzer(graph)
        self._thresholds = graph.config.severity_thresholds

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def analyze_table_change(
        self, table_name: str, change_type: ChangeType | str = ChangeType.MODIFY
    ) -> ImpactReport:
        """Analyze the impact of changing a table or view.

        Args:
            table_name: Table or view name, optionally schema-qualified, or a node id
            change_type: Kind of change

        Returns:
            ImpactReport; a zero-impact report when the table is unknown
        """
        change_type = ChangeType(change_type)
        node_id = self._resolve_relation(table_name)
        node = self._graph.get_node(node_id) if node_id else None
        if node is None:
            return self._not_found_report(TargetType.TABLE, table_name, change_type)

        downstream = self._flow.get_downstream(node.id, exclude_external=True)
        total = len(downstream.nodes)
        target_key = split_node_id(node.id)[1]

        direct_targets = {
            edge.target
            for edge in self._graph.outgoing_edges(node.id)
            if not edge.is_structural
        }
        columns_with_flow = self._columns_with_data_flow()
        target_files = self._relation_files(node)

        direct: list[ImpactItem] = []
        transitive: list[ImpactItem] = []
        seen: set[str] = set()

        for dependent in downstream.nodes:
            if dependent.parent_id == node.id:
                continue

            is_direct = dependent.id in direct_targets
            reason = f"Depends on {node.node_type.value} '{node.name}'"

            if not is_direct and dependent.node_type == NodeType.COLUMN:
                fk_reason = self._foreign_key_reason(dependent, target_key, node)
                if dependent.id not in columns_with_flow and fk_reason is None:
                    continue
                if fk_reason is not None:
                    reason = fk_reason

            if not is_direct and dependent.node_type in (NodeType.TABLE, NodeType.VIEW, NodeType.CTE):
                if not self._shares_provenance(dependent, target_files, target_key, node):
                    logger.debug(
                        "Dropping transitive impact %s of %s: no shared file or foreign key",
                        dependent.id,
                        node.id,
                    )
                    continue

            item = self._make_item(
                dependent,
                ImpactType.DIRECT if is_direct else ImpactType.TRANSITIVE,
                reason,
                total,
            )
            (direct if is_direct else transitive).append(item)
            seen.add(dependent.id)

        for column in self._foreign_key_columns(target_key, node):
            if column.id in seen:
                continue
            reason = self._foreign_key_reason(column, target_key, node)
            direct.append(self._make_item(column, ImpactType.DIRECT, reason or "", total))
            seen.add(column.id)

        return self._finish_report(
            change_type,
            ImpactTarget(type=TargetType.TABLE, name=table_name),
            direct,
            transitive,
        )

    def analyze_column_change(
        self,
        table_name: str,
        column_name: str,
        change_type: ChangeType | str = ChangeType.MODIFY,
    ) -> ImpactReport:
        """Analyze the impact of changing one column.

        Follows graph edges and column lineage edges downstream from the
        column. Falls back to table-level analysis when the column is not
        in the graph.
        """
        change_type = ChangeType(change_type)
        table_id = self._resolve_relation(table_name)
        table_key = split_node_id(table_id)[1] if table_id else get_qualified_key(table_name)
        column_id = column_node_id(table_key, column_name)
        column_node = self._graph.get_node(column_id)
        if column_node is None:
            logger.debug(
                "Column %s.%s not in lineage graph; analyzing the table instead",
                table_name,
                column_name,
            )
            return self.analyze_table_change(table_name, change_type)

        downstream = self._flow.get_downstream(column_id, exclude_external=True)
        reached: dict[str, tuple[LineageNode, bool, str]] = {}
        direct_targets = {edge.target for edge in self._graph.outgoing_edges(column_id)}
        for dependent in downstream.nodes:
            reached[dependent.id] = (
                dependent,
                dependent.id in direct_targets,
                f"Uses column '{column_name}'",
            )

        for dependent, hops, reason in self._column_edge_dependents(
            column_node.parent_id or table_id or "", column_name
        ):
            if dependent.id not in reached and dependent.id != column_id:
                reached[dependent.id] = (dependent, hops == 1, reason)

        total = len(reached)
        direct: list[ImpactItem] = []
        transitive: list[ImpactItem] = []
        for dependent, is_direct, reason in reached.values():
            item = self._make_item(
                dependent,
                ImpactType.DIRECT if is_direct else ImpactType.TRANSITIVE,
                reason,
                total,
            )
            (direct if is_direct else transitive).append(item)

        return self._finish_report(
            change_type,
            ImpactTarget(type=TargetType.COLUMN, name=column_name, table_name=table_name),
            direct,
            transitive,
        )

    def analyze_rename(
        self,
        target_type: TargetType | str,
        old_name: str,
        new_name: str,
        table_name: str | None = None,
    ) -> ImpactReport:
        """Analyze renaming a table (or a column of ``table_name``) to ``new_name``."""
        logger.debug("Analyzing rename of %s to %s", old_name, new_name)
        if TargetType(target_type) == TargetType.TABLE:
            return self.analyze_table_change(old_name, ChangeType.RENAME)
        return self.analyze_column_change(table_name or "", old_name, ChangeType.RENAME)

    def analyze_drop(
        self,
        target_type: TargetType | str,
        name: str,
        table_name: str | None = None,
    ) -> ImpactReport:
        """Analyze dropping a table (or a column of ``table_name``)."""
        if TargetType(target_type) == TargetType.TABLE:
            return self.analyze_table_change(name, ChangeType.DROP)
        return self.analyze_column_change(table_name or "", name, ChangeType.DROP)

    def calculate_severity(self, impact: ImpactReport | ImpactSummary | int) -> Severity:
        """Map a total affected count onto a severity level.

        Defaults: fewer than 3 is low, fewer than 10 medium, fewer than 20
        high, anything above critical.
        """
        if isinstance(impact, ImpactReport):
            total = impact.summary.total_affected
        elif isinstance(impact, ImpactSummary):
            total = impact.total_affected
        else:
            total = impact

        medium, high, critical = self._thresholds
        if total >= critical:
            return Severity.CRITICAL
        if total >= high:
            return Severity.HIGH
        if total >= medium:
            return Severity.MEDIUM
        return Severity.LOW

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def _resolve_relation(self, name: str) -> str | None:
        if ":" in name and self._graph.has_node(name):
            return name
        return self._graph.resolve_table_node_id(get_qualified_key(name))

    def _relation_files(self, node: LineageNode) -> set[str]:
        """Definition files of a relation plus files of data-flow edges touching it."""
        files = set(node.definition_files)
        for edge in self._graph.get_edges_for_node(node.id):
            if edge.file_path:
                files.add(edge.file_path)
        return files

    # -------------------------------------------------------------------------
    # Provenance checks
    # -------------------------------------------------------------------------

    def _columns_with_data_flow(self) -> set[str]:
        """Column nodes reached by a non-structural edge or a column lineage edge."""
        columns = {
            edge.target
            for edge in self._graph.edges
            if not edge.is_structural and edge.target.startswith("column:")
        }
        for edge in self._graph.column_edges:
            _, key = split_node_id(edge.target_table_id)
            columns.add(column_node_id(key, edge.target_column_name))
        return columns

    @staticmethod
    def _references_target(referenced_table: str, target_key: str) -> bool:
        referenced = get_qualified_key(referenced_table)
        if referenced == target_key:
            return True
        return parse_qualified_key(referenced).name == parse_qualified_key(target_key).name

    def _foreign_key_reason(
        self, column: LineageNode, target_key: str, target: LineageNode
    ) -> str | None:
        info = column.column_info
        if info is None or info.foreign_key is None:
            return None
        fk = info.foreign_key
        if not self._references_target(fk.referenced_table, target_key):
            return None
        parent = self._graph.get_node(column.parent_id) if column.parent_id else None
        source = parent.name if parent else "?"
        return f"{source}.{column.name} → {target.name}.{fk.referenced_column}"

    def _foreign_key_columns(self, target_key: str, target: LineageNode) -> list[LineageNode]:
        """Columns of other relations whose foreign key references the target."""
        return [
            column
            for column in self._graph.iter_nodes(NodeType.COLUMN)
            if column.parent_id != target.id
            and self._foreign_key_reason(column, target_key, target) is not None
        ]

    def _shares_provenance(
        self,
        dependent: LineageNode,
        target_files: set[str],
        target_key: str,
        target: LineageNode,
    ) -> bool:
        if target_files & set(dependent.definition_files):
            return True
        for edge in self._graph.incoming_edges(dependent.id):
            if edge.file_path and edge.file_path in target_files:
                return True
        return any(
            column.parent_id == dependent.id
            for column in self._foreign_key_columns(target_key, target)
        )

    def _column_edge_dependents(
        self, table_id: str, column_name: str
    ) -> list[tuple[LineageNode, int, str]]:
        """Breadth-first walk over column lineage edges from one column."""
        found: list[tuple[LineageNode, int, str]] = []
        start = (table_id, column_name.lower())
        visited = {start}
        queue = deque([(start, 0)])

        while queue:
            (current_table, current_column), hops = queue.popleft()
            for edge in self._graph.column_edges:
                if edge.source_table_id != current_table:
                    continue
                if edge.source_column_name.lower() != current_column:
                    continue
                step = (edge.target_table_id, edge.target_column_name.lower())
                if step in visited:
                    continue
                visited.add(step)
                queue.append((step, hops + 1))

                _, target_key = split_node_id(edge.target_table_id)
                node = self._graph.get_node(
                    column_node_id(target_key, edge.target_column_name)
                ) or self._graph.get_node(edge.target_table_id)
                if node is None or node.node_type == NodeType.EXTERNAL:
                    continue
                reason = (
                    f"{edge.target_column_name} derives from {current_column} "
                    f"({edge.transformation_type.value})"
                )
                found.append((node, hops + 1, reason))
        return found

    # -------------------------------------------------------------------------
    # Report assembly
    # -------------------------------------------------------------------------

    def _make_item(
        self, node: LineageNode, impact_type: ImpactType, reason: str, total: int
    ) -> ImpactItem:
        file_path, line_number = self._resolve_location(node)
        return ImpactItem(
            node=node,
            impact_type=impact_type,
            reason=reason,
            file_path=file_path,
            line_number=line_number or 0,
            severity=self._node_severity(node, total),
        )

    def _resolve_location(self, node: LineageNode) -> tuple[str | None, int | None]:
        """Best known definition site of a node."""
        if node.file_path or node.line_number:
            return node.file_path, node.line_number

        if isinstance(node.metadata, CteMetadata) and node.metadata.file_path:
            return node.metadata.file_path, node.metadata.line_number

        files = node.definition_files
        if len(files) == 1:
            return files[0], None

        if node.parent_id:
            parent = self._graph.get_node(node.parent_id)
            if parent is not None and (parent.file_path or parent.line_number):
                return parent.file_path, parent.line_number

        for edge in self._graph.get_edges_for_node(node.id):
            if edge.file_path:
                return edge.file_path, None
        return None, None

    @staticmethod
    def _node_severity(node: LineageNode, total: int) -> Severity:
        if node.node_type in (NodeType.VIEW, NodeType.CTE):
            return Severity.HIGH if total > 5 else Severity.MEDIUM
        if total > 10:
            return Severity.HIGH
        if total > 3:
            return Severity.MEDIUM
        return Severity.LOW

    @staticmethod
    def _summarize(items: list[ImpactItem]) -> ImpactSummary:
        tables = {i.node.name for i in items if i.node.node_type == NodeType.TABLE}
        views = {i.node.name for i in items if i.node.node_type == NodeType.VIEW}
        files = {i.file_path for i in items if i.file_path}
        return ImpactSummary(
            total_affected=len(items),
            tables_affected=len(tables),
            views_affected=len(views),
            queries_affected=len(items),
            files_affected=len(files),
        )

    def _finish_report(
        self,
        change_type: ChangeType,
        target: ImpactTarget,
        direct: list[ImpactItem],
        transitive: list[ImpactItem],
    ) -> ImpactReport:
        summary = self._summarize([*direct, *transitive])
        severity = self.calculate_severity(summary)
        return ImpactReport(
            change_type=change_type,
            target=target,
            direct_impacts=direct,
            transitive_impacts=transitive,
            summary=summary,
            severity=severity,
            suggestions=self._suggestions(target, change_type, severity),
        )

    @staticmethod
    def _suggestions(
        target: ImpactTarget, change_type: ChangeType, severity: Severity
    ) -> list[str]:
        kind = target.type.value
        name = target.name
        suggestions: list[str] = []

        if change_type == ChangeType.DROP:
            suggestions.append(
                f"Consider marking {kind} '{name}' as deprecated instead of dropping immediately"
            )
            audience = "users" if severity == Severity.CRITICAL else "affected teams"
            suggestions.append(f"Notify all {audience} about this change")

        if change_type == ChangeType.RENAME:
            suggestions.append(f"Update all references to {kind} '{name}' before renaming")
            suggestions.append("Consider creating a synonym or alias for backward compatibility")

        if change_type == ChangeType.ADD_COLUMN:
            suggestions.append(
                "Check downstream queries using SELECT * and INSERT without an explicit "
                "column list; they may break or pick up the new column"
            )

        if severity in (Severity.HIGH, Severity.CRITICAL):
            suggestions.append("High impact: schedule this change during a maintenance window")
            suggestions.append("Create a rollback plan in case of issues")

        if target.type == TargetType.COLUMN:
            suggestions.append("Verify all queries using this column handle the change correctly")

        return suggestions

    @staticmethod
    def _not_found_report(
        target_type: TargetType, name: str, change_type: ChangeType
    ) -> ImpactReport:
        return ImpactReport(
            change_type=change_type,
            target=ImpactTarget(type=target_type, name=name),
            suggestions=[
                f"{target_type.value.capitalize()} '{name}' not found in lineage graph",
                "It may be an external table or not indexed yet",
            ],
        )
