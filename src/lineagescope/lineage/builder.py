"""Lineage graph construction from a workspace index.

The builder turns per-file extraction results into a frozen ``LineageGraph``:

- table and view nodes from schema definitions (first definition wins)
- CTE nodes from structured query data, or recovered from the file text
- column nodes with structural ``contains`` edges
- data-flow edges between the inputs and outputs of each statement
- column-to-column edges from query transformations
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field

from lineagescope.identifiers import (
    get_display_name,
    get_qualified_key,
    parse_qualified_key,
    strip_identifier_quotes,
)
from lineagescope.lineage.base import (
    ColumnLineageEdge,
    ColumnMetadata,
    ColumnTransformType,
    ContainsMetadata,
    CteMetadata,
    DataFlowMetadata,
    EdgeType,
    ExternalMetadata,
    LineageConfig,
    LineageEdge,
    LineageGraph,
    LineageNode,
    NodeType,
    RelationMetadata,
    TABLE_LIKE_TYPES,
    column_node_id,
    table_node_id,
)
from lineagescope.lineage.sql_structure import (
    CachingSourceProvider,
    FileSystemSourceProvider,
    SourceTextProvider,
    SqlStructureExtractor,
)
from lineagescope.workspace import (
    INPUT_REFERENCE_TYPES,
    OUTPUT_REFERENCE_TYPES,
    FileAnalysis,
    QueryAnalysis,
    ReferenceType,
    SchemaDefinition,
    StatementType,
    TableReference,
    Transformation,
    TransformationKind,
    WorkspaceIndex,
)

logger = logging.getLogger(__name__)


CTAS_PATTERN = re.compile(r"\bAS\s+(?:SELECT|\()", re.IGNORECASE)

_NAME = r'((?:[A-Za-z_][\w$]*|"[^"]+"|`[^`]+`|\[[^\]]+\])(?:\s*\.\s*(?:[A-Za-z_][\w$]*|"[^"]+"|`[^`]+`|\[[^\]]+\]))*)'
INSERT_INTO_PATTERN = re.compile(rf"\bINSERT\s+(?:OVERWRITE\s+)?INTO\s+(?:TABLE\s+)?{_NAME}", re.IGNORECASE)
SELECT_INTO_PATTERN = re.compile(rf"\bSELECT\b.*?\bINTO\s+{_NAME}", re.IGNORECASE | re.DOTALL)

_STATEMENT_OUTPUT_TYPES = {
    StatementType.INSERT: ReferenceType.INSERT,
    StatementType.UPDATE: ReferenceType.UPDATE,
    StatementType.DELETE: ReferenceType.DELETE,
    StatementType.MERGE: ReferenceType.MERGE,
}

_EXPRESSION_KINDS = frozenset(
    {
        TransformationKind.CONCAT,
        TransformationKind.ARITHMETIC,
        TransformationKind.WINDOW,
        TransformationKind.COMPLEX,
        TransformationKind.SUBQUERY,
    }
)

_NULL_HANDLING_FUNCTIONS = ("COALESCE", "IFNULL", "NVL")


def map_transformation_type(
    transformation: Transformation, source_column: str | None = None
) -> ColumnTransformType | None:
    """Classify how a transformation derives its target column.

    Returns:
        The column transform type, or None for literal-only outputs which
        have no source column
    """
    kind = transformation.operation
    if kind == TransformationKind.LITERAL:
        return None
    if kind == TransformationKind.DIRECT:
        if source_column and source_column.lower() != transformation.target_column.lower():
            return ColumnTransformType.RENAME
        return ColumnTransformType.DIRECT
    if kind == TransformationKind.ALIAS:
        return ColumnTransformType.RENAME
    if kind == TransformationKind.AGGREGATE:
        return ColumnTransformType.AGGREGATE
    if kind == TransformationKind.CASE:
        return ColumnTransformType.CASE
    if kind == TransformationKind.CAST:
        return ColumnTransformType.CAST
    if kind == TransformationKind.SCALAR:
        expression = transformation.expression.lstrip().upper()
        if expression.startswith(_NULL_HANDLING_FUNCTIONS):
            return ColumnTransformType.COALESCE
        return ColumnTransformType.EXPRESSION
    if kind in _EXPRESSION_KINDS:
        return ColumnTransformType.EXPRESSION
    return ColumnTransformType.UNKNOWN


@dataclass
class _StatementBucket:
    """References of one statement split into inputs and outputs."""

    index: int
    inputs: dict[str, TableReference] = field(default_factory=dict)
    join_keys: set[str] = field(default_factory=set)
    outputs: list[str] = field(default_factory=list)
    references: list[TableReference] = field(default_factory=list)

    @property
    def first_line(self) -> int:
        lines = [r.line_number for r in self.references if r.line_number > 0]
        return min(lines) if lines else 0

    def add_output(self, key: str) -> None:
        if key not in self.outputs:
            self.outputs.append(key)


@dataclass
class _BuildState:
    graph: LineageGraph
    sources: CachingSourceProvider
    exclusions: dict[str, set[str]] = field(default_factory=lambda: defaultdict(set))


class LineageBuilder:
    """Build a lineage graph from a ``WorkspaceIndex``.

    Example:
        >>> builder = LineageBuilder(source_provider=InMemorySourceProvider(sources))
        >>> graph = builder.build(index)
        >>> graph.is_frozen
        True
    """

    def __init__(
        self,
        config: LineageConfig | None = None,
        source_provider: SourceTextProvider | None = None,
        structure_extractor: SqlStructureExtractor | None = None,
    ):
        """Initialize the builder.

        Args:
            config: Lineage configuration
            source_provider: Supplies file text for CTE/alias recovery;
                reads from disk by default
            structure_extractor: CTE/alias strategy chain
        """
        self._config = config or LineageConfig()
        self._source_provider = source_provider or FileSystemSourceProvider(
            encoding=self._config.source_encoding
        )
        self._extractor = structure_extractor or SqlStructureExtractor(
            dialects=self._config.parse_dialects
        )

    @property
    def config(self) -> LineageConfig:
        return self._config

    def build(self, index: WorkspaceIndex) -> LineageGraph:
        """Build a fresh, frozen graph from the index."""
        state = _BuildState(
            graph=LineageGraph(self._config),
            sources=CachingSourceProvider(self._source_provider),
        )

        self._add_definition_nodes(state, index)
        for file_path, analysis in index.files.items():
            self._add_cte_nodes(state, file_path, analysis)
            self._collect_alias_exclusions(state, file_path)

        if self._config.include_columns:
            self._add_column_nodes(state, index)

        for file_path, analysis in index.files.items():
            buckets = self._bucket_references(state, file_path, analysis)
            self._add_flow_edges(state, file_path, analysis, buckets)
            if analysis.has_queries:
                self._add_column_edges(state, file_path, analysis, buckets)

        graph = state.graph.freeze()
        logger.info(
            "Built lineage graph from %d files: %d nodes, %d edges, %d column edges",
            index.file_count,
            graph.node_count,
            graph.edge_count,
            graph.column_edge_count,
        )
        return graph

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    def _add_definition_nodes(self, state: _BuildState, index: WorkspaceIndex) -> None:
        grouped: dict[str, list[SchemaDefinition]] = {}
        for definition in index.iter_definitions():
            try:
                node_type = NodeType(definition.type)
            except ValueError:
                logger.debug(
                    "Skipping definition %s with unsupported type %r",
                    definition.name,
                    definition.type,
                )
                continue
            node_id = table_node_id(node_type, definition.qualified_key)
            grouped.setdefault(node_id, []).append(definition)

        for node_id, definitions in grouped.items():
            first = definitions[0]
            files: list[str] = []
            for definition in definitions:
                if definition.file_path and definition.file_path not in files:
                    files.append(definition.file_path)
            schema_prefix = f"{first.schema}." if first.schema else ""

            state.graph.add_node(
                LineageNode(
                    id=node_id,
                    name=get_display_name(first.name, first.schema),
                    node_type=NodeType(first.type),
                    file_path=first.file_path,
                    line_number=first.line_number,
                    metadata=RelationMetadata(
                        schema=first.schema,
                        full_name=f"{schema_prefix}{first.name}",
                        column_count=len(first.columns),
                        definition_files=tuple(files),
                    ),
                )
            )

    def _add_cte_nodes(
        self, state: _BuildState, file_path: str, analysis: FileAnalysis
    ) -> None:
        if analysis.has_queries:
            for query in analysis.queries or ():
                for cte in query.ctes:
                    self._add_cte_node(
                        state, file_path, cte.name, cte.line_number or query.line_number, "query"
                    )
            return

        text = state.sources.read_text(file_path)
        if text is None:
            return
        recovery = self._extractor.extract_ctes(text, label=file_path)
        for name in sorted(recovery.names):
            self._add_cte_node(state, file_path, name, 0, recovery.strategy or "regex")

    def _add_cte_node(
        self,
        state: _BuildState,
        file_path: str,
        name: str,
        line_number: int,
        recovered_from: str,
    ) -> None:
        key = get_qualified_key(strip_identifier_quotes(name))
        if not key:
            return
        state.exclusions[file_path].add(key)

        node_id = table_node_id(NodeType.CTE, key)
        if state.graph.has_node(node_id):
            return
        state.graph.add_node(
            LineageNode(
                id=node_id,
                name=name,
                node_type=NodeType.CTE,
                file_path=file_path,
                line_number=line_number,
                metadata=CteMetadata(
                    file_path=file_path,
                    line_number=line_number,
                    recovered_from=recovered_from,
                ),
            )
        )

    def _collect_alias_exclusions(self, state: _BuildState, file_path: str) -> None:
        text = state.sources.read_text(file_path)
        if text is None:
            return
        state.exclusions[file_path] |= self._extractor.extract_aliases(text)

    def _add_column_nodes(self, state: _BuildState, index: WorkspaceIndex) -> None:
        graph = state.graph
        # Columns come from the first definition of each relation only.
        seen_owners: set[str] = set()
        for definition in index.iter_definitions():
            table_key = definition.qualified_key
            owner_id = table_node_id(definition.type, table_key)
            if owner_id in seen_owners:
                continue
            seen_owners.add(owner_id)
            if not definition.columns:
                continue
            owner = graph.get_node(owner_id)
            if owner is None:
                logger.debug(
                    "Definition %s in %s has columns but no owning node",
                    definition.name,
                    definition.file_path,
                )
                continue

            for column in definition.columns:
                column_id = column_node_id(table_key, column.name)
                if graph.has_node(column_id):
                    continue
                fk = column.foreign_key
                graph.add_node(
                    LineageNode(
                        id=column_id,
                        name=column.name,
                        node_type=NodeType.COLUMN,
                        parent_id=owner.id,
                        file_path=definition.file_path,
                        line_number=column.line_number or definition.line_number,
                        metadata=ColumnMetadata(
                            data_type=column.data_type,
                            nullable=column.nullable,
                            is_primary_key=column.primary_key,
                            references=(
                                f"{fk.referenced_table}.{fk.referenced_column}" if fk else None
                            ),
                        ),
                        column_info=column,
                    )
                )
                graph.add_edge(
                    LineageEdge(
                        id=f"{owner.id}->{column_id}",
                        source=owner.id,
                        target=column_id,
                        edge_type=EdgeType.DIRECT,
                        metadata=ContainsMetadata(),
                    )
                )

    def _ensure_relation_node(self, state: _BuildState, table_key: str) -> LineageNode | None:
        """Resolve a table/view node, creating an external node if allowed."""
        graph = state.graph
        node_id = graph.resolve_table_node_id(table_key)
        if node_id is not None:
            return graph.get_node(node_id)
        if not self._config.include_external:
            return None

        key = get_qualified_key(table_key)
        external_id = table_node_id(NodeType.EXTERNAL, key)
        existing = graph.get_node(external_id)
        if existing is not None:
            return existing

        parsed = parse_qualified_key(key)
        node = LineageNode(
            id=external_id,
            name=get_display_name(parsed.name, parsed.schema),
            node_type=NodeType.EXTERNAL,
            metadata=ExternalMetadata(),
        )
        graph.add_node(node)
        return node

    # -------------------------------------------------------------------------
    # Data-flow edges
    # -------------------------------------------------------------------------

    def _is_excluded(self, state: _BuildState, file_path: str, ref: TableReference) -> bool:
        if ref.reference_type == ReferenceType.CTE:
            return True
        excluded = state.exclusions.get(file_path, set())
        return (
            ref.qualified_key in excluded
            or get_qualified_key(strip_identifier_quotes(ref.table_name)) in excluded
        )

    def _bucket_references(
        self, state: _BuildState, file_path: str, analysis: FileAnalysis
    ) -> dict[int, _StatementBucket]:
        """Group references by statement, dropping CTE and alias references."""
        buckets: dict[int, _StatementBucket] = {}
        for ref in analysis.references:
            if self._is_excluded(state, file_path, ref):
                continue

            index = ref.statement_index if ref.statement_index is not None else 0
            bucket = buckets.setdefault(index, _StatementBucket(index=index))
            bucket.references.append(ref)

            key = ref.qualified_key
            if ref.reference_type in INPUT_REFERENCE_TYPES:
                bucket.inputs.setdefault(key, ref)
                if ref.reference_type == ReferenceType.JOIN:
                    bucket.join_keys.add(key)
            elif ref.reference_type in OUTPUT_REFERENCE_TYPES:
                bucket.add_output(key)
        return buckets

    def _statement_for_definition(
        self,
        definition: SchemaDefinition,
        definitions: tuple[SchemaDefinition, ...],
        buckets: dict[int, _StatementBucket],
    ) -> int | None:
        """Find which statement of the file a definition belongs to.

        Uses the definition's own statement index when known. Otherwise the
        statement whose first reference lies between the definition line and
        the next definition line. Unknown positions fall back to statement 0.
        """
        if definition.statement_index is not None:
            return definition.statement_index
        if len(buckets) <= 1 or definition.line_number <= 0:
            return next(iter(buckets), 0)

        next_lines = [
            d.line_number for d in definitions if d.line_number > definition.line_number
        ]
        upper = min(next_lines) if next_lines else None

        candidates = [
            bucket
            for bucket in buckets.values()
            if bucket.first_line >= definition.line_number
            and (upper is None or bucket.first_line < upper)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda b: b.first_line).index

    def _add_flow_edges(
        self,
        state: _BuildState,
        file_path: str,
        analysis: FileAnalysis,
        buckets: dict[int, _StatementBucket],
    ) -> None:
        for definition in analysis.definitions:
            index = self._statement_for_definition(definition, analysis.definitions, buckets)
            bucket = buckets.get(index) if index is not None else None
            if bucket is None or not bucket.inputs:
                continue
            if definition.type == NodeType.VIEW.value:
                bucket.add_output(definition.qualified_key)
            elif definition.type == NodeType.TABLE.value and CTAS_PATTERN.search(definition.sql):
                bucket.add_output(definition.qualified_key)

        for bucket in buckets.values():
            if not bucket.inputs or not bucket.outputs:
                continue
            for input_key in bucket.inputs:
                source = self._ensure_relation_node(state, input_key)
                if source is None:
                    continue
                edge_type = EdgeType.JOIN if input_key in bucket.join_keys else EdgeType.DIRECT

                for output_key in bucket.outputs:
                    target = self._ensure_relation_node(state, output_key)
                    if target is None or target.id == source.id:
                        continue
                    state.graph.add_edge(
                        LineageEdge(
                            id=f"{source.id}->{target.id}",
                            source=source.id,
                            target=target.id,
                            edge_type=edge_type,
                            metadata=DataFlowMetadata(
                                file_path=file_path,
                                statement_index=bucket.index,
                                input_count=len(bucket.inputs),
                                output_count=len(bucket.outputs),
                            ),
                        )
                    )

    # -------------------------------------------------------------------------
    # Column edges
    # -------------------------------------------------------------------------

    def _add_column_edges(
        self,
        state: _BuildState,
        file_path: str,
        analysis: FileAnalysis,
        buckets: dict[int, _StatementBucket],
    ) -> None:
        for position, query in enumerate(analysis.queries or ()):
            if not query.transformations:
                continue
            index = query.statement_index if query.statement_index is not None else position
            bucket = buckets.get(index)
            if bucket is None and len(buckets) == 1:
                bucket = next(iter(buckets.values()))
            references = bucket.references if bucket is not None else []

            target_id = self._resolve_query_target(state, query, analysis, references, index, buckets)
            if target_id is None:
                logger.debug(
                    "No target relation for statement %d in %s; skipping column lineage",
                    index,
                    file_path,
                )
                continue

            for transformation in query.transformations:
                self._add_transformation_edges(
                    state, file_path, query, transformation, target_id, references
                )

    def _add_transformation_edges(
        self,
        state: _BuildState,
        file_path: str,
        query: QueryAnalysis,
        transformation: Transformation,
        target_id: str,
        references: list[TableReference],
    ) -> None:
        inputs = [r for r in references if r.reference_type in INPUT_REFERENCE_TYPES]
        for column in transformation.input_columns:
            transform_type = map_transformation_type(transformation, column.column_name)
            if transform_type is None:
                return

            source_name = self._source_table_name(column.table_name or column.table_alias, inputs)
            source_id = self._find_node_id(state.graph, source_name) if source_name else None
            if source_id is None:
                logger.debug(
                    "Unresolved source table for column %s in %s",
                    column.column_name,
                    file_path,
                )
                continue

            state.graph.add_column_edge(
                ColumnLineageEdge.create(
                    source_table_id=source_id,
                    source_column_name=column.column_name,
                    target_table_id=target_id,
                    target_column_name=transformation.target_column,
                    transformation_type=transform_type,
                    expression=transformation.expression or None,
                    file_path=file_path,
                    line_number=transformation.line_number or query.line_number,
                )
            )

    @staticmethod
    def _source_table_name(
        qualifier: str | None, inputs: list[TableReference]
    ) -> str | None:
        """Resolve a column qualifier (table name or alias) to a table key."""
        if qualifier:
            lowered = strip_identifier_quotes(qualifier).lower()
            for ref in inputs:
                if ref.alias and ref.alias.lower() == lowered:
                    return ref.qualified_key
            return get_qualified_key(lowered)

        keys = {ref.qualified_key for ref in inputs}
        if len(keys) == 1:
            return next(iter(keys))
        return None

    def _resolve_query_target(
        self,
        state: _BuildState,
        query: QueryAnalysis,
        analysis: FileAnalysis,
        references: list[TableReference],
        index: int,
        buckets: dict[int, _StatementBucket],
    ) -> str | None:
        graph = state.graph
        statement_type = query.statement_type

        output_type = _STATEMENT_OUTPUT_TYPES.get(statement_type)
        if output_type is not None:
            for ref in references:
                if ref.reference_type == output_type:
                    return self._find_node_id(graph, ref.qualified_key)

        if statement_type in (StatementType.CREATE_VIEW, StatementType.CREATE_TABLE):
            wanted = "view" if statement_type == StatementType.CREATE_VIEW else "table"
            candidates = [d for d in analysis.definitions if d.type == wanted]
            for definition in candidates:
                if definition.statement_index == index or (
                    query.line_number and definition.line_number == query.line_number
                ):
                    return self._find_node_id(graph, definition.qualified_key)
            for definition in candidates:
                if self._statement_for_definition(definition, analysis.definitions, buckets) == index:
                    return self._find_node_id(graph, definition.qualified_key)
            if len(candidates) == 1:
                return self._find_node_id(graph, candidates[0].qualified_key)

        if statement_type == StatementType.CTE and query.ctes:
            return graph.resolve_table_node_id(
                get_qualified_key(strip_identifier_quotes(query.ctes[0].name)),
                (NodeType.CTE,),
            )

        if query.sql:
            match = INSERT_INTO_PATTERN.search(query.sql) or SELECT_INTO_PATTERN.search(query.sql)
            if match:
                name = strip_identifier_quotes(re.sub(r"\s+", "", match.group(1)))
                return self._find_node_id(graph, get_qualified_key(name))
        return None

    @staticmethod
    def _find_node_id(graph: LineageGraph, table_key: str) -> str | None:
        """Resolve a table name against all relation kinds, then by display name."""
        node_id = graph.resolve_table_node_id(table_key, TABLE_LIKE_TYPES)
        if node_id is not None:
            return node_id

        wanted = get_qualified_key(table_key)
        for node in graph.iter_nodes():
            if node.node_type in TABLE_LIKE_TYPES and node.name.lower() == wanted:
                return node.id
        return None
