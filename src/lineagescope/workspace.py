"""Workspace index input model.

The index is produced by an external SQL extractor: per-file schema
definitions, table references and (optionally) query analyses with CTEs
and column-level transformations. This module only describes that data and
loads it from dictionaries, JSON or YAML files.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

import yaml

from lineagescope.identifiers import get_qualified_key
from lineagescope.lineage.base import LineageError


# =============================================================================
# Exceptions
# =============================================================================


class IndexLoadError(LineageError):
    """Raised when a workspace index cannot be parsed."""

    pass


# =============================================================================
# Enums
# =============================================================================


class ReferenceType(str, Enum):
    """How a table is referenced inside a statement."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    JOIN = "join"
    SUBQUERY = "subquery"
    CTE = "cte"
    MERGE = "merge"


class StatementType(str, Enum):
    """SQL statement kind of an analyzed query."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    CREATE_TABLE = "create_table"
    CREATE_VIEW = "create_view"
    MERGE = "merge"
    CTE = "cte"
    UNKNOWN = "unknown"


class TransformationKind(str, Enum):
    """How an output column is derived, as reported by the extractor."""

    DIRECT = "direct"
    ALIAS = "alias"
    CONCAT = "concat"
    ARITHMETIC = "arithmetic"
    AGGREGATE = "aggregate"
    SCALAR = "scalar"
    CASE = "case"
    CAST = "cast"
    WINDOW = "window"
    SUBQUERY = "subquery"
    LITERAL = "literal"
    COMPLEX = "complex"


INPUT_REFERENCE_TYPES = frozenset(
    {ReferenceType.SELECT, ReferenceType.JOIN, ReferenceType.SUBQUERY}
)
OUTPUT_REFERENCE_TYPES = frozenset(
    {ReferenceType.INSERT, ReferenceType.UPDATE, ReferenceType.DELETE, ReferenceType.MERGE}
)


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class ForeignKeyRef:
    """Foreign key target of a column."""

    referenced_table: str
    referenced_column: str


@dataclass(frozen=True)
class ColumnInfo:
    """A column declared by a table or view definition."""

    name: str
    data_type: str = ""
    nullable: bool = True
    primary_key: bool = False
    foreign_key: ForeignKeyRef | None = None
    source_table: str | None = None
    source_column: str | None = None
    expression: str | None = None
    is_computed: bool = False
    line_number: int | None = None


@dataclass(frozen=True)
class ColumnReference:
    """A column used inside a query."""

    column_name: str
    table_name: str | None = None
    table_alias: str | None = None
    schema: str | None = None
    expression: str | None = None
    used_in: str = "select"
    line_number: int = 0


@dataclass(frozen=True)
class SchemaDefinition:
    """A CREATE TABLE / CREATE VIEW definition.

    Attributes:
        type: ``"table"`` or ``"view"``
        name: Relation name as written
        schema: Optional schema qualifier
        columns: Declared or derived columns
        file_path: Defining file
        line_number: Line of the CREATE statement
        sql: Statement text, used to detect CREATE TABLE ... AS SELECT
        statement_index: Statement position in the file, when the extractor knows it
    """

    type: str
    name: str
    file_path: str
    line_number: int = 0
    schema: str | None = None
    columns: tuple[ColumnInfo, ...] = field(default_factory=tuple)
    sql: str = ""
    statement_index: int | None = None

    @property
    def qualified_key(self) -> str:
        return get_qualified_key(self.name, self.schema)


@dataclass(frozen=True)
class TableReference:
    """A table used by a statement."""

    table_name: str
    reference_type: ReferenceType
    file_path: str = ""
    line_number: int = 0
    schema: str | None = None
    alias: str | None = None
    context: str = ""
    statement_index: int | None = None
    columns: tuple[ColumnReference, ...] = field(default_factory=tuple)

    @property
    def qualified_key(self) -> str:
        return get_qualified_key(self.table_name, self.schema)


@dataclass(frozen=True)
class Transformation:
    """How one output column of a query is computed from its inputs."""

    output_column: str
    operation: TransformationKind = TransformationKind.DIRECT
    input_columns: tuple[ColumnReference, ...] = field(default_factory=tuple)
    output_alias: str | None = None
    expression: str = ""
    line_number: int = 0

    @property
    def target_column(self) -> str:
        return self.output_alias or self.output_column


@dataclass(frozen=True)
class CTEDefinition:
    """A ``WITH name AS (...)`` clause."""

    name: str
    columns: tuple[str, ...] = field(default_factory=tuple)
    is_recursive: bool = False
    line_number: int = 0


@dataclass(frozen=True)
class QueryAnalysis:
    """Extractor output for one statement."""

    statement_type: StatementType = StatementType.UNKNOWN
    ctes: tuple[CTEDefinition, ...] = field(default_factory=tuple)
    transformations: tuple[Transformation, ...] = field(default_factory=tuple)
    line_number: int = 0
    sql: str | None = None
    statement_index: int | None = None


@dataclass(frozen=True)
class FileAnalysis:
    """Extractor output for one SQL file."""

    file_path: str
    definitions: tuple[SchemaDefinition, ...] = field(default_factory=tuple)
    references: tuple[TableReference, ...] = field(default_factory=tuple)
    queries: tuple[QueryAnalysis, ...] | None = None
    parse_error: str | None = None

    @property
    def has_queries(self) -> bool:
        return bool(self.queries)


@dataclass
class WorkspaceIndex:
    """All analyzed files of a workspace.

    Attributes:
        files: file path -> analysis
        definition_map: qualified key -> definitions sharing that key
    """

    files: dict[str, FileAnalysis] = field(default_factory=dict)
    definition_map: dict[str, list[SchemaDefinition]] = field(default_factory=dict)

    @classmethod
    def from_files(cls, analyses: list[FileAnalysis] | tuple[FileAnalysis, ...]) -> "WorkspaceIndex":
        """Build an index, deriving the definition map from the file analyses."""
        files: dict[str, FileAnalysis] = {}
        definition_map: dict[str, list[SchemaDefinition]] = {}
        for analysis in analyses:
            files[analysis.file_path] = analysis
            for definition in analysis.definitions:
                definition_map.setdefault(definition.qualified_key, []).append(definition)
        return cls(files=files, definition_map=definition_map)

    def iter_definitions(self) -> Iterator[SchemaDefinition]:
        for definitions in self.definition_map.values():
            yield from definitions

    @property
    def file_count(self) -> int:
        return len(self.files)

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkspaceIndex":
        """Deserialize an index.

        Expects ``{"files": [<file analysis>, ...]}`` (or a mapping of path to
        analysis). An explicit ``definitions`` list overrides the derived
        definition map. Keys may be snake_case or camelCase.

        Raises:
            IndexLoadError: If the structure is invalid
        """
        if not isinstance(data, dict):
            raise IndexLoadError(
                f"Workspace index must be a mapping, got {type(data).__name__}"
            )

        raw_files = data.get("files", [])
        if isinstance(raw_files, dict):
            raw_files = [
                {**analysis, "file_path": _get(analysis, "file_path") or path}
                for path, analysis in raw_files.items()
            ]

        try:
            analyses = [_file_from_dict(item) for item in raw_files]
        except (KeyError, TypeError, ValueError) as e:
            raise IndexLoadError(f"Invalid file analysis in workspace index: {e}") from e

        index = cls.from_files(analyses)

        raw_definitions = data.get("definitions")
        if raw_definitions is not None:
            try:
                definitions = [_definition_from_dict(d, "") for d in raw_definitions]
            except (KeyError, TypeError, ValueError) as e:
                raise IndexLoadError(f"Invalid definition in workspace index: {e}") from e
            index.definition_map = {}
            for definition in definitions:
                index.definition_map.setdefault(definition.qualified_key, []).append(definition)

        return index

    @classmethod
    def load(cls, path: str | Path) -> "WorkspaceIndex":
        """Load an index from a JSON or YAML file.

        Raises:
            FileNotFoundError: If the file does not exist
            IndexLoadError: If the file is empty or malformed
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Workspace index not found: {path}")

        content = path.read_text(encoding="utf-8").strip()
        if not content:
            raise IndexLoadError(f"Workspace index file is empty: {path}")

        try:
            if path.suffix.lower() in (".yaml", ".yml"):
                data = yaml.safe_load(content)
            else:
                data = json.loads(content)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise IndexLoadError(f"Could not parse workspace index {path}: {e}") from e

        return cls.from_dict(data)


# =============================================================================
# Deserialization helpers
# =============================================================================


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def _get(data: dict[str, Any], key: str, default: Any = None) -> Any:
    if key in data:
        return data[key]
    return data.get(_camel(key), default)


def _foreign_key_from_dict(data: dict[str, Any] | None) -> ForeignKeyRef | None:
    if not data:
        return None
    return ForeignKeyRef(
        referenced_table=_get(data, "referenced_table"),
        referenced_column=_get(data, "referenced_column", ""),
    )


def _column_info_from_dict(data: dict[str, Any]) -> ColumnInfo:
    return ColumnInfo(
        name=data["name"],
        data_type=_get(data, "data_type", "") or "",
        nullable=_get(data, "nullable", True),
        primary_key=_get(data, "primary_key", False),
        foreign_key=_foreign_key_from_dict(_get(data, "foreign_key")),
        source_table=_get(data, "source_table"),
        source_column=_get(data, "source_column"),
        expression=_get(data, "expression"),
        is_computed=_get(data, "is_computed", False),
        line_number=_get(data, "line_number"),
    )


def _column_ref_from_dict(data: dict[str, Any]) -> ColumnReference:
    return ColumnReference(
        column_name=_get(data, "column_name"),
        table_name=_get(data, "table_name"),
        table_alias=_get(data, "table_alias"),
        schema=_get(data, "schema"),
        expression=_get(data, "expression"),
        used_in=_get(data, "used_in", "select"),
        line_number=_get(data, "line_number", 0),
    )


def _definition_from_dict(data: dict[str, Any], file_path: str) -> SchemaDefinition:
    return SchemaDefinition(
        type=data["type"],
        name=data["name"],
        file_path=_get(data, "file_path") or file_path,
        line_number=_get(data, "line_number", 0),
        schema=_get(data, "schema"),
        columns=tuple(_column_info_from_dict(c) for c in data.get("columns", [])),
        sql=data.get("sql") or "",
        statement_index=_get(data, "statement_index"),
    )


def _reference_from_dict(data: dict[str, Any], file_path: str) -> TableReference:
    return TableReference(
        table_name=_get(data, "table_name"),
        reference_type=ReferenceType(_get(data, "reference_type")),
        file_path=_get(data, "file_path") or file_path,
        line_number=_get(data, "line_number", 0),
        schema=_get(data, "schema"),
        alias=data.get("alias"),
        context=data.get("context", ""),
        statement_index=_get(data, "statement_index"),
        columns=tuple(_column_ref_from_dict(c) for c in data.get("columns") or []),
    )


def _query_from_dict(data: dict[str, Any]) -> QueryAnalysis:
    return QueryAnalysis(
        statement_type=StatementType(_get(data, "statement_type", "unknown")),
        ctes=tuple(
            CTEDefinition(
                name=cte["name"],
                columns=tuple(cte.get("columns") or ()),
                is_recursive=_get(cte, "is_recursive", False),
                line_number=_get(cte, "line_number", 0),
            )
            for cte in data.get("ctes", [])
        ),
        transformations=tuple(
            Transformation(
                output_column=_get(t, "output_column"),
                operation=TransformationKind(t.get("operation", "direct")),
                input_columns=tuple(
                    _column_ref_from_dict(c) for c in _get(t, "input_columns", [])
                ),
                output_alias=_get(t, "output_alias"),
                expression=t.get("expression", ""),
                line_number=_get(t, "line_number", 0),
            )
            for t in data.get("transformations", [])
        ),
        line_number=_get(data, "line_number", 0),
        sql=data.get("sql"),
        statement_index=_get(data, "statement_index"),
    )


def _file_from_dict(data: dict[str, Any]) -> FileAnalysis:
    file_path = _get(data, "file_path")
    if not file_path:
        raise ValueError("file analysis is missing 'file_path'")
    queries = data.get("queries")
    return FileAnalysis(
        file_path=file_path,
        definitions=tuple(_definition_from_dict(d, file_path) for d in data.get("definitions", [])),
        references=tuple(_reference_from_dict(r, file_path) for r in data.get("references", [])),
        queries=tuple(_query_from_dict(q) for q in queries) if queries is not None else None,
        parse_error=_get(data, "parse_error"),
    )
