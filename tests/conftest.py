"""Shared fixtures for lineagescope tests.

Graph fixtures are built by hand so traversal and impact tests do not depend
on the builder. The ``sample_*`` fixtures describe a small but realistic
workspace with in-memory SQL sources:

- schema.sql: customers, orders (FK to customers), customer_summary
- views.sql: daily_revenue view reading orders through a CTE
- etl.sql: two unrelated INSERT statements
- reports.sql: INSERT reading orders through a derived table aliased ``t``
"""

from __future__ import annotations

from typing import Callable, Iterable

import pytest

from lineagescope.lineage.base import (
    ColumnLineageEdge,
    EdgeType,
    LineageConfig,
    LineageEdge,
    LineageGraph,
    LineageNode,
    NodeType,
    split_node_id,
)
from lineagescope.lineage.builder import LineageBuilder
from lineagescope.lineage.sql_structure import InMemorySourceProvider
from lineagescope.workspace import (
    ColumnInfo,
    ColumnReference,
    FileAnalysis,
    ForeignKeyRef,
    QueryAnalysis,
    ReferenceType,
    SchemaDefinition,
    StatementType,
    TableReference,
    Transformation,
    TransformationKind,
    WorkspaceIndex,
)


# =============================================================================
# Graph helpers
# =============================================================================


def _node(node_id: str, node_type: NodeType | str | None = None, name: str | None = None, **kwargs) -> LineageNode:
    prefix, key = split_node_id(node_id)
    return LineageNode(
        id=node_id,
        name=name or key,
        node_type=NodeType(node_type or prefix),
        **kwargs,
    )


def _edge(source: str, target: str, edge_type: EdgeType = EdgeType.DIRECT, metadata=None) -> LineageEdge:
    return LineageEdge(
        id=f"{source}->{target}",
        source=source,
        target=target,
        edge_type=edge_type,
        metadata=metadata,
    )


def _graph(
    nodes: Iterable[LineageNode | str],
    edges: Iterable[LineageEdge | tuple] = (),
    column_edges: Iterable[ColumnLineageEdge] = (),
    config: LineageConfig | None = None,
) -> LineageGraph:
    graph = LineageGraph(config)
    for node in nodes:
        graph.add_node(node if isinstance(node, LineageNode) else _node(node))
    for edge in edges:
        graph.add_edge(edge if isinstance(edge, LineageEdge) else _edge(*edge))
    for column_edge in column_edges:
        graph.add_column_edge(column_edge)
    return graph.freeze()


@pytest.fixture
def make_node() -> Callable[..., LineageNode]:
    return _node


@pytest.fixture
def make_edge() -> Callable[..., LineageEdge]:
    return _edge


@pytest.fixture
def make_graph() -> Callable[..., LineageGraph]:
    return _graph


@pytest.fixture
def chain_graph() -> LineageGraph:
    """table:a -> table:b -> table:c"""
    return _graph(
        ["table:a", "table:b", "table:c"],
        [("table:a", "table:b"), ("table:b", "table:c")],
    )


@pytest.fixture
def diamond_graph() -> LineageGraph:
    """a -> b, a -> c, b -> d, c -> d"""
    return _graph(
        ["table:a", "table:b", "table:c", "table:d"],
        [
            ("table:a", "table:b"),
            ("table:a", "table:c"),
            ("table:b", "table:d"),
            ("table:c", "table:d"),
        ],
    )


@pytest.fixture
def cycle_graph() -> LineageGraph:
    """a <-> b"""
    return _graph(
        ["table:a", "table:b"],
        [("table:a", "table:b"), ("table:b", "table:a")],
    )


# =============================================================================
# Sample workspace
# =============================================================================


SCHEMA_SQL = """\
CREATE TABLE customers (
    id INT PRIMARY KEY,
    name VARCHAR(100)
);

CREATE TABLE orders (
    id INT PRIMARY KEY,
    customer_id INT REFERENCES customers(id),
    amount DECIMAL(10, 2),
    created_at TIMESTAMP
);

CREATE TABLE customer_summary (
    customer_id INT,
    total_spent DECIMAL(12, 2)
);
"""

VIEWS_SQL = """\
CREATE VIEW daily_revenue AS
WITH recent AS (
    SELECT * FROM orders WHERE created_at > now() - interval '30 days'
)
SELECT CAST(created_at AS date) AS order_date, SUM(amount) AS revenue
FROM recent
GROUP BY 1;
"""

ETL_SQL = """\
-- nightly rollup
INSERT INTO customer_summary (customer_id, total_spent)
SELECT c.id, SUM(o.amount)
FROM customers c
JOIN orders o ON o.customer_id = c.id
GROUP BY c.id;

INSERT INTO audit_log
SELECT * FROM raw_events;
"""

REPORTS_SQL = """\
INSERT INTO top_customers
SELECT t.customer_id, t.total
FROM (
    SELECT customer_id, SUM(amount) AS total
    FROM orders
    GROUP BY customer_id
) AS t
WHERE t.total > 1000;
"""


@pytest.fixture
def sample_sources() -> dict[str, str]:
    return {
        "schema.sql": SCHEMA_SQL,
        "views.sql": VIEWS_SQL,
        "etl.sql": ETL_SQL,
        "reports.sql": REPORTS_SQL,
    }


@pytest.fixture
def sample_index() -> WorkspaceIndex:
    schema = FileAnalysis(
        file_path="schema.sql",
        definitions=(
            SchemaDefinition(
                type="table",
                name="customers",
                file_path="schema.sql",
                line_number=1,
                columns=(
                    ColumnInfo(name="id", data_type="INT", nullable=False, primary_key=True),
                    ColumnInfo(name="name", data_type="VARCHAR(100)"),
                ),
            ),
            SchemaDefinition(
                type="table",
                name="orders",
                file_path="schema.sql",
                line_number=6,
                columns=(
                    ColumnInfo(name="id", data_type="INT", nullable=False, primary_key=True),
                    ColumnInfo(
                        name="customer_id",
                        data_type="INT",
                        foreign_key=ForeignKeyRef("customers", "id"),
                    ),
                    ColumnInfo(name="amount", data_type="DECIMAL(10, 2)"),
                    ColumnInfo(name="created_at", data_type="TIMESTAMP"),
                ),
            ),
            SchemaDefinition(
                type="table",
                name="customer_summary",
                file_path="schema.sql",
                line_number=13,
                columns=(
                    ColumnInfo(name="customer_id", data_type="INT"),
                    ColumnInfo(name="total_spent", data_type="DECIMAL(12, 2)"),
                ),
            ),
        ),
    )

    views = FileAnalysis(
        file_path="views.sql",
        definitions=(
            SchemaDefinition(
                type="view",
                name="daily_revenue",
                file_path="views.sql",
                line_number=1,
                sql=VIEWS_SQL,
                columns=(
                    ColumnInfo(name="order_date", data_type="DATE"),
                    ColumnInfo(name="revenue", data_type="DECIMAL"),
                ),
            ),
        ),
        references=(
            TableReference("orders", ReferenceType.SELECT, "views.sql", line_number=3),
            TableReference("recent", ReferenceType.SELECT, "views.sql", line_number=6),
        ),
    )

    etl = FileAnalysis(
        file_path="etl.sql",
        references=(
            TableReference("customer_summary", ReferenceType.INSERT, "etl.sql", 2, statement_index=0),
            TableReference("customers", ReferenceType.SELECT, "etl.sql", 4, alias="c", statement_index=0),
            TableReference("orders", ReferenceType.JOIN, "etl.sql", 5, alias="o", statement_index=0),
            TableReference("audit_log", ReferenceType.INSERT, "etl.sql", 8, statement_index=1),
            TableReference("raw_events", ReferenceType.SELECT, "etl.sql", 9, statement_index=1),
        ),
        queries=(
            QueryAnalysis(
                statement_type=StatementType.INSERT,
                line_number=2,
                statement_index=0,
                transformations=(
                    Transformation(
                        output_column="customer_id",
                        operation=TransformationKind.DIRECT,
                        input_columns=(ColumnReference("id", table_alias="c"),),
                        expression="c.id",
                        line_number=3,
                    ),
                    Transformation(
                        output_column="total_spent",
                        operation=TransformationKind.AGGREGATE,
                        input_columns=(ColumnReference("amount", table_alias="o"),),
                        expression="SUM(o.amount)",
                        line_number=3,
                    ),
                ),
            ),
            QueryAnalysis(
                statement_type=StatementType.INSERT,
                line_number=8,
                statement_index=1,
            ),
        ),
    )

    reports = FileAnalysis(
        file_path="reports.sql",
        references=(
            TableReference("top_customers", ReferenceType.INSERT, "reports.sql", 1),
            TableReference("t", ReferenceType.SELECT, "reports.sql", 3),
            TableReference("orders", ReferenceType.SELECT, "reports.sql", 5),
        ),
    )

    return WorkspaceIndex.from_files([schema, views, etl, reports])


@pytest.fixture
def sample_graph(sample_index: WorkspaceIndex, sample_sources: dict[str, str]) -> LineageGraph:
    builder = LineageBuilder(source_provider=InMemorySourceProvider(sample_sources))
    return builder.build(sample_index)
