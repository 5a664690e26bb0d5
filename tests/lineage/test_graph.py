"""Tests for the lineage graph model and configuration."""

from __future__ import annotations

import pytest

from lineagescope.lineage.base import (
    ColumnLineageEdge,
    ColumnTransformType,
    ConfigError,
    ContainsMetadata,
    DataFlowMetadata,
    EdgeRelationship,
    GraphFrozenError,
    LineageConfig,
    LineageGraph,
    LineageNode,
    NodeNotFoundError,
    NodeType,
    RelationMetadata,
    column_node_id,
    split_node_id,
    table_node_id,
)


# =============================================================================
# Test node ids
# =============================================================================


class TestNodeIds:
    def test_table_node_id(self):
        """Test relation node ids."""
        assert table_node_id(NodeType.VIEW, "sales.orders") == "view:sales.orders"
        assert table_node_id("cte", "recent") == "cte:recent"

    def test_column_node_id_lowercases_column(self):
        """Test column node ids lowercase the column."""
        assert column_node_id("orders", "Amount") == "column:orders.amount"

    def test_split_node_id(self):
        """Test splitting a node id into prefix and key."""
        assert split_node_id("table:sales.orders") == ("table", "sales.orders")
        assert split_node_id("orders") == (None, "orders")


# =============================================================================
# Test LineageNode / LineageEdge
# =============================================================================


class TestLineageNode:
    """Tests for LineageNode."""

    def test_identity_is_the_id(self):
        """Test node equality and hashing use the id."""
        a = LineageNode(id="table:a", name="a", node_type=NodeType.TABLE)
        b = LineageNode(id="table:a", name="A", node_type=NodeType.TABLE, file_path="x.sql")

        assert a == b
        assert len({a, b}) == 1

    def test_definition_files(self):
        """Test definition files of a node."""
        node = LineageNode(
            id="table:a",
            name="a",
            node_type=NodeType.TABLE,
            file_path="one.sql",
            metadata=RelationMetadata(definition_files=("one.sql", "two.sql")),
        )
        assert node.definition_files == ("one.sql", "two.sql")

    def test_to_dict(self):
        """Test node serialization."""
        node = LineageNode(id="table:a", name="a", node_type=NodeType.TABLE)
        data = node.to_dict()

        assert data["id"] == "table:a"
        assert data["node_type"] == "table"
        assert data["metadata"] == {}


class TestLineageEdge:
    def test_structural_edge(self, make_edge):
        """Test contains edges are structural."""
        edge = make_edge("table:a", "column:a.x", metadata=ContainsMetadata())

        assert edge.is_structural
        assert edge.relationship == EdgeRelationship.CONTAINS
        assert edge.file_path is None

    def test_data_flow_edge(self, make_edge):
        """Test data-flow edges carry provenance."""
        edge = make_edge("table:a", "view:b", metadata=DataFlowMetadata(file_path="etl.sql"))

        assert not edge.is_structural
        assert edge.relationship == EdgeRelationship.DATA_FLOW
        assert edge.file_path == "etl.sql"

    def test_column_edge_id(self):
        """Test column edge ids."""
        edge = ColumnLineageEdge.create(
            "table:orders", "amount", "table:summary", "total", ColumnTransformType.AGGREGATE
        )
        assert edge.id == "table:orders.amount->table:summary.total"


# =============================================================================
# Test LineageGraph
# =============================================================================


class TestLineageGraph:
    """Tests for LineageGraph."""

    def test_add_node_and_edge(self, make_node, make_edge):
        """Test adding nodes and edges."""
        graph = LineageGraph()
        graph.add_node(make_node("table:a"))
        graph.add_node(make_node("view:b"))

        assert graph.add_edge(make_edge("table:a", "view:b")) is True
        assert graph.node_count == 2
        assert graph.edge_count == 1
        assert graph.has_edge("table:a->view:b")

    def test_duplicate_edge_is_ignored(self, make_node, make_edge):
        """Test a duplicate edge is not added twice."""
        graph = LineageGraph()
        graph.add_node(make_node("table:a"))
        graph.add_node(make_node("table:b"))
        graph.add_edge(make_edge("table:a", "table:b"))

        assert graph.add_edge(make_edge("table:a", "table:b")) is False
        assert graph.edge_count == 1

    def test_edge_requires_endpoints(self, make_node, make_edge):
        """Test an edge with a missing endpoint."""
        graph = LineageGraph()
        graph.add_node(make_node("table:a"))

        with pytest.raises(NodeNotFoundError) as exc_info:
            graph.add_edge(make_edge("table:a", "table:missing"))
        assert exc_info.value.node_id == "table:missing"

    def test_duplicate_column_edge_is_ignored(self):
        """Test a duplicate column edge is not added twice."""
        graph = LineageGraph()
        edge = ColumnLineageEdge.create("table:a", "x", "table:b", "y")

        assert graph.add_column_edge(edge) is True
        assert graph.add_column_edge(edge) is False
        assert graph.column_edge_count == 1

    def test_frozen_graph_rejects_mutation(self, chain_graph, make_node, make_edge):
        """Test mutation of a frozen graph."""
        assert chain_graph.is_frozen

        with pytest.raises(GraphFrozenError):
            chain_graph.add_node(make_node("table:z"))
        with pytest.raises(GraphFrozenError):
            chain_graph.add_edge(make_edge("table:a", "table:c"))
        with pytest.raises(GraphFrozenError):
            chain_graph.add_column_edge(ColumnLineageEdge.create("table:a", "x", "table:b", "y"))

    def test_nodes_view_is_read_only(self, chain_graph):
        """Test the nodes mapping is read-only."""
        with pytest.raises(TypeError):
            chain_graph.nodes["table:z"] = None  # type: ignore[index]

    def test_iter_nodes_by_type(self, make_graph):
        """Test iterating nodes of one type."""
        graph = make_graph(["table:a", "view:b", "cte:c"])

        assert [n.id for n in graph.iter_nodes(NodeType.VIEW)] == ["view:b"]
        assert len(list(graph.iter_nodes())) == 3

    def test_edges_for_node(self, chain_graph):
        """Test edge lookup by direction."""
        assert [e.id for e in chain_graph.get_edges_for_node("table:b", "incoming")] == [
            "table:a->table:b"
        ]
        assert [e.id for e in chain_graph.get_edges_for_node("table:b", "outgoing")] == [
            "table:b->table:c"
        ]
        assert len(chain_graph.get_edges_for_node("table:b")) == 2

    def test_upstream_and_downstream(self, chain_graph):
        """Test graph upstream and downstream walks."""
        assert [n.id for n in chain_graph.get_upstream("table:c")] == ["table:b", "table:a"]
        assert [n.id for n in chain_graph.get_downstream("table:a")] == ["table:b", "table:c"]

    def test_depth_limit(self, chain_graph):
        """Test walks limited by depth."""
        assert [n.id for n in chain_graph.get_downstream("table:a", depth=1)] == ["table:b"]

    def test_unknown_node_traversal_is_empty(self, chain_graph):
        """Test walks from an unknown node."""
        assert chain_graph.get_upstream("table:missing") == []
        assert chain_graph.get_downstream("table:missing") == []

    def test_traversal_terminates_on_cycles(self, cycle_graph):
        """Test walks terminate on cycles."""
        assert [n.id for n in cycle_graph.get_downstream("table:a")] == ["table:b"]

    def test_resolve_table_node_id(self, make_graph):
        """Test resolving a relation name to a node id."""
        graph = make_graph(["table:orders", "view:sales.summary"])

        assert graph.resolve_table_node_id("Orders") == "table:orders"
        assert graph.resolve_table_node_id("sales.summary") == "view:sales.summary"
        assert graph.resolve_table_node_id("sales.orders") == "table:orders"
        assert graph.resolve_table_node_id("missing") is None

    def test_resolve_respects_node_types(self, make_graph):
        """Test resolution restricted to node types."""
        graph = make_graph(["cte:recent"])

        assert graph.resolve_table_node_id("recent") is None
        assert graph.resolve_table_node_id("recent", (NodeType.CTE,)) == "cte:recent"

    def test_get_column_lineage(self, sample_graph):
        """Test column node lineage paths."""
        upstream, downstream = sample_graph.get_column_lineage("table:orders", "amount")

        assert upstream.nodes[0].id == "column:orders.amount"
        assert [n.id for n in upstream.nodes[1:]] == ["table:orders"]
        assert upstream.depth == 1
        assert downstream.depth == 0

    def test_get_column_lineage_unknown_column(self, sample_graph):
        """Test lineage of an unknown column."""
        assert sample_graph.get_column_lineage("table:orders", "nope") == []

    def test_to_dict(self, chain_graph):
        """Test graph serialization."""
        data = chain_graph.to_dict()

        assert len(data["nodes"]) == 3
        assert [e["id"] for e in data["edges"]] == ["table:a->table:b", "table:b->table:c"]
        assert data["column_edges"] == []


# =============================================================================
# Test LineageConfig
# =============================================================================


class TestLineageConfig:
    """Tests for LineageConfig."""

    def test_defaults(self):
        """Test default configuration."""
        config = LineageConfig()

        assert config.include_external is True
        assert config.include_columns is True
        assert config.severity_thresholds == (3, 10, 20)
        assert "postgres" in config.parse_dialects

    def test_from_dict(self):
        """Test configuration from a dict."""
        config = LineageConfig.from_dict(
            {"include_external": False, "parse_dialects": ["mysql"], "severity_thresholds": [1, 2, 3]}
        )

        assert config.include_external is False
        assert config.parse_dialects == ("mysql",)
        assert config.severity_thresholds == (1, 2, 3)

    def test_unknown_key(self):
        """Test an unknown configuration key."""
        with pytest.raises(ConfigError, match="Unknown lineage config key"):
            LineageConfig.from_dict({"include_everything": True})

    def test_unknown_dialect(self):
        """Test a misspelled parse dialect is rejected."""
        with pytest.raises(ConfigError, match="postgress"):
            LineageConfig.from_dict({"parse_dialects": ["postgress"]})

    def test_thresholds_must_ascend(self):
        """Test severity thresholds must ascend."""
        with pytest.raises(ConfigError, match="ascending"):
            LineageConfig.from_dict({"severity_thresholds": [10, 5, 20]})

    def test_load_yaml_section(self, tmp_path):
        """Test loading the lineage section of a YAML file."""
        path = tmp_path / "lineage.yaml"
        path.write_text("lineage:\n  include_columns: false\n  source_encoding: latin-1\n")

        config = LineageConfig.load(path)
        assert config.include_columns is False
        assert config.source_encoding == "latin-1"

    def test_load_missing(self, tmp_path):
        """Test loading a missing config file."""
        with pytest.raises(ConfigError, match="not found"):
            LineageConfig.load(tmp_path / "missing.yaml")

    def test_load_not_a_mapping(self, tmp_path):
        """Test loading a config that is not a mapping."""
        path = tmp_path / "lineage.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="mapping"):
            LineageConfig.load(path)
