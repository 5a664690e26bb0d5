"""Tests for FlowAnalyzer."""

from __future__ import annotations

import pytest

from lineagescope.lineage.base import NodeType
from lineagescope.lineage.flow import FlowAnalyzer, FlowResult


class TestDirectionalTraversal:
    """Tests for get_upstream / get_downstream."""

    def test_downstream_chain(self, chain_graph):
        """Test downstream traversal along a chain."""
        result = FlowAnalyzer(chain_graph).get_downstream("table:a")

        assert [n.id for n in result.nodes] == ["table:b", "table:c"]
        assert [e.id for e in result.edges] == ["table:a->table:b", "table:b->table:c"]
        assert result.depth == 2
        assert len(result) == 2

    def test_upstream_chain(self, chain_graph):
        """Test upstream traversal along a chain."""
        result = FlowAnalyzer(chain_graph).get_upstream("table:c")

        assert [n.id for n in result.nodes] == ["table:b", "table:a"]
        assert result.depth == 2

    def test_max_depth(self, chain_graph):
        """Test traversal limited by max_depth."""
        flow = FlowAnalyzer(chain_graph)

        assert flow.get_upstream("table:c", max_depth=1).node_ids == {"table:b"}
        assert flow.get_downstream("table:a", max_depth=0).nodes == ()

    def test_diamond_visits_each_node_once(self, diamond_graph):
        """Test a diamond reaches each node once."""
        result = FlowAnalyzer(diamond_graph).get_downstream("table:a")

        assert [n.id for n in result.nodes] == ["table:b", "table:c", "table:d"]
        assert result.depth == 2
        assert [p.to_dict()["nodes"] for p in result.paths] == [
            ["table:a", "table:b"],
            ["table:a", "table:c"],
            ["table:b", "table:d"],
        ]
        assert all(p.depth == 1 for p in result.paths)

    def test_cycle_terminates(self, cycle_graph):
        """Test traversal terminates on a cycle."""
        flow = FlowAnalyzer(cycle_graph)

        assert flow.get_downstream("table:a").node_ids == {"table:b"}
        assert flow.get_upstream("table:a").node_ids == {"table:b"}

    def test_unknown_node(self, chain_graph):
        """Test traversal from an unknown node."""
        result = FlowAnalyzer(chain_graph).get_upstream("table:missing")

        assert result == FlowResult()
        assert result.depth == 0

    def test_filter_types_stop_expansion(self, make_graph):
        """Test type filters stop expansion."""
        graph = make_graph(
            ["table:a", "view:b", "table:c", "table:d"],
            [("table:a", "view:b"), ("view:b", "table:c"), ("table:a", "table:d")],
        )
        result = FlowAnalyzer(graph).get_downstream("table:a", filter_types=[NodeType.TABLE])

        assert result.node_ids == {"table:d"}

    def test_filter_types_accept_strings(self, make_graph):
        """Test type filters given as strings."""
        graph = make_graph(["table:a", "view:b"], [("table:a", "view:b")])

        assert FlowAnalyzer(graph).get_downstream("table:a", filter_types=["view"]).node_ids == {
            "view:b"
        }

    def test_exclude_external(self, sample_graph):
        """Test excluding external nodes."""
        flow = FlowAnalyzer(sample_graph)

        assert "external:top_customers" in flow.get_downstream("table:orders").node_ids
        assert "external:top_customers" not in flow.get_downstream(
            "table:orders", exclude_external=True
        ).node_ids

    def test_external_nodes_are_not_expanded(self, make_graph):
        """Test external nodes are not expanded."""
        graph = make_graph(
            ["table:a", "external:b", "table:c"],
            [("table:a", "external:b"), ("external:b", "table:c")],
        )
        result = FlowAnalyzer(graph).get_downstream("table:a", exclude_external=True)

        assert result.nodes == ()

    def test_to_dict(self, chain_graph):
        """Test flow result serialization."""
        data = FlowAnalyzer(chain_graph).get_downstream("table:a", max_depth=1).to_dict()

        assert [n["id"] for n in data["nodes"]] == ["table:b"]
        assert data["depth"] == 1
        assert data["paths"] == [
            {"nodes": ["table:a", "table:b"], "edges": ["table:a->table:b"], "depth": 1}
        ]


class TestPathBetween:
    """Tests for get_path_between."""

    def test_all_simple_paths(self, diamond_graph):
        """Test every simple path through a diamond."""
        paths = FlowAnalyzer(diamond_graph).get_path_between("table:a", "table:d")

        assert [[n.id for n in p.nodes] for p in paths] == [
            ["table:a", "table:b", "table:d"],
            ["table:a", "table:c", "table:d"],
        ]
        assert [p.depth for p in paths] == [2, 2]
        assert [len(p.edges) for p in paths] == [2, 2]

    def test_no_path(self, chain_graph):
        """Test nodes with no connecting path."""
        assert FlowAnalyzer(chain_graph).get_path_between("table:c", "table:a") == []

    def test_same_node(self, chain_graph):
        """Test a path from a node to itself."""
        (path,) = FlowAnalyzer(chain_graph).get_path_between("table:b", "table:b")

        assert [n.id for n in path.nodes] == ["table:b"]
        assert path.depth == 0

    def test_unknown_nodes(self, chain_graph):
        """Test paths between unknown nodes."""
        flow = FlowAnalyzer(chain_graph)

        assert flow.get_path_between("table:missing", "table:a") == []
        assert flow.get_path_between("table:a", "table:missing") == []

    def test_cycles_do_not_loop(self, make_graph):
        """Test path search on a cycle."""
        graph = make_graph(
            ["table:a", "table:b", "table:c"],
            [("table:a", "table:b"), ("table:b", "table:a"), ("table:b", "table:c")],
        )
        paths = FlowAnalyzer(graph).get_path_between("table:a", "table:c")

        assert [[n.id for n in p.nodes] for p in paths] == [["table:a", "table:b", "table:c"]]


class TestGraphWideQueries:
    """Tests for roots, terminals and cycles."""

    def test_roots_and_terminals(self, chain_graph):
        """Test root and terminal detection."""
        flow = FlowAnalyzer(chain_graph)

        assert [n.id for n in flow.find_root_sources()] == ["table:a"]
        assert [n.id for n in flow.find_terminal_nodes()] == ["table:c"]

    def test_external_nodes_are_excluded(self, make_graph):
        """Test external nodes are never roots or terminals."""
        graph = make_graph(
            ["external:raw", "table:a", "external:out"],
            [("external:raw", "table:a"), ("table:a", "external:out")],
        )
        flow = FlowAnalyzer(graph)

        assert flow.find_root_sources() == []
        assert flow.find_terminal_nodes() == []

    def test_sample_roots(self, sample_graph):
        """Test roots of the sample workspace."""
        roots = {n.id for n in FlowAnalyzer(sample_graph).find_root_sources()}

        assert roots == {"table:customers", "table:orders", "cte:recent"}

    def test_no_cycles(self, diamond_graph):
        """Test an acyclic graph has no cycles."""
        assert FlowAnalyzer(diamond_graph).detect_cycles() == []

    def test_two_node_cycle(self, cycle_graph):
        """Test a two-node cycle."""
        (cycle,) = FlowAnalyzer(cycle_graph).detect_cycles()

        assert [n.id for n in cycle.nodes] == ["table:a", "table:b", "table:a"]
        assert cycle.depth == 2
        assert [e.id for e in cycle.edges] == ["table:a->table:b", "table:b->table:a"]

    def test_self_loop(self, make_graph):
        """Test a self-loop."""
        graph = make_graph(["table:a"], [("table:a", "table:a")])
        (cycle,) = FlowAnalyzer(graph).detect_cycles()

        assert [n.id for n in cycle.nodes] == ["table:a", "table:a"]
        assert cycle.depth == 1

    def test_cycle_behind_a_chain(self, make_graph):
        """Test a cycle reached through a chain."""
        graph = make_graph(
            ["table:a", "table:b", "table:c", "table:d"],
            [
                ("table:a", "table:b"),
                ("table:b", "table:c"),
                ("table:c", "table:d"),
                ("table:d", "table:b"),
            ],
        )
        (cycle,) = FlowAnalyzer(graph).detect_cycles()

        assert [n.id for n in cycle.nodes] == ["table:b", "table:c", "table:d", "table:b"]
        assert cycle.depth == 3


class TestLongChains:
    """Path and cycle searches on chains deeper than the interpreter's recursion limit."""

    HOPS = 3000

    @pytest.fixture
    def long_chain(self, make_graph):
        ids = [f"table:t{i}" for i in range(self.HOPS + 1)]
        return make_graph(ids, list(zip(ids, ids[1:])))

    def test_path_between(self, long_chain):
        """Test a single path spanning the whole chain."""
        (path,) = FlowAnalyzer(long_chain).get_path_between("table:t0", f"table:t{self.HOPS}")

        assert path.depth == self.HOPS
        assert path.nodes[0].id == "table:t0"
        assert path.nodes[-1].id == f"table:t{self.HOPS}"

    def test_no_cycles(self, long_chain):
        """Test cycle detection terminates on a long acyclic chain."""
        assert FlowAnalyzer(long_chain).detect_cycles() == []

    def test_cycle_closing_a_long_chain(self, make_graph):
        """Test a back edge from the end of a long chain to its start."""
        ids = [f"table:t{i}" for i in range(self.HOPS)]
        graph = make_graph(ids, [*zip(ids, ids[1:]), (ids[-1], ids[0])])

        (cycle,) = FlowAnalyzer(graph).detect_cycles()
        assert cycle.depth == self.HOPS
        assert cycle.nodes[0].id == cycle.nodes[-1].id == "table:t0"
