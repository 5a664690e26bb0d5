"""Tests for the lineagescope command-line interface."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from lineagescope.cli import app


VIEW_SQL = """\
CREATE VIEW order_totals AS
SELECT customer_id, SUM(amount) AS total
FROM orders
GROUP BY customer_id;
"""

INDEX = {
    "files": [
        {
            "file_path": "schema.sql",
            "definitions": [
                {"type": "table", "name": "customers", "line_number": 1, "columns": [{"name": "id"}]},
                {
                    "type": "table",
                    "name": "orders",
                    "line_number": 5,
                    "columns": [
                        {"name": "id"},
                        {
                            "name": "customer_id",
                            "foreign_key": {"referenced_table": "customers", "referenced_column": "id"},
                        },
                        {"name": "amount"},
                    ],
                },
            ],
        },
        {
            "file_path": "views.sql",
            "definitions": [{"type": "view", "name": "order_totals", "line_number": 1}],
            "references": [{"table_name": "orders", "reference_type": "select", "line_number": 3}],
        },
    ]
}


@pytest.fixture
def runner():
    """Create CLI runner."""
    return CliRunner()


@pytest.fixture
def index_file(tmp_path):
    """Write a small workspace and its index to disk."""
    (tmp_path / "schema.sql").write_text("-- tables\n")
    (tmp_path / "views.sql").write_text(VIEW_SQL)
    path = tmp_path / "index.json"
    path.write_text(json.dumps(INDEX))
    return path


class TestSummaryCommand:
    def test_json(self, runner, index_file):
        """Test summary as JSON."""
        result = runner.invoke(app, ["summary", str(index_file), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["nodes"] == 7
        assert data["edges"] == 5
        assert data["column_edges"] == 0
        assert data["nodes_by_type"] == {"column": 4, "table": 2, "view": 1}
        assert data["roots"] == ["table:customers", "table:orders"]
        assert data["cycles"] == 0

    def test_table_output(self, runner, index_file):
        """Test summary as a rich table."""
        result = runner.invoke(app, ["summary", str(index_file)])

        assert result.exit_code == 0
        assert "Lineage Graph Summary" in result.stdout

    def test_missing_index(self, runner, tmp_path):
        """Test a missing index file."""
        result = runner.invoke(app, ["summary", str(tmp_path / "missing.json")])

        assert result.exit_code == 10

    def test_invalid_index(self, runner, tmp_path):
        """Test a malformed index file."""
        path = tmp_path / "index.json"
        path.write_text("{not json")

        result = runner.invoke(app, ["summary", str(path)])
        assert result.exit_code == 13

    def test_unreadable_index(self, runner, tmp_path):
        """Test an index path that cannot be read as a file."""
        path = tmp_path / "index.json"
        path.mkdir()

        result = runner.invoke(app, ["summary", str(path)])
        assert result.exit_code == 11

    def test_invalid_config(self, runner, index_file, tmp_path):
        """Test an unknown key in the config file."""
        config = tmp_path / "lineage.yaml"
        config.write_text("unknown_option: true\n")

        result = runner.invoke(app, ["summary", str(index_file), "--config", str(config)])
        assert result.exit_code == 31

    def test_config_disables_columns(self, runner, index_file, tmp_path):
        """Test a config file that turns off column nodes."""
        config = tmp_path / "lineage.yaml"
        config.write_text("lineage:\n  include_columns: false\n")

        result = runner.invoke(app, ["summary", str(index_file), "-c", str(config), "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["nodes"] == 3


class TestFlowCommands:
    def test_downstream(self, runner, index_file):
        """Test downstream traversal."""
        result = runner.invoke(app, ["downstream", str(index_file), "table:orders", "--json"])

        assert result.exit_code == 0
        node_ids = [n["id"] for n in json.loads(result.stdout)["nodes"]]
        assert "view:order_totals" in node_ids

    def test_upstream_with_depth(self, runner, index_file):
        """Test upstream traversal limited by depth."""
        result = runner.invoke(
            app, ["upstream", str(index_file), "view:order_totals", "--max-depth", "1", "--json"]
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [n["id"] for n in data["nodes"]] == ["table:orders"]
        assert data["depth"] == 1

    def test_unknown_node(self, runner, index_file):
        """Test an unknown node id."""
        result = runner.invoke(app, ["upstream", str(index_file), "table:nope"])

        assert result.exit_code == 61

    def test_cycles(self, runner, index_file):
        """Test cycle detection on an acyclic workspace."""
        result = runner.invoke(app, ["cycles", str(index_file), "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == []


class TestColumnCommand:
    def test_no_column_lineage(self, runner, index_file):
        """Test a column without column edges."""
        result = runner.invoke(app, ["column", str(index_file), "table:orders", "amount", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"upstream": [], "downstream": []}


class TestImpactCommand:
    def test_drop_table(self, runner, index_file):
        """Test impact of dropping a table."""
        result = runner.invoke(
            app, ["impact", str(index_file), "orders", "--change-type", "drop", "--json"]
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["change_type"] == "drop"
        assert [i["node_id"] for i in data["direct_impacts"]] == ["view:order_totals"]
        assert data["severity"] == "low"

    def test_camel_case_change_type(self, runner, index_file):
        """Test the camelCase spelling of a change type is accepted."""
        result = runner.invoke(
            app, ["impact", str(index_file), "orders", "--change-type", "addColumn", "--json"]
        )

        assert result.exit_code == 0
        assert json.loads(result.stdout)["change_type"] == "add_column"

    def test_invalid_change_type(self, runner, index_file):
        """Test an unknown change type is a usage error."""
        result = runner.invoke(app, ["impact", str(index_file), "orders", "--change-type", "explode"])

        assert result.exit_code == 2

    def test_foreign_key_impact(self, runner, index_file):
        """Test foreign key columns as direct impacts."""
        result = runner.invoke(app, ["impact", str(index_file), "customers", "--json"])

        assert result.exit_code == 0
        direct = [i["node_id"] for i in json.loads(result.stdout)["direct_impacts"]]
        assert direct == ["column:orders.customer_id"]

    def test_column_impact(self, runner, index_file):
        """Test impact of a column change."""
        result = runner.invoke(
            app, ["impact", str(index_file), "orders", "--column", "amount", "--json"]
        )

        assert result.exit_code == 0
        assert json.loads(result.stdout)["target"]["type"] == "column"

    def test_rich_output(self, runner, index_file):
        """Test impact report as rich output."""
        result = runner.invoke(app, ["impact", str(index_file), "orders"])

        assert result.exit_code == 0
        assert "Impact Analysis" in result.stdout
