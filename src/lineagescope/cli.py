"""Command-line interface for lineagescope."""

from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from lineagescope.errors import (
    InvalidOptionError,
    NodeLookupError,
    error_boundary,
    require_file,
)
from lineagescope.lineage import (
    ChangeType,
    ColumnLineageTracker,
    FileSystemSourceProvider,
    FlowAnalyzer,
    FlowResult,
    ImpactAnalyzer,
    LineageBuilder,
    LineageConfig,
    LineageGraph,
)
from lineagescope.workspace import WorkspaceIndex

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="lineagescope",
    help="Table and column lineage for SQL workspaces",
    add_completion=False,
)


IndexArg = Annotated[Path, typer.Argument(help="Path to a JSON or YAML workspace index")]
RootOpt = Annotated[
    Optional[Path],
    typer.Option("--root", "-r", help="Directory that relative SQL file paths resolve against"),
]
ConfigOpt = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Lineage config file (YAML or JSON)"),
]
JsonOpt = Annotated[bool, typer.Option("--json", help="Print JSON instead of tables")]
MaxDepthOpt = Annotated[
    int,
    typer.Option("--max-depth", "-d", help="Maximum hops to follow (-1 for unlimited)"),
]


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Build lineage graphs from an indexed SQL workspace and query them."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_graph(
    index_path: Path,
    root: Path | None = None,
    config_path: Path | None = None,
) -> LineageGraph:
    require_file(index_path, "Workspace index")
    config = LineageConfig.load(config_path) if config_path else LineageConfig()
    index = WorkspaceIndex.load(index_path)
    provider = FileSystemSourceProvider(
        root=root or index_path.parent,
        encoding=config.source_encoding,
    )
    return LineageBuilder(config, provider).build(index)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2))


def _print_flow(console: Console, title: str, result: FlowResult) -> None:
    console.print(f"\n[bold]{title}[/bold] ({len(result.nodes)} nodes, depth {result.depth})")
    if not result.nodes:
        console.print("[dim]No relationships found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Node", style="cyan")
    table.add_column("Type")
    table.add_column("Via")
    for node, edge in zip(result.nodes, result.edges):
        table.add_row(node.id, node.node_type.value, edge.edge_type.value)
    console.print(table)


@app.command(name="summary")
@error_boundary
def summary_cmd(
    index_file: IndexArg,
    root: RootOpt = None,
    config: ConfigOpt = None,
    as_json: JsonOpt = False,
) -> None:
    """Show graph size, root sources and terminal nodes.

    Examples:
        lineagescope summary index.json
        lineagescope summary index.yaml --root ./sql --json
    """
    graph = _load_graph(index_file, root, config)
    flow = FlowAnalyzer(graph)
    by_type = Counter(node.node_type.value for node in graph.iter_nodes())
    roots = flow.find_root_sources()
    terminals = flow.find_terminal_nodes()
    cycles = flow.detect_cycles()

    if as_json:
        _echo_json(
            {
                "nodes": graph.node_count,
                "edges": graph.edge_count,
                "column_edges": graph.column_edge_count,
                "nodes_by_type": dict(sorted(by_type.items())),
                "roots": [n.id for n in roots],
                "terminals": [n.id for n in terminals],
                "cycles": len(cycles),
            }
        )
        return

    console = Console()
    console.print("\n[bold]Lineage Graph Summary[/bold]")
    console.print("━" * 52)
    console.print(f"Nodes: {graph.node_count}")
    console.print(f"Edges: {graph.edge_count}")
    console.print(f"Column edges: {graph.column_edge_count}")
    for node_type, count in sorted(by_type.items()):
        console.print(f"  {node_type}: {count}")

    console.print(f"\nRoot sources ({len(roots)}):")
    for node in roots[:10]:
        console.print(f"  {node.id}")
    console.print(f"\nTerminal nodes ({len(terminals)}):")
    for node in terminals[:10]:
        console.print(f"  {node.id}")
    if cycles:
        console.print(f"\n[yellow]Cycles detected: {len(cycles)}[/yellow]")


@app.command(name="upstream")
@error_boundary
def upstream_cmd(
    index_file: IndexArg,
    node_id: Annotated[str, typer.Argument(help="Node id, e.g. view:daily_revenue")],
    max_depth: MaxDepthOpt = -1,
    exclude_external: Annotated[
        bool, typer.Option("--exclude-external", help="Skip external relations")
    ] = False,
    root: RootOpt = None,
    config: ConfigOpt = None,
    as_json: JsonOpt = False,
) -> None:
    """List everything feeding into a node."""
    graph = _load_graph(index_file, root, config)
    if not graph.has_node(node_id):
        raise NodeLookupError(node_id)

    result = FlowAnalyzer(graph).get_upstream(
        node_id, max_depth=max_depth, exclude_external=exclude_external
    )
    if as_json:
        _echo_json(result.to_dict())
        return
    _print_flow(Console(), f"Upstream of {node_id}", result)


@app.command(name="downstream")
@error_boundary
def downstream_cmd(
    index_file: IndexArg,
    node_id: Annotated[str, typer.Argument(help="Node id, e.g. table:orders")],
    max_depth: MaxDepthOpt = -1,
    exclude_external: Annotated[
        bool, typer.Option("--exclude-external", help="Skip external relations")
    ] = False,
    root: RootOpt = None,
    config: ConfigOpt = None,
    as_json: JsonOpt = False,
) -> None:
    """List everything a node feeds into."""
    graph = _load_graph(index_file, root, config)
    if not graph.has_node(node_id):
        raise NodeLookupError(node_id)

    result = FlowAnalyzer(graph).get_downstream(
        node_id, max_depth=max_depth, exclude_external=exclude_external
    )
    if as_json:
        _echo_json(result.to_dict())
        return
    _print_flow(Console(), f"Downstream of {node_id}", result)


@app.command(name="column")
@error_boundary
def column_cmd(
    index_file: IndexArg,
    table_id: Annotated[str, typer.Argument(help="Table node id, e.g. table:orders")],
    column: Annotated[str, typer.Argument(help="Column name")],
    root: RootOpt = None,
    config: ConfigOpt = None,
    as_json: JsonOpt = False,
) -> None:
    """Show column-to-column lineage of one column."""
    graph = _load_graph(index_file, root, config)
    result = ColumnLineageTracker(graph).get_column_lineage_paths(table_id, column)

    if as_json:
        _echo_json(result.to_dict())
        return

    console = Console()
    console.print(f"\n[bold]Column lineage[/bold]: {table_id}.{column}")
    if result.is_empty:
        console.print("[dim]No column lineage found[/dim]")
        return

    for title, rows in (("Upstream", result.upstream), ("Downstream", result.downstream)):
        if not rows:
            continue
        table = Table(title=title, show_header=True, header_style="bold")
        table.add_column("Source", style="cyan")
        table.add_column("Target", style="cyan")
        table.add_column("Transform")
        table.add_column("Expression", style="dim")
        for row in rows:
            table.add_row(
                f"{row.source_table_id}.{row.source_column_name}",
                f"{row.target_table_id}.{row.target_column_name}",
                row.transformation_type.value,
                row.expression or "",
            )
        console.print(table)


@app.command(name="impact")
@error_boundary
def impact_cmd(
    index_file: IndexArg,
    name: Annotated[str, typer.Argument(help="Table or view name, optionally schema-qualified")],
    column: Annotated[
        Optional[str],
        typer.Option("--column", help="Analyze a single column of the table"),
    ] = None,
    change_type: Annotated[
        str,
        typer.Option("--change-type", "-t", help="Kind of change: modify, rename, drop or add_column"),
    ] = ChangeType.MODIFY.value,
    root: RootOpt = None,
    config: ConfigOpt = None,
    as_json: JsonOpt = False,
) -> None:
    """Analyze what a change to a table or column would affect.

    Examples:
        lineagescope impact index.json orders --change-type drop
        lineagescope impact index.json orders --column amount --change-type rename
    """
    try:
        kind = ChangeType(change_type)
    except ValueError:
        raise InvalidOptionError("--change-type", change_type, [c.value for c in ChangeType]) from None

    graph = _load_graph(index_file, root, config)
    analyzer = ImpactAnalyzer(graph, FlowAnalyzer(graph))
    if column:
        report = analyzer.analyze_column_change(name, column, kind)
    else:
        report = analyzer.analyze_table_change(name, kind)

    if as_json:
        _echo_json(report.to_dict())
        return
    report.print_to_console(Console())


@app.command(name="cycles")
@error_boundary
def cycles_cmd(
    index_file: IndexArg,
    root: RootOpt = None,
    config: ConfigOpt = None,
    as_json: JsonOpt = False,
) -> None:
    """Report circular dependencies."""
    graph = _load_graph(index_file, root, config)
    cycles = FlowAnalyzer(graph).detect_cycles()

    if as_json:
        _echo_json([[node.id for node in cycle.nodes] for cycle in cycles])
        return

    console = Console()
    if not cycles:
        console.print("[green]✓ No cycles found[/green]")
        return
    console.print(f"[yellow]{len(cycles)} cycle(s) found[/yellow]")
    for cycle in cycles:
        console.print("  " + " -> ".join(node.id for node in cycle.nodes))


if __name__ == "__main__":
    app()
