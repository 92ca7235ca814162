"""CLI entry point for flowcore.

Commands:
- flowcore validate: Check a flow file's structure, schemas and references
- flowcore run: Execute a flow from one of its triggers
- flowcore order: Print the deterministic execution order
- flowcore schema: Show a node's output schema as a field list

A flow file is YAML or JSON holding either one flow or ``flows: [...]``.
The first flow is the one operated on; the others are available as
CallFlow targets.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from flowcore import __version__
from flowcore.core.config import EngineConfig
from flowcore.core.errors import FlowcoreError
from flowcore.core.executor import FlowExecutor, execution_order
from flowcore.core.graph import FlowGraph, FlowRepository
from flowcore.core.metadata import extract_node_status
from flowcore.core.models import ExecutionStatus, Flow, FlowExecution
from flowcore.core.schema import flatten_schema
from flowcore.core.validation import ResolveSchemaRequest, SchemaService, SchemaState

console = Console()

_STATUS_COLORS = {
    "compatible": "green",
    "risky": "yellow",
    "incompatible": "red",
    "valid": "green",
    "warnings": "yellow",
    "errors": "red",
    "success": "green",
    "error": "red",
    "pending": "blue",
}


def load_flows(path: str | Path) -> tuple[Flow, FlowRepository]:
    """Load a flow file. Returns the primary flow and a repository of all flows."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)

    if not isinstance(data, dict):
        raise click.ClickException(f"Invalid flow file {path}: expected a mapping")
    raw_flows = data["flows"] if "flows" in data else [data]
    if not raw_flows:
        raise click.ClickException(f"Invalid flow file {path}: no flows defined")

    flows = [Flow.model_validate(item) for item in raw_flows]
    return flows[0], FlowRepository(flows)


def _parse_params(pairs: tuple[str, ...]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected key=value, got '{pair}'", param_hint="--param")
        try:
            params[key] = json.loads(raw)
        except json.JSONDecodeError:
            params[key] = raw
    return params


def _load_or_exit(flow_file: str) -> tuple[Flow, FlowRepository]:
    try:
        return load_flows(flow_file)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        console.print(f"[red]Invalid flow file:[/] {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Schema validation failed:[/]")
        for err in e.errors():
            location = ".".join(str(p) for p in err["loc"])
            console.print(f"  [red]• {escape(location)}: {escape(err['msg'])}[/]")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Engine config file (default: ~/.flowcore/config.yaml)",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str | None) -> None:
    """flowcore - typed dataflow-graph engine."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        ctx.obj = EngineConfig.load(config_path)
    except FlowcoreError as e:
        raise click.ClickException(str(e))


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
def validate(flow_file: str) -> None:
    """Validate a flow: invariants, connection schemas and template references."""
    flow, repository = _load_or_exit(flow_file)
    graph = FlowGraph(flow, repository=repository)

    try:
        graph.check_invariants()
    except FlowcoreError as e:
        console.print(f"[red]Invalid flow:[/] {escape(str(e))}")
        sys.exit(1)

    report = SchemaService(graph).validate_flow()
    names = {n.id: n.slug for n in flow.nodes}

    if report.connections:
        table = Table(title=f"Connections in {escape(flow.name)}")
        table.add_column("Source")
        table.add_column("Target")
        table.add_column("Status")
        table.add_column("Issues")
        for conn in report.connections:
            color = _STATUS_COLORS.get(conn.status.value, "white")
            issues = "\n".join(f"{i.path or '<root>'}: {i.message}" for i in conn.issues)
            table.add_row(
                escape(names.get(conn.source_node_id, conn.source_node_id)),
                escape(names.get(conn.target_node_id, conn.target_node_id)),
                f"[{color}]{conn.status.value}[/]",
                escape(issues) or "-",
            )
        console.print(table)

    for error in report.node_errors:
        console.print(f"  [red]• {escape(error.node_slug)}: {escape(error.message)}[/]")
    for issue in report.flow_issues:
        console.print(f"  [red]• {escape(issue.code)}: {escape(issue.message)}[/]")

    summary = report.summary
    color = _STATUS_COLORS[report.status]
    console.print(
        Panel(
            f"[bold]Status:[/] [{color}]{report.status}[/]\n"
            f"[bold]Connections:[/] {summary.total} "
            f"({summary.compatible} compatible, {summary.risky} risky, "
            f"{summary.incompatible} incompatible)",
            title="Validation",
        )
    )
    if report.status == "errors":
        sys.exit(1)


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--trigger", "-t", "trigger_slug", help="Slug of the trigger to start from")
@click.option("--param", "-p", "params", multiple=True, help="Trigger parameter as key=value")
@click.option("--preview", is_flag=True, help="Preview run (allows inactive triggers)")
@click.option("--json", "as_json", is_flag=True, help="Print the execution record as JSON")
@click.pass_obj
def run(
    config: EngineConfig,
    flow_file: str,
    trigger_slug: str | None,
    params: tuple[str, ...],
    preview: bool,
    as_json: bool,
) -> None:
    """Execute a flow and show its node trace."""
    flow, repository = _load_or_exit(flow_file)

    trigger_id = None
    if trigger_slug is not None:
        trigger = flow.get_node_by_slug(trigger_slug)
        if trigger is None:
            console.print(f"[red]Error:[/red] No node with slug '{escape(trigger_slug)}'")
            sys.exit(1)
        trigger_id = trigger.id

    async def execute() -> FlowExecution:
        async with FlowExecutor(repository=repository, config=config) as executor:
            return await executor.run(flow, trigger_params, trigger_id, is_preview=preview)

    trigger_params = _parse_params(params)
    try:
        execution = asyncio.run(execute())
    except FlowcoreError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    if as_json:
        click.echo(execution.model_dump_json(indent=2))
    else:
        table = Table(title=f"Execution {execution.id[:8]}...")
        table.add_column("Node")
        table.add_column("Type")
        table.add_column("Status")
        table.add_column("Time (ms)", justify="right")
        table.add_column("Error")
        for record in execution.node_executions:
            status = extract_node_status(record.output_data, record.status).value
            table.add_row(
                escape(record.node_slug),
                record.node_type,
                f"[{_STATUS_COLORS.get(status, 'white')}]{status}[/]",
                str(record.execution_time_ms or 0),
                escape(record.error or "-"),
            )
        console.print(table)

        if execution.status == ExecutionStatus.COMPLETED:
            output = json.dumps(execution.output, indent=2, default=str)
            console.print(Panel(escape(output), title="[green]Completed[/]"))
        else:
            console.print(
                Panel(escape(execution.error_info.message), title=f"[red]{execution.error_info.kind}[/]")
            )

    if execution.status != ExecutionStatus.COMPLETED:
        sys.exit(1)


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
def order(flow_file: str) -> None:
    """Print the deterministic execution order of every node."""
    flow, _ = _load_or_exit(flow_file)
    try:
        nodes = execution_order(flow)
    except FlowcoreError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    for index, node in enumerate(nodes, start=1):
        console.print(f"{index:>3}. {escape(node.slug)} [dim]({node.type.value})[/dim]")


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("node_slug")
@click.option("--sample", "sample_file", type=click.Path(exists=True, dir_okay=False),
              help="Sample JSON response (ApiCall nodes)")
def schema(flow_file: str, node_slug: str, sample_file: str | None) -> None:
    """Show the output schema of a node as a flat field list."""
    flow, repository = _load_or_exit(flow_file)
    node = flow.get_node_by_slug(node_slug)
    if node is None:
        console.print(f"[red]Error:[/red] No node with slug '{escape(node_slug)}'")
        sys.exit(1)

    service = SchemaService(FlowGraph(flow, repository=repository))
    if sample_file is not None:
        sample = Path(sample_file).read_text(encoding="utf-8")
        response = service.resolve_schema(
            node.id, ResolveSchemaRequest(sample_response=sample, save=False)
        )
        if response.error:
            console.print(f"[red]Error:[/red] {escape(response.error)}")
            sys.exit(1)
        fields = response.fields
    else:
        info = service.resolve_node_schema(node)
        if info.output_state != SchemaState.DEFINED:
            console.print(f"[yellow]Output schema of '{escape(node.slug)}' is {info.output_state.value}[/yellow]")
            return
        fields = flatten_schema(info.output_schema)

    table = Table(title=f"Output of {escape(node.slug)}")
    table.add_column("Path")
    table.add_column("Type")
    table.add_column("Required")
    table.add_column("Description")
    for field in fields:
        table.add_row(
            escape(field.path),
            field.type,
            "yes" if field.required else "",
            escape(field.description or ""),
        )
    console.print(table)


if __name__ == "__main__":
    main()
