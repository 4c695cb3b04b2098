"""CLI entry point for agentflow.

Commands:
- agentflow run: Execute a workflow graph
- agentflow validate: Validate a workflow graph
- agentflow visualize: Show a workflow graph as a tree
- agentflow save: Upload a workflow graph to content-addressed storage
- agentflow studio: Serve the HTTP/WebSocket API
- agentflow version: Show version information
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
import pydantic
import yaml
from rich.console import Console
from rich.markup import escape

from agentflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from agentflow.cli_ui.live_monitor import LiveExecutionMonitor
from agentflow.core.config import EngineConfig, FailurePolicy, load_config
from agentflow.core.graph_engine import RunResult, WorkflowScheduler
from agentflow.core.graph_schema import WorkflowGraph, load_workflow
from agentflow.core.state import EventType, ExecutionStateStore, LogEntry, LogLevel
from agentflow.integrations.base import CollaboratorError
from agentflow.integrations.defaults import build_collaborators
from agentflow.integrations.storage import save_workflow

console = Console()

_LOG_STYLES = {
    LogLevel.INFO: "",
    LogLevel.WARNING: "yellow",
    LogLevel.ERROR: "red",
}


def _load_graph_or_exit(workflow_file: str) -> WorkflowGraph:
    """Load and structurally validate a workflow, exiting with a report on failure."""
    try:
        workflow = load_workflow(workflow_file)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        console.print(f"[red]Error parsing workflow file '{escape(workflow_file)}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)
    except (ValueError, TypeError) as e:
        console.print("[red]Error validating workflow:[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)

    errors = workflow.validate_graph()
    if errors:
        console.print("[red]Validation errors:[/red]")
        for error in errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)
    return workflow


def _load_config_or_exit(config_path: str | None) -> EngineConfig:
    try:
        return load_config(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        # pydantic.ValidationError is a ValueError
        console.print(f"[red]Error loading config:[/red] {escape(str(e))}")
        sys.exit(1)


def _print_log_entry(entry: LogEntry) -> None:
    style = _LOG_STYLES.get(entry.level, "")
    text = escape(entry.message)
    console.print(f"[{style}]{text}[/]" if style else text)


@click.group()
@click.version_option(version="0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Agentflow - workflow execution engine for AI-agent graphs."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--start", "start_node", default=None, help="Start node ID (default: first trigger)")
@click.option("--config", "config_path", type=click.Path(), default=None, help="Engine config YAML")
@click.option("--best-effort", is_flag=True, help="Keep running unrelated branches after a failure")
@click.option("--live", is_flag=True, help="Show live execution monitor")
def run(
    workflow_file: str,
    start_node: str | None,
    config_path: str | None,
    best_effort: bool,
    live: bool,
) -> None:
    """Execute a workflow graph from YAML or JSON."""
    workflow = _load_graph_or_exit(workflow_file)
    config = _load_config_or_exit(config_path)
    if best_effort:
        config = config.model_copy(update={"failure_policy": FailurePolicy.BEST_EFFORT})

    if start_node and workflow.get_node(start_node) is None:
        console.print(f"[red]Error: start node '{escape(start_node)}' not found[/red]")
        sys.exit(1)

    for warning in workflow.config_warnings():
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")

    store = ExecutionStateStore()

    async def execute() -> RunResult:
        collaborators = build_collaborators(config)
        scheduler = WorkflowScheduler(store=store, collaborators=collaborators, config=config)
        try:
            if live:
                monitor = LiveExecutionMonitor(store, console)
                return await monitor.monitor(workflow, scheduler.run(workflow, start_node))

            def echo(event) -> None:
                if event.event_type == EventType.LOG:
                    _print_log_entry(LogEntry.model_validate(event.payload))

            unsubscribe = store.subscribe(echo)
            try:
                return await scheduler.run(workflow, start_node)
            finally:
                unsubscribe()
        finally:
            await collaborators.aclose()

    result = asyncio.run(execute())

    renderer = StatusTableRenderer(console)
    console.print(
        renderer.render_status_table(
            workflow, result.run_id, store.statuses(), store.display_outputs()
        )
    )

    if result.success:
        console.print("[green]Workflow completed successfully[/green]")
    else:
        detail = f": {escape(result.error)}" if result.error else ""
        console.print(f"[red]Workflow {result.status.value}{detail}[/red]")
        sys.exit(1)


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def validate(workflow_file: str) -> None:
    """Validate a workflow graph without running it."""
    workflow = _load_graph_or_exit(workflow_file)

    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(workflow.nodes)}")
    console.print(f"  Edges: {len(workflow.edges)}")
    for warning in workflow.config_warnings():
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--start", "start_node", default=None, help="Node to show first")
def visualize(workflow_file: str, start_node: str | None) -> None:
    """Show a workflow graph as a tree."""
    workflow = _load_graph_or_exit(workflow_file)
    renderer = TerminalGraphRenderer(console)
    console.print(renderer.render_as_tree(workflow, start_node_id=start_node))


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--config", "config_path", type=click.Path(), default=None, help="Engine config YAML")
def save(workflow_file: str, config_path: str | None) -> None:
    """Upload a workflow to content-addressed storage and print its root hash."""
    workflow = _load_graph_or_exit(workflow_file)
    config = _load_config_or_exit(config_path)

    async def upload() -> str:
        collaborators = build_collaborators(config)
        try:
            return await save_workflow(workflow, collaborators.storage)
        finally:
            await collaborators.aclose()

    try:
        root_hash = asyncio.run(upload())
    except CollaboratorError as e:
        console.print(f"[red]Failed to save workflow:[/red] {escape(str(e))}")
        sys.exit(1)
    console.print(f"[green]Workflow saved![/green] Root Hash: {escape(root_hash)}")


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Port")
@click.option("--config", "config_path", type=click.Path(exists=True), default=None)
def studio(host: str, port: int, config_path: str | None) -> None:
    """Serve the HTTP/WebSocket API for the workflow editor."""
    import os

    from agentflow.studio.server import run_server

    if config_path:
        os.environ["AGENTFLOW_CONFIG"] = str(Path(config_path).resolve())
    console.print(f"[blue]Agentflow Studio on http://{host}:{port}[/blue]")
    run_server(host=host, port=port)


@main.command()
def version() -> None:
    """Show version information."""
    from agentflow import __version__

    console.print(f"Agentflow v{__version__}")
    console.print("Workflow execution engine for AI-agent graphs")


if __name__ == "__main__":
    main()
