"""CLI entry point for flowcore.

Commands:
- flowcore init: Create .flowcore/ with a default config
- flowcore validate: Validate a workflow file
- flowcore run: Execute a workflow file
- flowcore resume / pause / stop: Control a stored run
- flowcore status: Show a run's state
- flowcore decompose: Break a query into a task graph
- flowcore run-task: Decompose and execute a query
"""

from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from flowcore import __version__
from flowcore.core.config import ConfigError, FlowConfig, load_config
from flowcore.core.decomposition import TaskDecompositionGateway
from flowcore.core.executor import SubtaskExecutor
from flowcore.core.graph_engine import (
    ExecutionEvent,
    ExecutionOptions,
    WorkflowExecutionEngine,
)
from flowcore.core.graph_schema import GraphError
from flowcore.core.models import ExecutionResult, ExecutionStatus, TaskGraph, TaskGraphStatus
from flowcore.core.registry import WorkflowRegistry, load_workflow_file
from flowcore.core.router import TaskRouter
from flowcore.core.state import Database

console = Console()

STATUS_COLORS = {
    "idle": "white",
    "running": "blue",
    "paused": "yellow",
    "completed": "green",
    "error": "red",
    "failed": "red",
    "not_started": "white",
    "in_progress": "blue",
}


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _load_config() -> FlowConfig:
    try:
        return load_config(get_repo_path() / ".flowcore" / "config.yaml")
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)


def _build_engine(config: FlowConfig) -> tuple[WorkflowExecutionEngine, WorkflowRegistry, Database]:
    db = Database(get_repo_path() / config.engine.db_path)
    registry = WorkflowRegistry(db)
    engine = WorkflowExecutionEngine(db, provider=registry, config=config.engine)
    return engine, registry, db


def _parse_vars(pairs: tuple[str, ...]) -> dict[str, Any]:
    """Parse KEY=VALUE pairs; values are read as YAML scalars (80 -> int)."""
    variables: dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint="--var")
        key, raw = pair.split("=", 1)
        try:
            variables[key.strip()] = yaml.safe_load(raw)
        except yaml.YAMLError:
            variables[key.strip()] = raw
    return variables


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _print_result(result: ExecutionResult) -> None:
    console.print(f"Status: {_colored(result.status.value)}")
    if result.error:
        console.print(f"[red]Error: {escape(result.error)}[/red]")
    if result.outputs:
        table = Table(title="Variables")
        table.add_column("Name", style="cyan")
        table.add_column("Value")
        for name, value in result.outputs.items():
            table.add_row(escape(name), escape(repr(value)))
        console.print(table)


def _print_task_graph(task_graph: TaskGraph) -> None:
    console.print(f"[bold]Task {escape(task_graph.id)}[/bold]: {escape(task_graph.analysis)}")
    table = Table()
    table.add_column("Subtask", style="cyan")
    table.add_column("Agent")
    table.add_column("Depends on")
    table.add_column("Status")
    for subtask in task_graph.subtasks:
        table.add_row(
            escape(subtask.id),
            subtask.agent_type.value,
            escape(", ".join(subtask.depends_on) or "-"),
            _colored(subtask.status.value),
        )
    console.print(table)


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """flowcore - dependency-aware workflow and task graph execution."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
def init() -> None:
    """Create .flowcore/ with a default config."""
    flowcore_dir = get_repo_path() / ".flowcore"
    config_path = flowcore_dir / "config.yaml"
    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    flowcore_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(yaml.safe_dump(FlowConfig().model_dump(mode="json"), sort_keys=False))
    console.print(f"[green]Initialized {escape(str(flowcore_dir))}[/green]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file: str) -> None:
    """Validate a workflow definition (YAML or JSON)."""
    try:
        workflow = load_workflow_file(workflow_file)
    except GraphError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    errors = workflow.validate_graph()
    if errors:
        console.print("[red]Validation errors:[/red]")
        for error in errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)

    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(workflow.nodes)}")
    console.print(f"  Edges: {len(workflow.edges)}")
    if workflow.has_cycles():
        console.print("[yellow]  Warning: workflow contains cycles; runs are bounded by max_steps[/yellow]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--session-id", default=None, help="Session id (default: random)")
@click.option("--start-node", default=None, help="Override the start node")
@click.option("--var", "variables", multiple=True, help="Initial variable KEY=VALUE")
@click.option("--max-steps", type=int, default=None, help="Pause after this many nodes")
@click.option("--watch", is_flag=True, help="Print every transition as it happens")
def run(
    workflow_file: str,
    session_id: str | None,
    start_node: str | None,
    variables: tuple[str, ...],
    max_steps: int | None,
    watch: bool,
) -> None:
    """Execute a workflow file."""
    config = _load_config()
    engine, registry, _ = _build_engine(config)
    session_id = session_id or uuid.uuid4().hex[:12]

    try:
        workflow = registry.load_file(workflow_file)
    except GraphError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    if watch:
        engine.subscribe(_print_event)

    options = ExecutionOptions(
        start_node_id=start_node, variables=_parse_vars(variables), max_steps=max_steps
    )
    console.print(f"[blue]Running {escape(workflow.id)} (session {escape(session_id)})[/blue]")
    try:
        result = asyncio.run(engine.start(workflow, session_id, options))
    except GraphError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    _print_result(result)
    if result.status == ExecutionStatus.ERROR:
        sys.exit(1)


def _print_event(event: ExecutionEvent) -> None:
    node = f" {escape(event.node_id)}" if event.node_id else ""
    console.print(f"[dim]{event.timestamp:%H:%M:%S}[/dim] {event.event_type.value}{node}")


@main.command()
@click.argument("workflow_id")
@click.argument("session_id")
@click.option("--var", "variables", multiple=True, help="Variable KEY=VALUE merged before resuming")
@click.option("--start-node", default=None, help="Resume from this node instead")
def resume(workflow_id: str, session_id: str, variables: tuple[str, ...], start_node: str | None) -> None:
    """Resume a paused run."""
    engine, _, _ = _build_engine(_load_config())
    options = ExecutionOptions(start_node_id=start_node, variables=_parse_vars(variables))
    try:
        result = asyncio.run(engine.resume(workflow_id, session_id, options))
    except GraphError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    _print_result(result)
    if not result.success:
        sys.exit(1)


@main.command()
@click.argument("workflow_id")
@click.argument("session_id")
def pause(workflow_id: str, session_id: str) -> None:
    """Mark a running run as paused."""
    engine, _, _ = _build_engine(_load_config())
    if not asyncio.run(engine.pause(workflow_id, session_id)):
        console.print("[red]Run is not running[/red]")
        sys.exit(1)
    console.print("[yellow]Paused[/yellow]")


@main.command()
@click.argument("workflow_id")
@click.argument("session_id")
def stop(workflow_id: str, session_id: str) -> None:
    """Force a run to completed."""
    engine, _, _ = _build_engine(_load_config())
    if not asyncio.run(engine.stop(workflow_id, session_id)):
        console.print("[red]Run not found or already finished[/red]")
        sys.exit(1)
    console.print("[green]Stopped[/green]")


@main.command()
@click.argument("workflow_id")
@click.argument("session_id")
def status(workflow_id: str, session_id: str) -> None:
    """Show a run's status, node states and history."""
    engine, _, _ = _build_engine(_load_config())
    state = engine.get_state(workflow_id, session_id)
    if state is None:
        console.print(f"[red]No run found for {escape(workflow_id)}/{escape(session_id)}[/red]")
        sys.exit(1)

    console.print(f"Status: {_colored(state.status.value)}")
    console.print(f"Current node: {escape(state.current_node_id or '-')}")
    if state.error:
        console.print(f"[red]Error: {escape(state.error)}[/red]")

    nodes = Table(title="Nodes")
    nodes.add_column("Node", style="cyan")
    nodes.add_column("Status")
    nodes.add_column("Error")
    for node_id, node_state in state.node_states.items():
        nodes.add_row(escape(node_id), _colored(node_state.status.value), escape(node_state.error or ""))
    console.print(nodes)

    history = Table(title="History")
    history.add_column("Time")
    history.add_column("Action")
    history.add_column("Node")
    for entry in state.history:
        history.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.action.value,
            escape(entry.node_id or ""),
        )
    console.print(history)

    for task in state.tasks:
        _print_task_graph(task)


@main.command()
@click.argument("query")
def decompose(query: str) -> None:
    """Break a query into a task graph (keyword rules when no model is configured)."""
    gateway = TaskDecompositionGateway()
    task_graph = asyncio.run(gateway.analyze_query(query))
    _print_task_graph(task_graph)


@main.command(name="run-task")
@click.argument("query")
@click.option("--workflow-id", default=None, help="Attach the task to this workflow run")
@click.option("--session-id", default=None, help="Session of the workflow run")
def run_task(query: str, workflow_id: str | None, session_id: str | None) -> None:
    """Decompose a query and execute every subtask."""
    config = _load_config()
    engine, _, db = _build_engine(config)
    router = TaskRouter(
        TaskDecompositionGateway(),
        SubtaskExecutor(store=db, config=config.tasks),
        engine=engine,
        max_subtasks=config.tasks.max_subtasks,
    )

    async def route_and_execute():
        task_graph = await router.route_task(query, workflow_id, session_id)
        result = await router.execute_task(task_graph, workflow_id, session_id)
        return task_graph, result

    task_graph, result = asyncio.run(route_and_execute())
    _print_task_graph(task_graph)
    if result.result:
        console.print(escape(result.result))
    if result.error:
        console.print(f"[yellow]{escape(result.error)}[/yellow]")
    if task_graph.status == TaskGraphStatus.FAILED:
        sys.exit(1)


if __name__ == "__main__":
    main()
