"""Command line interface for queueflow workers and runs."""

from __future__ import annotations

import asyncio
import json
import logging
from importlib import import_module
from typing import Optional

import typer

from queueflow import (
    RegistryReplayEngine,
    RegistryStepExecutor,
    Worker,
    WorkflowClient,
    WorkflowRegistry,
    get_repository,
    get_transport,
)
from queueflow.config import load_config

app = typer.Typer(help="CLI for queueflow durable workflows")

# Command groups
worker_app = typer.Typer(help="Commands for running workers")
run_app = typer.Typer(help="Commands for starting and inspecting runs")

app.add_typer(worker_app, name="worker")
app.add_typer(run_app, name="run")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", help="Logging level"),
) -> None:
    """queueflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_registry(target: str) -> WorkflowRegistry:
    """Import ``module:attribute`` and return the registry it names."""
    module_name, _, attribute = target.partition(":")
    module = import_module(module_name)
    registry = getattr(module, attribute or "registry", None)
    if not isinstance(registry, WorkflowRegistry):
        raise typer.BadParameter(f"{target} is not a WorkflowRegistry")
    return registry


@worker_app.command("run")
def worker_run(
    app_path: str = typer.Option(..., "--app", help="module:attribute of the WorkflowRegistry"),
    lifespan: Optional[float] = None,
) -> None:
    """
    Run a worker that processes both the workflow and step queues.

    Example:
        queueflow worker run --app myproject.flows:registry
        queueflow worker run --app myproject.flows:registry --lifespan 300
    """
    config = load_config()
    registry = load_registry(app_path)
    worker = Worker(
        get_transport(config=config),
        get_repository(),
        RegistryReplayEngine(registry),
        RegistryStepExecutor(registry),
        config=config,
    )
    typer.echo(f"Starting worker for {len(registry.workflows)} workflow(s)")
    asyncio.run(worker.start(lifespan=lifespan))


@run_app.command("start")
def run_start(
    workflow_name: str,
    input: str = typer.Option("null", "--input", help="JSON workflow input"),
) -> None:
    """
    Start a run of ``workflow_name`` and print its id.

    Example:
        queueflow run start user_signup --input '{"email": "a@b.c"}'
    """
    try:
        payload = json.loads(input)
    except json.JSONDecodeError as e:
        typer.secho(f"Invalid JSON input: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    config = load_config()
    client = WorkflowClient(get_transport(config=config), get_repository())
    run_id = asyncio.run(client.start_run(workflow_name, payload))
    typer.echo(run_id)


@run_app.command("list")
def run_list() -> None:
    """List all runs with their current status."""
    config = load_config()
    client = WorkflowClient(get_transport(config=config), get_repository())
    runs = asyncio.run(client.list_runs())
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.workflow_name}\t{run.status.value}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show a run's status, outcome and steps.

    Example:
        queueflow run show wrun_3f2a...
        # Output: Run wrun_3f2a... (user_signup): completed
        #         Result: {"sent": true}
        #         - send_email: completed (attempt 1)
    """
    config = load_config()
    client = WorkflowClient(get_transport(config=config), get_repository())

    async def load():
        return await client.get_run(run_id), await client.list_steps(run_id)

    run, steps = asyncio.run(load())
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)

    typer.echo(f"Run {run.run_id} ({run.workflow_name}): {run.status.value}")
    if run.result is not None:
        typer.echo(f"Result: {json.dumps(run.result)}")
    if run.error is not None:
        typer.echo(f"Error: {json.dumps(run.error)}")
    for step in steps:
        typer.echo(f"- {step.name}: {step.status.value} (attempt {step.attempt})")


@run_app.command("events")
def run_events(run_id: str) -> None:
    """Print the event log of a run in order."""
    config = load_config()
    client = WorkflowClient(get_transport(config=config), get_repository())
    events = asyncio.run(client.list_events(run_id))
    if not events:
        typer.echo("No events found")
        return
    for event in events:
        typer.echo(f"{event.created_at.isoformat()}\t{event.type.value}\t{json.dumps(event.payload)}")


if __name__ == "__main__":
    app()
