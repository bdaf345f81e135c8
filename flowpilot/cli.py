"""Command line interface for inspecting flows and serving the control API."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from typing import Callable

import typer

from .orchestrator import Orchestrator
from .persistence import CheckpointStore, FlowRegistry, get_store

app = typer.Typer(help="CLI for flowpilot generation flows")

# Command groups
flow_app = typer.Typer(help="Commands for inspecting flows")

app.add_typer(flow_app, name="flow")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", help="Logging level for flowpilot output"),
) -> None:
    """flowpilot CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@flow_app.command("list")
def flow_list() -> None:
    """
    List all flows with their current status.

    Reads the store configured through FLOWPILOT_DATABASE_URL or the config file.

    Example:
        flowpilot flow list
        # Output: flow_3f2a...    running    content_generation    42%
    """
    store = get_store()
    records = asyncio.run(FlowRegistry(store).list_all())
    if not records:
        typer.echo("No flows found")
        return
    for record in records:
        typer.echo(
            f"{record.flow_id}\t{record.status.value}\t{record.current_stage}"
            f"\t{record.progress.overall:.0f}%"
        )


@flow_app.command("show")
def flow_show(flow_id: str) -> None:
    """
    Show detailed information for a specific flow.

    Displays status, progress, every stage attempt and the error history.

    Args:
        flow_id: Flow to inspect (get from 'flow list')
    """
    store = get_store()
    record = asyncio.run(FlowRegistry(store).get(flow_id))
    if record is None:
        typer.echo("Flow not found")
        raise typer.Exit(code=1)
    config = record.configuration
    typer.echo(f"Flow {record.flow_id}: {record.status.value}")
    typer.echo(f"Workflow: {config.workflow_id} ({len(config.game_data_ids)} items)")
    typer.echo(
        f"Progress: {record.progress.overall:.0f}% "
        f"({record.progress.items_succeeded} succeeded, "
        f"{record.progress.items_failed} failed of {record.progress.items_total})"
    )
    if record.metadata.awaiting_intervention:
        typer.echo("Awaiting manual intervention")
    for step in record.steps:
        typer.echo(
            f"- {step.stage}: {step.status.value}"
            + (f" retry {step.retry_count}" if step.retry_count else "")
            + (f" ({step.duration:.0f}ms)" if step.duration is not None else "")
            + (f" error: {step.error}" if step.error else "")
        )
    for error in record.errors:
        item = f" [{error.item_id}]" if error.item_id else ""
        typer.echo(f"! {error.severity.value} {error.stage}{item}: {error.message}")


@flow_app.command("checkpoint")
def flow_checkpoint(flow_id: str) -> None:
    """Print the stored checkpoint of a flow as JSON."""
    store = get_store()
    checkpoint = asyncio.run(CheckpointStore(store).load(flow_id))
    if checkpoint is None:
        typer.echo("No checkpoint found")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(checkpoint.to_wire(), indent=2))


def _load_factory(target: str) -> Callable[[], Orchestrator]:
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter("Factory must look like 'package.module:callable'")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise typer.BadParameter(f"{module_name} has no attribute {attr}") from e


@app.command("serve")
def serve(
    factory: str = typer.Option(
        ..., help="Import path of a callable returning an Orchestrator, as module:callable"
    ),
    host: str = typer.Option("127.0.0.1", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to bind to"),
) -> None:
    """
    Serve the HTTP control API for an orchestrator.

    The factory wires the collaborators (workflow and item repositories,
    generator, quality gate and result sink) into an Orchestrator.

    Example:
        flowpilot serve --factory myapp.wiring:build_orchestrator --port 8080
    """
    import uvicorn

    from .api import create_app

    orchestrator = _load_factory(factory)()
    typer.echo(f"Serving flowpilot on http://{host}:{port}/flow")
    uvicorn.run(create_app(orchestrator), host=host, port=port)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
