"""Command line interface for running conduit workers and managing workflows."""

from __future__ import annotations

import asyncio
import importlib
import inspect
import json
import logging
import os
import signal
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Optional

import typer
import yaml

from .config import load_config
from .contracts import ExecutionStatus, utc_now
from .errors import ConduitError, WorkflowValidationError
from .services import Services
from .validator import format_validation_result, validate_workflow

logger = logging.getLogger(__name__)

app = typer.Typer(help="CLI for conduit workflow pipelines")

# Command groups
worker_app = typer.Typer(help="Commands for running workers")
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for inspecting executions")
queue_app = typer.Typer(help="Commands for inspecting the job queue")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(queue_app, name="queue")

_state: dict[str, Any] = {"config_path": None}

SetupOption = typer.Option(
    None,
    "--setup",
    help="module:function called with the services to register integrations",
)


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", help="Path to a YAML config file"
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level"),
) -> None:
    """conduit CLI entry point."""
    _state["config_path"] = str(config) if config else None
    level = log_level or load_config(_state["config_path"]).log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_services() -> Services:
    return Services.create(load_config(_state["config_path"]))


def _load_setup(target: str) -> Callable[[Services], Any]:
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter("expected module:function", param_hint="--setup")
    if os.getcwd() not in sys.path:
        sys.path.insert(0, os.getcwd())
    module = importlib.import_module(module_name)
    return getattr(module, attr)


async def _prepare(setup: Optional[str]) -> Services:
    services = _build_services()
    if setup:
        outcome = _load_setup(setup)(services)
        if inspect.isawaitable(outcome):
            await outcome
    return services


def _read_definition(path: Path) -> Any:
    try:
        with open(path) as f:
            return yaml.safe_load(f)
    except OSError as exc:
        typer.secho(f"Cannot read {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except yaml.YAMLError as exc:
        typer.secho(f"Cannot parse {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# worker


@worker_app.command("run")
def worker_run(
    setup: Optional[str] = SetupOption,
    concurrency: Optional[int] = typer.Option(None, help="Maximum parallel jobs"),
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run until signalled)"
    ),
) -> None:
    """
    Run a worker that executes queued workflows.

    SIGINT/SIGTERM stop pulling new jobs and wait for in-flight ones.

    Example:
        conduit worker run --setup myapp.integrations:register --concurrency 10
    """

    async def _main() -> None:
        services = await _prepare(setup)
        worker = services.worker(concurrency=concurrency)
        loop = asyncio.get_running_loop()
        stopping: list[asyncio.Task] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    sig, lambda: stopping.append(asyncio.create_task(worker.stop()))
                )
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable on this platform")
        async with services:
            await worker.run(lifespan=lifespan)
            if stopping:
                await asyncio.gather(*stopping)
        typer.echo(f"Worker finished: {worker.completed} completed, {worker.failed} failed")

    typer.echo("Starting worker")
    asyncio.run(_main())


# ----------------------------------------------------------------------
# workflow


@workflow_app.command("validate")
def workflow_validate(file: Path, setup: Optional[str] = SetupOption) -> None:
    """Validate a workflow definition file (JSON or YAML)."""
    document = _read_definition(file)

    async def _main() -> bool:
        services = await _prepare(setup)
        async with services:
            result = validate_workflow(document, services.registry)
        typer.echo(format_validation_result(result))
        return result.valid

    if not asyncio.run(_main()):
        raise typer.Exit(code=1)


@workflow_app.command("register")
def workflow_register(
    workflow_id: str, file: Path, setup: Optional[str] = SetupOption
) -> None:
    """Validate and store a workflow definition under WORKFLOW_ID."""
    document = _read_definition(file)

    async def _main() -> None:
        services = await _prepare(setup)
        async with services:
            await services.dispatcher().register_workflow(workflow_id, document)

    try:
        asyncio.run(_main())
    except WorkflowValidationError as exc:
        typer.echo(format_validation_result(exc.result))
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow_id} registered")


@workflow_app.command("enqueue")
def workflow_enqueue(
    workflow_id: str,
    org: str = typer.Option(..., "--org", help="Organization id"),
    payload: Optional[str] = typer.Option(None, help="Trigger payload as JSON"),
    priority: int = typer.Option(0, help="Higher runs first"),
    delay: Optional[float] = typer.Option(None, help="Seconds before the job is due"),
    setup: Optional[str] = SetupOption,
) -> None:
    """Enqueue an execution of a registered workflow."""
    try:
        trigger_payload = json.loads(payload) if payload else {}
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"invalid JSON: {exc}", param_hint="--payload")
    scheduled_for = utc_now() + timedelta(seconds=delay) if delay else None

    async def _main() -> str:
        services = await _prepare(setup)
        async with services:
            return await services.dispatcher().enqueue_workflow(
                workflow_id,
                org,
                trigger_payload,
                "cli",
                priority=priority,
                scheduled_for=scheduled_for,
            )

    try:
        job_id = asyncio.run(_main())
    except WorkflowValidationError as exc:
        typer.echo(format_validation_result(exc.result))
        raise typer.Exit(code=1)
    except (ConduitError, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Job enqueued: {job_id}")


# ----------------------------------------------------------------------
# execution


@execution_app.command("list")
def execution_list(
    workflow: Optional[str] = typer.Option(None, help="Filter by workflow id"),
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
    limit: int = typer.Option(50),
) -> None:
    """List executions, newest first."""

    async def _main():
        services = _build_services()
        async with services:
            return await services.repository.list_executions(
                workflow_id=workflow, status=status, limit=limit
            )

    executions = asyncio.run(_main())
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.workflow_id}\t{execution.status.value}"
            f"\t{execution.started_at.isoformat()}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution with its step logs."""

    async def _main():
        services = _build_services()
        async with services:
            return await services.repository.get_execution(execution_id)

    execution = asyncio.run(_main())
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)

    typer.echo(
        f"Execution {execution.id}: {execution.status.value} "
        f"(workflow {execution.workflow_id}, org {execution.organization_id})"
    )
    if execution.duration_ms is not None:
        typer.echo(f"Duration: {execution.duration_ms}ms")
    if execution.error:
        typer.echo(f"Error: {json.dumps(execution.error)}")
    for step in execution.steps:
        line = f"- {step.step_number}. {step.step_name}: {step.status.value}"
        if step.attempts > 1:
            line += f" after {step.attempts} attempts"
        if step.error:
            line += f" [{step.error.get('code')}] {step.error.get('message')}"
        typer.echo(line)


# ----------------------------------------------------------------------
# queue


@queue_app.command("stats")
def queue_stats() -> None:
    """Show job counts per queue state."""

    async def _main():
        services = _build_services()
        async with services:
            return await services.queue.stats()

    stats = asyncio.run(_main())
    typer.echo(f"ready: {stats.ready}")
    typer.echo(f"delayed: {stats.delayed}")
    typer.echo(f"in_flight: {stats.in_flight}")
    typer.echo(f"dead_letter: {stats.dead_letter}")


@queue_app.command("dead-letters")
def queue_dead_letters(limit: int = typer.Option(100)) -> None:
    """List dead-lettered jobs with their last error."""

    async def _main():
        services = _build_services()
        async with services:
            return await services.queue.dead_letters(limit)

    jobs = asyncio.run(_main())
    if not jobs:
        typer.echo("No dead-lettered jobs")
        return
    for job in jobs:
        error = job.error or {}
        typer.echo(
            f"{job.id}\t{job.payload.workflow_id}\tretries={job.retry_count}"
            f"\t{error.get('code', '-')}: {error.get('message', '')}"
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
