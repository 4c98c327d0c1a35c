"""Command line interface for running and inspecting stepflow orchestrations."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import typer
import yaml

from .config import StepflowConfig, load_config
from .engine import Orchestrator
from .errors import ConfigInvalid, StepflowError
from .hosts import get_host
from .logging import configure_logging
from .persistence import get_stores
from .validation import validate_config

app = typer.Typer(help="CLI for stepflow orchestrations")

# Command groups
job_app = typer.Typer(help="Commands for inspecting worker jobs")
queue_app = typer.Typer(help="Commands for inspecting queue jobs")

app.add_typer(job_app, name="job")
app.add_typer(queue_app, name="queue")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Settings file (default: STEPFLOW_CONFIG or stepflow.yaml)"
    ),
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """stepflow CLI entry point."""
    settings = load_config(str(config) if config else None)
    configure_logging(log_level or settings.log_level)
    ctx.obj = settings


def _settings(ctx: typer.Context) -> StepflowConfig:
    return ctx.obj if isinstance(ctx.obj, StepflowConfig) else load_config()


def _load_document(path: Path) -> Any:
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        return yaml.safe_load(f)


def _parse_json(value: Optional[str], what: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        typer.secho(f"Invalid JSON for {what}: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.command("validate")
def validate(config_file: Path) -> None:
    """
    Check an orchestration config without running it.

    Prints every issue found; exits with code 1 when any is an error.

    Example:
        stepflow validate flows/onboarding.yaml
    """
    document = _load_document(config_file)
    issues = validate_config(document)
    if not issues:
        typer.echo("Config is valid")
        return
    for issue in issues:
        color = typer.colors.YELLOW if issue.severity == "warning" else typer.colors.RED
        location = f" [{issue.step}]" if issue.step is not None else ""
        typer.secho(f"{issue.severity.upper()} {issue.code}{location}: {issue.message}", fg=color)
    if any(i.severity == "error" for i in issues):
        raise typer.Exit(code=1)


@app.command("run")
def run(
    ctx: typer.Context,
    config_file: Path,
    input: Optional[str] = typer.Option(None, "--input", "-i", help="Run input as JSON"),
    run_id: Optional[str] = typer.Option(None, help="Run id (generated when omitted)"),
    continue_on_error: bool = typer.Option(
        False, "--continue-on-error", help="Collect step errors instead of failing"
    ),
    resume: bool = typer.Option(False, "--resume", help="Continue RUN_ID from its checkpoint"),
) -> None:
    """
    Execute an orchestration config and print its result.

    The config file holds the transport form of an orchestration (YAML or
    JSON). Run status is written to the configured store.

    Example:
        stepflow run flows/onboarding.yaml --input '{"userId": 7}'
        stepflow run flows/onboarding.yaml --run-id abc123 --resume
    """
    document = _load_document(config_file)
    if not isinstance(document, dict):
        typer.secho("Config file must contain a mapping", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    parsed_input = _parse_json(input, "--input")
    if parsed_input is not None:
        document["input"] = parsed_input
    if continue_on_error:
        document["continueOnError"] = True
    if resume and not run_id:
        typer.secho("--resume requires --run-id", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _run() -> Any:
        orchestrator = Orchestrator.from_settings(_settings(ctx))
        try:
            if resume:
                return await orchestrator.resume(document, run_id)
            return await orchestrator.run(document, run_id=run_id)
        finally:
            await orchestrator.dispatch.aclose()

    try:
        result = asyncio.run(_run())
    except ConfigInvalid as e:
        for issue in e.issues:
            typer.secho(f"{issue.code}: {issue.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except StepflowError as e:
        typer.secho(f"Run failed: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    _echo_json(
        {
            "runId": result.run_id,
            "status": result.status,
            "result": result.result,
            "errors": [e.model_dump() for e in result.context.errors or []],
        }
    )


@app.command("status")
def status(
    ctx: typer.Context,
    run_id: str,
    by_execution_id: bool = typer.Option(
        False, "--execution-id", help="Treat the argument as an execution id"
    ),
) -> None:
    """
    Show the status record of a run.

    Example:
        stepflow status 5f0c7c9e-...
        stepflow status checkout-42 --execution-id
    """
    store = get_stores(config=_settings(ctx)).status

    async def _lookup():
        key = run_id
        if by_execution_id:
            key = await store.get_run_id_by_execution_id(run_id)
            if key is None:
                return None
        return await store.get_status(key)

    record = asyncio.run(_lookup())
    if record is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    _echo_json(record.model_dump(mode="json", exclude={"metadata"}))


@app.command("signal")
def signal(ctx: typer.Context, token: str, payload: str = typer.Argument("{}")) -> None:
    """
    Send an event to a run waiting on a hook token.

    Only reaches runs in other processes when a shared host backend (redis)
    is configured.

    Example:
        stepflow signal approve-123 '{"approved": true}'
    """
    data = _parse_json(payload, "payload")
    host = get_host(config=_settings(ctx))

    async def _send() -> bool:
        try:
            return await host.send_event(token, data)
        finally:
            await host.disconnect()

    delivered = asyncio.run(_send())
    typer.echo(f"Event for {token} {'delivered' if delivered else 'queued'}")


@job_app.command("show")
def job_show(ctx: typer.Context, job_id: str) -> None:
    """Show a worker job."""
    store = get_stores(config=_settings(ctx)).jobs
    job = asyncio.run(store.get_job(job_id))
    if job is None:
        typer.echo("Job not found")
        raise typer.Exit(code=1)
    _echo_json(job.model_dump(mode="json"))


@job_app.command("list")
def job_list(ctx: typer.Context, worker_id: str) -> None:
    """List a worker's jobs, newest first."""
    store = get_stores(config=_settings(ctx)).jobs
    jobs = asyncio.run(store.list_jobs_by_worker(worker_id))
    if not jobs:
        typer.echo("No jobs found")
        return
    for job in jobs:
        typer.echo(f"{job.job_id}\t{job.status}\t{job.created_at.isoformat()}")


@queue_app.command("show")
def queue_show(ctx: typer.Context, queue_job_id: str) -> None:
    """Show a queue job with its steps."""
    store = get_stores(config=_settings(ctx)).queue_jobs
    record = asyncio.run(store.get_queue_job(queue_job_id))
    if record is None:
        typer.echo("Queue job not found")
        raise typer.Exit(code=1)
    _echo_json(record.model_dump(mode="json"))


@queue_app.command("list")
def queue_list(
    ctx: typer.Context,
    queue_id: Optional[str] = typer.Option(None, help="Only jobs of this queue"),
    limit: int = typer.Option(50, help="Maximum number of jobs"),
) -> None:
    """List queue jobs, newest first."""
    store = get_stores(config=_settings(ctx)).queue_jobs
    records = asyncio.run(store.list_queue_jobs(queue_id, limit))
    if not records:
        typer.echo("No queue jobs found")
        return
    for record in records:
        typer.echo(f"{record.id}\t{record.queue_id}\t{record.status}\t{len(record.steps)} steps")


if __name__ == "__main__":
    app()
